"""
Assessment Routes
Runs the credit calculation engine for the assessment wizard, hands
snapshots to the assessment store, and exports results.
"""

import io
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header
from fastapi.responses import StreamingResponse

from .supabase_client import get_supabase, verify_supabase_token, get_user_profile
from .schemas import AssessmentInput, ToggleFactorRequest, SaveAssessmentRequest
from .router_utils import wrap_response, handle_conflict
from .credit_engine import toggle_disqualifying_factor, normalize_disqualifying_factors
from .calculation_cache import calculation_cache
from .engine_settings import get_engine_settings, invalidate_cache
from .state_credits import load_state_credit_table
from .assessment_excel import generate_assessment_workbook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assessments", tags=["assessments"])

ASSESSMENTS_TABLE = "client_assessments"

# ============================================================================
# Auth Helpers
# ============================================================================

async def get_current_user(authorization: Optional[str] = Header(None)):
    """Extract and verify user from Supabase JWT."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    user_data = verify_supabase_token(parts[1])
    if not user_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_data


async def get_org_id(user: dict = Depends(get_current_user)) -> str:
    """Resolve the caller's organization (tenant) id."""
    profile = get_user_profile(user["id"])
    org_id = profile.get("organization_id") if profile else None
    if not org_id:
        raise HTTPException(status_code=403, detail="User is not linked to an organization")
    return org_id


def require_store():
    supabase = get_supabase()
    if not supabase:
        raise HTTPException(status_code=503, detail="Assessment storage is not configured")
    return supabase


def write_audit_log(
    org_id: str,
    user_id: str,
    action: str,
    item_type: str,
    item_id: str = None,
    details: dict = None
):
    """Write to audit_logs table."""
    supabase = get_supabase()
    if not supabase:
        return
    try:
        supabase.table("audit_logs").insert({
            "organization_id": org_id,
            "user_id": user_id,
            "action": action,
            "item_type": item_type,
            "item_id": item_id,
            "details": details or {},
            "created_at": datetime.utcnow().isoformat()
        }).execute()
    except Exception as e:
        logger.error(f"Failed to write audit log: {e}")


def fetch_assessment(supabase, org_id: str, client_id: str) -> Optional[dict]:
    """Load the stored assessment row for a tenant/client pair."""
    try:
        result = supabase.table(ASSESSMENTS_TABLE)\
            .select("*")\
            .eq("organization_id", org_id)\
            .eq("client_company_id", client_id)\
            .limit(1)\
            .execute()
    except Exception as e:
        logger.error(f"Failed to load assessment for client {client_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load assessment")

    return result.data[0] if result.data else None


# ============================================================================
# Calculation Endpoints
# ============================================================================

@router.get("/states")
async def list_state_credits():
    """Per-state credit reference table."""
    table = load_state_credit_table()
    return wrap_response({"version": table.version, "states": table.to_list()})


@router.post("/calculate")
async def calculate(
    assessment: AssessmentInput,
    org_id: str = Depends(get_org_id)
):
    """
    Calculate a credit determination for a posted snapshot.
    Nothing is stored; identical snapshots are served from the cache.
    """
    settings = get_engine_settings(get_supabase(), org_id)
    result = calculation_cache.get_or_compute(assessment, settings)
    return wrap_response(result.to_dict())


@router.post("/disqualifying-factors/toggle")
async def toggle_factor(request: ToggleFactorRequest):
    """Apply one checkbox click with the 'none of these apply' exclusivity rule."""
    return wrap_response({"disqualifying_factors": toggle_disqualifying_factor(request.factors, request.factor)})


@router.post("/settings/refresh")
async def refresh_settings(org_id: str = Depends(get_org_id)):
    """Drop cached engine settings and results after an org settings change."""
    invalidate_cache(org_id)
    calculation_cache.invalidate()
    settings = get_engine_settings(get_supabase(), org_id, force_refresh=True)
    return wrap_response(settings.to_dict())


# ============================================================================
# Stored Assessment Endpoints
# ============================================================================

@router.get("/{client_id}")
async def get_assessment(
    client_id: str,
    org_id: str = Depends(get_org_id)
):
    """Load the stored snapshot and its latest result."""
    supabase = require_store()

    row = fetch_assessment(supabase, org_id, client_id)
    if not row:
        raise HTTPException(status_code=404, detail="Assessment not found")

    return wrap_response({
        "client_company_id": client_id,
        "version": row.get("version", 1),
        "answers": row.get("answers") or {},
        "result": row.get("result"),
        "snapshot_hash": row.get("snapshot_hash"),
        "updated_at": row.get("updated_at"),
    })


@router.put("/{client_id}")
async def save_assessment(
    client_id: str,
    request: SaveAssessmentRequest,
    user: dict = Depends(get_current_user),
    org_id: str = Depends(get_org_id)
):
    """
    Recompute and store the assessment for a client.
    Creates the record on first save; later saves must carry the version
    that was loaded.
    """
    supabase = require_store()

    answers = request.answers.copy(update={
        "disqualifying_factors": normalize_disqualifying_factors(request.answers.disqualifying_factors)
    })
    settings = get_engine_settings(supabase, org_id)
    result = calculation_cache.get_or_compute(answers, settings)

    existing = fetch_assessment(supabase, org_id, client_id)
    now = datetime.utcnow().isoformat()

    record = {
        "organization_id": org_id,
        "client_company_id": client_id,
        "answers": answers.dict(),
        "result": result.to_dict(),
        "snapshot_hash": result.snapshot_hash,
        "total_credit": result.total_credit,
        "qualification_score": result.qualification_score,
        "updated_by": user["id"],
        "updated_at": now,
    }

    try:
        if existing:
            handle_conflict(existing.get("version", 1), request.version)
            record["version"] = existing.get("version", 1) + 1
            supabase.table(ASSESSMENTS_TABLE)\
                .update(record)\
                .eq("id", existing["id"])\
                .execute()
            action = "assessment_updated"
            assessment_id = existing["id"]
        else:
            record["version"] = 1
            record["created_at"] = now
            created = supabase.table(ASSESSMENTS_TABLE).insert(record).execute()
            action = "assessment_created"
            assessment_id = created.data[0].get("id") if created.data else None
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to save assessment for client {client_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save assessment")

    write_audit_log(
        org_id=org_id,
        user_id=user["id"],
        action=action,
        item_type="assessment",
        item_id=assessment_id,
        details={
            "client_company_id": client_id,
            "version": record["version"],
            "snapshot_hash": result.snapshot_hash,
            "total_credit": result.total_credit,
        }
    )

    logger.info(f"{action} for client {client_id} (v{record['version']})")

    return wrap_response({
        "id": assessment_id,
        "client_company_id": client_id,
        "version": record["version"],
        "result": record["result"],
    })


@router.get("/{client_id}/export")
async def export_assessment(
    client_id: str,
    org_id: str = Depends(get_org_id)
):
    """Download the stored assessment as an Excel workbook."""
    supabase = require_store()

    row = fetch_assessment(supabase, org_id, client_id)
    if not row:
        raise HTTPException(status_code=404, detail="Assessment not found")

    answers = AssessmentInput(**(row.get("answers") or {}))
    settings = get_engine_settings(supabase, org_id)
    result = calculation_cache.get_or_compute(answers, settings)

    workbook = generate_assessment_workbook(result, answers)
    filename = f"rd_assessment_{client_id}_{result.current_year.year}.xlsx"

    return StreamingResponse(
        io.BytesIO(workbook),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )
