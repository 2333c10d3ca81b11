"""
System Routes - Health

Public health check for load balancers and the frontend status badge.
"""

import os
import logging
from typing import Dict
from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from app.supabase_client import get_supabase
from app.state_credits import load_state_credit_table

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])

API_VERSION = "1.0.0"


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str
    services: Dict[str, str]


# =============================================================================
# HEALTH CHECK (PUBLIC)
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.
    Public - no auth required.
    """
    services = {}

    # Reference data must load for the engine to run
    try:
        table = load_state_credit_table()
        services["state_credit_table"] = "healthy" if table.rows else "empty"
    except Exception as e:
        logger.error(f"State credit table failed to load: {e}")
        services["state_credit_table"] = f"error: {str(e)[:50]}"

    # Assessment store
    try:
        supabase = get_supabase()
        if supabase:
            supabase.table("client_assessments").select("id").limit(1).execute()
            services["database"] = "healthy"
        else:
            services["database"] = "unavailable"
    except Exception as e:
        services["database"] = f"error: {str(e)[:50]}"

    environment = os.getenv("ENVIRONMENT", "development")

    # Table failure is unhealthy; store failure only degrades
    status = "healthy" if services["state_credit_table"] == "healthy" else "unhealthy"
    if status == "healthy" and services["database"] != "healthy":
        status = "degraded"

    return HealthResponse(
        status=status,
        timestamp=datetime.utcnow().isoformat(),
        version=API_VERSION,
        environment=environment,
        services=services
    )
