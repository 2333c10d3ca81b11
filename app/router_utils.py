from fastapi import HTTPException
from typing import Any, List, Optional
from app.schemas import ApiResponse, ApiMeta, ApiError
from datetime import datetime

def wrap_response(data: Any, meta: Optional[dict] = None, errors: Optional[List[ApiError]] = None) -> ApiResponse:
    """Wraps data in the standardized API envelope."""
    return ApiResponse(
        data=data,
        meta=ApiMeta(
            timestamp=datetime.utcnow(),
            pagination=meta.get("pagination") if meta else None
        ),
        errors=errors
    )

def handle_conflict(stored_version: Optional[int], incoming_version: Optional[int]):
    """Rejects a save made against a stale assessment version."""
    if incoming_version is None or stored_version is None:
        return
    if stored_version != incoming_version:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "CONFLICT",
                "message": "The assessment has been modified by another user. Please reload.",
                "stored_version": stored_version,
                "incoming_version": incoming_version
            }
        )
