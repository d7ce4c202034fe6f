"""Maintenance endpoints, meant to be hit by a scheduler."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from promptstore.app.core.logging import get_log_context, get_logger
from promptstore.app.middleware.auth import require_admin
from promptstore.app.middleware.rate_limit import RateGovernor, get_rate_governor
from promptstore.app.middleware.request_id import get_request_id

router = APIRouter(prefix="/internal", tags=["internal"])
logger = get_logger(__name__)


@router.post("/cleanup")
async def run_cleanup(
    request: Request,
    admin=Depends(require_admin),
    governor: RateGovernor = Depends(get_rate_governor),
) -> Dict[str, Any]:
    """Purge expired rate-limit buckets (admin only).

    A failing task is reported in the body rather than failing the call.
    """
    request_id = get_request_id(request)
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        cleaned = await governor.cleanup()
        rate_limits: Dict[str, Any] = {"success": True, "cleaned": cleaned}
    except Exception as e:
        logger.error(f"Rate limit cleanup failed: {e}", extra=get_log_context(request_id=request_id))
        rate_limits = {"success": False, "error": str(e)}

    logger.info(
        f"Cleanup finished: {rate_limits}", extra=get_log_context(request_id=request_id)
    )
    return {
        "requestId": request_id,
        "startedAt": started_at,
        "tasks": {"rateLimits": rate_limits},
    }
