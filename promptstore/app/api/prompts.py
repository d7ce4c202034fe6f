"""Prompt API endpoints."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from promptstore.app.core.config import settings
from promptstore.app.middleware.auth import require_owner, require_production_mode
from promptstore.app.middleware.rate_limit import RateLimitPolicy, enforce_rate_limit
from promptstore.app.middleware.request_id import get_request_id
from promptstore.app.services.bulk_delete import BulkDeletionEngine, get_deletion_engine

router = APIRouter(prefix="/api/prompts", tags=["prompts"])

BULK_DELETE_POLICY = RateLimitPolicy(
    limit=settings.bulk_delete_rate_limit,
    window_ms=settings.bulk_delete_rate_window_ms,
    key_prefix="prompts:bulk-delete",
)


class BulkDeleteRequest(BaseModel):
    """Schema for a bulk delete request."""

    ids: List[str] = Field(..., min_length=1, description="Prompt ids to delete")


class BlobFailure(BaseModel):
    id: str
    error: str


class BulkDeleteResponse(BaseModel):
    """Schema for a bulk delete response.

    ``success`` is false only when some blobs could not be removed; the
    prompts listed in ``deletedIds`` are gone either way. Ids listed in
    ``missingIds`` were already gone or belong to someone else; they are
    a no-op and never clear ``success`` on their own.
    """

    success: bool
    deletedIds: List[str]
    missingIds: List[str]
    blobFailures: List[BlobFailure]
    requestId: str


@router.post(
    "/bulk-delete",
    response_model=BulkDeleteResponse,
    dependencies=[
        Depends(require_production_mode),
        Depends(enforce_rate_limit(BULK_DELETE_POLICY)),
    ],
)
async def bulk_delete_prompts(
    body: BulkDeleteRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
    engine: BulkDeletionEngine = Depends(get_deletion_engine),
) -> Dict[str, Any]:
    """Delete several of the caller's prompts and their stored payloads."""
    request_id = get_request_id(request)
    outcome = await engine.execute(
        owner_id,
        body.ids,
        max_batch=settings.bulk_delete_max_batch,
        request_id=request_id,
    )
    return outcome.to_response(request_id)
