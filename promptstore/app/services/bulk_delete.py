"""Bulk deletion of prompts with their stored payloads.

Deletion runs in two phases:

1. Metadata: resolve which of the requested ids the owner actually has and
   remove those rows in a single transaction. This phase is authoritative;
   once it commits the prompts are gone.
2. Blobs: delete each removed prompt's payload concurrently, with bounded
   parallelism and a per-item timeout. Failures here are reported per id
   and never undo phase 1.

Every requested id ends up in exactly one bucket of the outcome.
"""

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from promptstore.app.api.metrics import MetricsCollector, get_metrics_collector
from promptstore.app.core.config import settings
from promptstore.app.core.logging import get_log_context, get_logger
from promptstore.app.exceptions import (
    BatchTooLargeError,
    BlobDeletionError,
    UnauthorizedError,
)
from promptstore.app.services.blob_store import BlobStore, build_blob_store
from promptstore.app.services.metadata_store import (
    MetadataStore,
    ResourceRecord,
    SqlAlchemyMetadataStore,
)

logger = get_logger(__name__)


class ItemStatus(str, enum.Enum):
    MISSING = "missing"
    DELETED = "deleted"
    DELETED_WITH_BLOB_FAILURE = "deleted_with_blob_failure"


@dataclass(frozen=True)
class ItemResult:
    """Final state of one requested id."""
    id: str
    status: ItemStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class DeletionOutcome:
    """Aggregated result of a bulk deletion call.

    Items keep the order of the normalized request.
    """
    items: tuple = ()

    @property
    def deleted_ids(self) -> List[str]:
        return [i.id for i in self.items if i.status is not ItemStatus.MISSING]

    @property
    def missing_ids(self) -> List[str]:
        return [i.id for i in self.items if i.status is ItemStatus.MISSING]

    @property
    def blob_failures(self) -> Dict[str, str]:
        return {
            i.id: i.error or "unknown error"
            for i in self.items
            if i.status is ItemStatus.DELETED_WITH_BLOB_FAILURE
        }

    @property
    def success(self) -> bool:
        return not self.blob_failures

    def to_response(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Render the outcome as the API response body."""
        return {
            "success": self.success,
            "deletedIds": self.deleted_ids,
            "missingIds": self.missing_ids,
            "blobFailures": [
                {"id": rid, "error": error} for rid, error in self.blob_failures.items()
            ],
            "requestId": request_id,
        }


def normalize_ids(resource_ids: Union[str, Iterable[Any], None]) -> List[str]:
    """Clean up a requested id list.

    Non-string entries are dropped, strings are stripped, blanks removed and
    duplicates collapsed keeping first-occurrence order. A bare string is
    treated as a single id.
    """
    if resource_ids is None:
        return []
    if isinstance(resource_ids, str):
        resource_ids = [resource_ids]

    cleaned = (rid.strip() for rid in resource_ids if isinstance(rid, str))
    return list(dict.fromkeys(rid for rid in cleaned if rid))


class BulkDeletionEngine:
    """Deletes a caller's prompts and their blobs in one call.

    The engine holds no locks across store calls; concurrent calls for the
    same ids are serialized by the metadata store's transaction only.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        *,
        blob_concurrency: int = 16,
        blob_timeout: float = 10.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        if blob_concurrency < 1:
            raise ValueError("blob_concurrency must be at least 1")
        if blob_timeout <= 0:
            raise ValueError("blob_timeout must be positive")
        self.metadata_store = metadata_store
        self.blob_store = blob_store
        self.blob_concurrency = blob_concurrency
        self.blob_timeout = blob_timeout
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    async def execute(
        self,
        owner_id: Optional[str],
        resource_ids: Union[str, Iterable[Any], None],
        max_batch: int,
        request_id: Optional[str] = None,
    ) -> DeletionOutcome:
        """Delete the owner's prompts among ``resource_ids``.

        Args:
            owner_id: Identity of the caller
            resource_ids: Requested ids; normalized before use
            max_batch: Maximum number of distinct ids accepted
            request_id: Correlation id for logs

        Returns:
            DeletionOutcome partitioning the normalized ids into deleted
            and missing, with per-id blob failures

        Raises:
            UnauthorizedError: If owner_id is missing or blank
            BatchTooLargeError: If more than max_batch distinct ids remain
            StoreUnavailableError: If the metadata store cannot be reached
        """
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise UnauthorizedError()

        ids = normalize_ids(resource_ids)
        if len(ids) > max_batch:
            raise BatchTooLargeError(len(ids), max_batch)
        if not ids:
            return DeletionOutcome()

        log_ctx = get_log_context(request_id=request_id, owner_id=owner_id)

        owned = await self.metadata_store.find_owned(owner_id, ids)
        # Only trust records for ids that were actually requested
        requested = set(ids)
        resolved = {r.id: r for r in owned if r.id in requested}

        removed: List[str] = []
        if resolved:
            removed = await self.metadata_store.delete_owned(owner_id, list(resolved))
            if len(removed) != len(resolved):
                logger.warning(
                    f"Metadata delete count mismatch: expected {len(resolved)}, "
                    f"removed {len(removed)}",
                    extra={**log_ctx, "expected": len(resolved), "actual": len(removed)},
                )
                await self.metrics.record_consistency_anomaly()

        removed_records = [resolved[rid] for rid in dict.fromkeys(removed) if rid in resolved]
        blob_errors = await self._delete_blobs(removed_records, log_ctx)

        removed_set = {r.id for r in removed_records}
        items = []
        for rid in ids:
            if rid not in removed_set:
                items.append(ItemResult(rid, ItemStatus.MISSING))
            elif rid in blob_errors:
                items.append(ItemResult(rid, ItemStatus.DELETED_WITH_BLOB_FAILURE, blob_errors[rid]))
            else:
                items.append(ItemResult(rid, ItemStatus.DELETED))

        outcome = DeletionOutcome(items=tuple(items))
        await self.metrics.record_deletion(outcome)

        logger.info(
            f"Bulk delete: {len(outcome.deleted_ids)} deleted, "
            f"{len(outcome.missing_ids)} missing, {len(blob_errors)} blob failures",
            extra=log_ctx,
        )
        return outcome

    async def _delete_blobs(
        self, records: Sequence[ResourceRecord], log_ctx: Dict[str, Any]
    ) -> Dict[str, str]:
        """Delete the blobs of ``records``; returns error messages by prompt id."""
        if not records:
            return {}

        semaphore = asyncio.Semaphore(min(self.blob_concurrency, len(records)))

        async def delete_one(record: ResourceRecord) -> None:
            async with semaphore:
                await asyncio.wait_for(
                    self.blob_store.delete(record.blob_key), timeout=self.blob_timeout
                )

        results = await asyncio.gather(
            *(delete_one(r) for r in records), return_exceptions=True
        )

        errors: Dict[str, str] = {}
        for record, result in zip(records, results):
            if result is None:
                continue
            if not isinstance(result, Exception):
                # CancelledError, KeyboardInterrupt and friends
                raise result
            if isinstance(result, asyncio.TimeoutError):
                message = f"timed out after {self.blob_timeout}s"
            elif isinstance(result, BlobDeletionError):
                message = result.reason
            else:
                message = str(result) or type(result).__name__
            errors[record.id] = message
            logger.error(
                f"Blob delete failed for prompt {record.id} ({record.blob_key}): {message}",
                extra=log_ctx,
            )
        return errors


_deletion_engine: Optional[BulkDeletionEngine] = None


def get_deletion_engine() -> BulkDeletionEngine:
    """Get the process-wide deletion engine built from settings."""
    global _deletion_engine
    if _deletion_engine is None:
        _deletion_engine = BulkDeletionEngine(
            SqlAlchemyMetadataStore(),
            build_blob_store(),
            blob_concurrency=settings.blob_delete_concurrency,
            blob_timeout=settings.blob_delete_timeout,
        )
    return _deletion_engine


def reset_deletion_engine() -> None:
    """Discard the process-wide engine (useful for testing)."""
    global _deletion_engine
    _deletion_engine = None
