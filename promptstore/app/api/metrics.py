"""Metrics and monitoring endpoints.

This module provides Prometheus-compatible metrics for request traffic,
bulk deletion outcomes, metadata consistency anomalies and rate limiting.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from promptstore.app.core.logging import get_logger
from promptstore.app.middleware.auth import require_admin

if TYPE_CHECKING:
    from promptstore.app.services.bulk_delete import DeletionOutcome

logger = get_logger(__name__)
router = APIRouter()


@dataclass
class RequestMetrics:
    """Metrics for a single endpoint."""

    count: int = 0
    total_duration: float = 0.0
    errors: int = 0


@dataclass
class MetricsCollector:
    """Collects and stores service metrics.

    Guarded by an asyncio lock; collects:
    - Request counts and latencies
    - Bulk deletion calls and per-item outcomes
    - Metadata inconsistency anomalies (delete count mismatches)
    - Rate limit denials per call site
    """

    _requests: Dict[str, RequestMetrics] = field(
        default_factory=lambda: defaultdict(RequestMetrics)
    )

    _deletion_calls: int = 0
    _items_deleted: int = 0
    _items_missing: int = 0
    _blob_failures: int = 0
    _metadata_inconsistencies: int = 0

    _rate_limited: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def record_request(
        self, endpoint: str, duration: float, status_code: int
    ) -> None:
        """Record a request metric.

        Args:
            endpoint: The endpoint path
            duration: Request duration in seconds
            status_code: HTTP status code
        """
        async with self._lock:
            metrics = self._requests[endpoint]
            metrics.count += 1
            metrics.total_duration += duration
            if status_code >= 400:
                metrics.errors += 1

    async def record_deletion(self, outcome: "DeletionOutcome") -> None:
        """Record one completed bulk deletion call."""
        async with self._lock:
            self._deletion_calls += 1
            self._items_deleted += len(outcome.deleted_ids)
            self._items_missing += len(outcome.missing_ids)
            self._blob_failures += len(outcome.blob_failures)

    async def record_consistency_anomaly(self) -> None:
        """Record a metadata delete whose count did not match the lookup."""
        async with self._lock:
            self._metadata_inconsistencies += 1

    async def record_rate_limited(self, call_site: str) -> None:
        async with self._lock:
            self._rate_limited[call_site] += 1

    @property
    def metadata_inconsistencies(self) -> int:
        return self._metadata_inconsistencies

    async def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        async with self._lock:
            total_requests = sum(m.count for m in self._requests.values())
            total_errors = sum(m.errors for m in self._requests.values())
            total_duration = sum(m.total_duration for m in self._requests.values())

            avg_latency = total_duration / total_requests if total_requests > 0 else 0
            error_rate = total_errors / total_requests if total_requests > 0 else 0

            endpoint_latencies = {}
            for endpoint, metrics in self._requests.items():
                if metrics.count > 0:
                    endpoint_latencies[endpoint] = {
                        "count": metrics.count,
                        "avg_duration_ms": round(
                            (metrics.total_duration / metrics.count) * 1000, 2
                        ),
                        "error_count": metrics.errors,
                    }

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "total_requests": total_requests,
                "total_errors": total_errors,
                "error_rate": round(error_rate, 4),
                "average_latency_ms": round(avg_latency * 1000, 2),
                "endpoints": endpoint_latencies,
                "bulk_delete": {
                    "calls": self._deletion_calls,
                    "items_deleted": self._items_deleted,
                    "items_missing": self._items_missing,
                    "blob_failures": self._blob_failures,
                    "metadata_inconsistencies": self._metadata_inconsistencies,
                },
                "rate_limited": dict(self._rate_limited),
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP promptstore_requests_total Total number of requests")
            lines.append("# TYPE promptstore_requests_total counter")
            for endpoint, metrics in self._requests.items():
                lines.append(
                    f'promptstore_requests_total{{endpoint="{endpoint}"}} {metrics.count}'
                )

            lines.append(
                "\n# HELP promptstore_request_duration_seconds Total request duration"
            )
            lines.append("# TYPE promptstore_request_duration_seconds counter")
            for endpoint, metrics in self._requests.items():
                lines.append(
                    f'promptstore_request_duration_seconds{{endpoint="{endpoint}"}} {metrics.total_duration}'
                )

            lines.append("\n# HELP promptstore_errors_total Total number of error responses")
            lines.append("# TYPE promptstore_errors_total counter")
            total_errors = sum(m.errors for m in self._requests.values())
            lines.append(f"promptstore_errors_total {total_errors}")

            lines.append("\n# HELP promptstore_bulk_delete_calls_total Completed bulk delete calls")
            lines.append("# TYPE promptstore_bulk_delete_calls_total counter")
            lines.append(f"promptstore_bulk_delete_calls_total {self._deletion_calls}")

            lines.append("\n# HELP promptstore_bulk_delete_items_total Bulk delete items by result")
            lines.append("# TYPE promptstore_bulk_delete_items_total counter")
            lines.append(f'promptstore_bulk_delete_items_total{{result="deleted"}} {self._items_deleted}')
            lines.append(f'promptstore_bulk_delete_items_total{{result="missing"}} {self._items_missing}')

            lines.append(
                "\n# HELP promptstore_blob_delete_failures_total Blobs left behind after metadata deletion"
            )
            lines.append("# TYPE promptstore_blob_delete_failures_total counter")
            lines.append(f"promptstore_blob_delete_failures_total {self._blob_failures}")

            lines.append(
                "\n# HELP promptstore_metadata_inconsistency_total Metadata delete count mismatches"
            )
            lines.append("# TYPE promptstore_metadata_inconsistency_total counter")
            lines.append(
                f"promptstore_metadata_inconsistency_total {self._metadata_inconsistencies}"
            )

            lines.append("\n# HELP promptstore_rate_limited_total Requests denied by the rate governor")
            lines.append("# TYPE promptstore_rate_limited_total counter")
            for call_site, count in self._rate_limited.items():
                lines.append(
                    f'promptstore_rate_limited_total{{call_site="{call_site}"}} {count}'
                )

            lines.append("\n# HELP promptstore_uptime_seconds Service uptime in seconds")
            lines.append("# TYPE promptstore_uptime_seconds gauge")
            lines.append(
                f"promptstore_uptime_seconds {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global metrics collector (useful for testing)."""
    global _metrics_collector
    _metrics_collector = None


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(admin=Depends(require_admin)) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    collector = get_metrics_collector()
    content = await collector.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def service_stats(admin=Depends(require_admin)) -> dict[str, Any]:
    """Detailed service statistics (admin only)."""
    collector = get_metrics_collector()
    return await collector.get_summary()


class MetricsMiddleware:
    """ASGI middleware that records per-endpoint request metrics.

    Example:
        app.add_middleware(MetricsMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 500

        async def wrapped_send(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 200)
            await send(message)

        try:
            await self.app(scope, receive, wrapped_send)
        finally:
            duration = time.time() - start_time
            collector = get_metrics_collector()
            await collector.record_request(scope.get("path", "unknown"), duration, status_code)
