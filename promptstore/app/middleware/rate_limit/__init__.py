"""Rate governor for throttled endpoints.

Fixed-window counting keyed by an arbitrary string, usually
``"{call site}:{owner id}"`` so limits are independent per operation.
Supports an in-memory backend (per process) and a Redis backend (shared).
"""

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Response

from promptstore.app.api.metrics import get_metrics_collector
from promptstore.app.core.config import settings
from promptstore.app.core.logging import get_log_context, get_logger
from promptstore.app.exceptions import RateLimitedError
from promptstore.app.middleware.auth import require_owner

# Re-export models
from promptstore.app.middleware.rate_limit.models import (
    AdmissionResult,
    Clock,
    RateBucket,
    RateLimitPolicy,
    now_ms,
)

# Re-export backends
from promptstore.app.middleware.rate_limit.backends import (
    InMemoryRateGovernor,
    RateGovernorBackend,
    RedisRateGovernor,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "AdmissionResult",
    "Clock",
    "RateBucket",
    "RateLimitPolicy",
    "now_ms",
    # Backends
    "RateGovernorBackend",
    "InMemoryRateGovernor",
    "RedisRateGovernor",
    # Main classes
    "RateGovernor",
    "get_rate_governor",
    "reset_rate_governor",
    "enforce_rate_limit",
]


class RateGovernor:
    """Main rate governor that selects the appropriate backend.

    Uses Redis when enabled in settings, otherwise (or when Redis cannot
    be initialised) an in-memory backend. Keys from demo deployments are
    namespaced so demo traffic never touches production buckets.
    """

    def __init__(
        self,
        use_redis: Optional[bool] = None,
        clock: Clock = now_ms,
        namespace: Optional[str] = None,
        max_entries: Optional[int] = None,
    ):
        """Initialize the governor with the appropriate backend.

        Args:
            use_redis: Force Redis usage (None = auto-detect from settings)
            clock: Callable returning the current instant in epoch ms
            namespace: Deployment mode; "demo" prefixes every key with "demo:"
            max_entries: In-memory bucket cap (None = from settings)
        """
        self.namespace = namespace or settings.deployment_mode
        max_entries = max_entries or settings.rate_limit_max_entries
        should_use_redis = use_redis if use_redis is not None else settings.redis_enabled

        if should_use_redis:
            try:
                self._backend: RateGovernorBackend = RedisRateGovernor(clock=clock)
                logger.info("Using Redis rate governor backend")
            except Exception as e:
                logger.warning(f"Failed to initialize Redis rate governor: {e}. Using in-memory.")
                self._backend = InMemoryRateGovernor(clock=clock, max_entries=max_entries)
        else:
            self._backend = InMemoryRateGovernor(clock=clock, max_entries=max_entries)
            logger.debug("Using in-memory rate governor backend")

    @property
    def backend(self) -> RateGovernorBackend:
        return self._backend

    def _namespaced(self, key: str) -> str:
        if key and self.namespace == "demo":
            return f"demo:{key}"
        return key

    async def admit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now: Optional[int] = None,
    ) -> AdmissionResult:
        """Admit or deny one operation for ``key``. An empty key always admits."""
        return await self._backend.admit(self._namespaced(key), limit, window_ms, now)

    async def cleanup(self, now: Optional[int] = None) -> int:
        """Drop expired buckets; returns how many were removed."""
        return await self._backend.cleanup(now)


_rate_governor: Optional[RateGovernor] = None


def get_rate_governor() -> RateGovernor:
    """Get the process-wide rate governor."""
    global _rate_governor
    if _rate_governor is None:
        _rate_governor = RateGovernor()
    return _rate_governor


def reset_rate_governor() -> None:
    """Discard the process-wide governor (useful for testing)."""
    global _rate_governor
    _rate_governor = None


def enforce_rate_limit(
    policy: RateLimitPolicy,
) -> Callable[..., Awaitable[AdmissionResult]]:
    """Build a route dependency that admits the caller under ``policy``.

    The caller is identified by ``require_owner``; the admission key is
    ``policy.key_for(owner_id)``. Denials raise RateLimitedError, admitted
    responses get X-RateLimit-* headers.

    Example:
        @router.post("/things", dependencies=[Depends(enforce_rate_limit(policy))])
    """

    async def dependency(
        response: Response,
        owner_id: str = Depends(require_owner),
        governor: RateGovernor = Depends(get_rate_governor),
    ) -> AdmissionResult:
        result = await governor.admit(policy.key_for(owner_id), policy.limit, policy.window_ms)

        if not result.allowed:
            logger.info(
                f"Rate limit exceeded for {policy.key_prefix}",
                extra=get_log_context(owner_id=owner_id, reset_at=result.reset_at),
            )
            await get_metrics_collector().record_rate_limited(policy.key_prefix)
            raise RateLimitedError(reset_at=result.reset_at, limit=result.limit)

        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_at)
        return result

    return dependency
