"""Rate governor backends.

Both backends implement the same fixed-window counting policy: the first
admission for a key opens a window of ``window_ms`` with ``limit - 1``
admissions left, later admissions decrement until the window is spent,
and the window is replaced wholesale once ``reset_at`` has passed.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Optional

import redis
import redis.asyncio as aioredis

from promptstore.app.core.config import settings
from promptstore.app.core.logging import get_logger
from promptstore.app.middleware.rate_limit.models import (
    AdmissionResult,
    Clock,
    RateBucket,
    now_ms,
)

logger = get_logger(__name__)

# Retry window handed out when the backend itself is failing
UNAVAILABLE_RETRY_MS = 5000


def _validate(limit: int, window_ms: int) -> None:
    if limit < 1:
        raise ValueError("limit must be at least 1")
    if window_ms < 1:
        raise ValueError("window_ms must be at least 1")


class RateGovernorBackend(ABC):
    """Abstract base class for rate governor backends."""

    def __init__(self, clock: Clock = now_ms):
        self._clock = clock

    @abstractmethod
    async def admit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now: Optional[int] = None,
    ) -> AdmissionResult:
        """Admit or deny one operation for ``key``.

        Args:
            key: Admission key. An empty key always admits.
            limit: Admissions granted per window
            window_ms: Window length in milliseconds
            now: Current instant in epoch ms (defaults to the backend clock)

        Returns:
            AdmissionResult with allowed status and window metadata
        """

    @abstractmethod
    async def cleanup(self, now: Optional[int] = None) -> int:
        """Drop expired state and return the number of entries removed."""


class InMemoryRateGovernor(RateGovernorBackend):
    """Process-local fixed-window governor.

    Bounds abuse per process instance only; suitable for single-instance
    deployments or as a fallback when Redis is unavailable.

    Memory bounds:
    - Uses OrderedDict for LRU ordering
    - When ``max_entries`` is reached, expired buckets are dropped first,
      then the oldest 20% of live buckets
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(self, clock: Clock = now_ms, max_entries: int = DEFAULT_MAX_ENTRIES):
        super().__init__(clock)
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._buckets: OrderedDict[str, RateBucket] = OrderedDict()
        # One lock for the registry: rollover and decrement for a key
        # always run as a single critical section.
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _enforce_lru_limit(self, now: int) -> None:
        if len(self._buckets) < self._max_entries:
            return
        for key in [k for k, b in self._buckets.items() if b.expired(now)]:
            del self._buckets[key]
        if len(self._buckets) >= self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._buckets))):
                self._buckets.popitem(last=False)

    async def admit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now: Optional[int] = None,
    ) -> AdmissionResult:
        _validate(limit, window_ms)
        now = self._clock() if now is None else now

        if not key:
            return AdmissionResult(allowed=True, remaining=limit, reset_at=now, limit=limit)

        async with self._lock:
            bucket = self._buckets.get(key)

            if bucket is None or bucket.expired(now):
                if bucket is None:
                    self._enforce_lru_limit(now)
                bucket = RateBucket(key=key, remaining=limit - 1, reset_at=now + window_ms)
                self._buckets[key] = bucket
                self._buckets.move_to_end(key)
                return AdmissionResult(
                    allowed=True,
                    remaining=bucket.remaining,
                    reset_at=bucket.reset_at,
                    limit=limit,
                )

            self._buckets.move_to_end(key)

            if bucket.remaining > 0:
                bucket = replace(bucket, remaining=bucket.remaining - 1)
                self._buckets[key] = bucket
                return AdmissionResult(
                    allowed=True,
                    remaining=bucket.remaining,
                    reset_at=bucket.reset_at,
                    limit=limit,
                )

            return AdmissionResult(
                allowed=False,
                remaining=0,
                reset_at=bucket.reset_at,
                limit=limit,
            )

    async def cleanup(self, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        async with self._lock:
            expired = [key for key, bucket in self._buckets.items() if bucket.expired(now)]
            for key in expired:
                del self._buckets[key]
        return len(expired)


# Atomic fixed-window admission. A missing key, or a key without a TTL,
# opens a new window. Denials leave the key untouched.
# Returns {allowed, remaining, ttl_ms}.
FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])

    local ttl = redis.call('PTTL', key)
    if ttl < 0 then
        redis.call('SET', key, 1, 'PX', window_ms)
        return {1, limit - 1, window_ms}
    end

    local used = tonumber(redis.call('GET', key) or '0')
    if used < limit then
        local new_used = redis.call('INCR', key)
        return {1, limit - new_used, ttl}
    end

    return {0, 0, ttl}
"""


class RedisRateGovernor(RateGovernorBackend):
    """Redis-backed fixed-window governor.

    Shares windows across processes. The check-and-increment runs as one
    Lua script so concurrent callers cannot both open a fresh window.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        clock: Clock = now_ms,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(clock)
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self._fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )

    async def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def admit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now: Optional[int] = None,
    ) -> AdmissionResult:
        _validate(limit, window_ms)
        now = self._clock() if now is None else now

        if not key:
            return AdmissionResult(allowed=True, remaining=limit, reset_at=now, limit=limit)

        try:
            client = await self._get_redis()
            allowed, remaining, ttl = await client.eval(
                FIXED_WINDOW_SCRIPT,
                1,
                f"ratelimit:{key}",
                window_ms,
                limit,
            )
        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}")
            return self._handle_redis_failure("connection_error", limit, now)
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}")
            return self._handle_redis_failure("timeout", limit, now)
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            return self._handle_redis_failure("redis_error", limit, now)

        return AdmissionResult(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            reset_at=now + int(ttl),
            limit=limit,
        )

    def _handle_redis_failure(self, error_type: str, limit: int, now: int) -> AdmissionResult:
        """Apply the fail-open/fail-closed policy after a backend error."""
        if self._fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. "
                "Request denied."
            )
            return AdmissionResult(
                allowed=False,
                remaining=0,
                reset_at=now + UNAVAILABLE_RETRY_MS,
                limit=limit,
                error="rate_limit_unavailable",
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check."
        )
        return AdmissionResult(
            allowed=True,
            remaining=max(0, limit - 1),
            reset_at=now + UNAVAILABLE_RETRY_MS,
            limit=limit,
            error="rate_limit_unavailable",
        )

    async def cleanup(self, now: Optional[int] = None) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0
