"""Tests for the fixed-window rate governor."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest
import redis

from promptstore.app.middleware.rate_limit import (
    AdmissionResult,
    InMemoryRateGovernor,
    RateBucket,
    RateGovernor,
    RateLimitPolicy,
    RedisRateGovernor,
    get_rate_governor,
)
from promptstore.app.middleware.rate_limit.backends import UNAVAILABLE_RETRY_MS


class FakeClock:
    """Manually advanced clock in epoch milliseconds."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class TestInMemoryRateGovernor:
    """Tests for the in-memory backend."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def governor(self, clock):
        return InMemoryRateGovernor(clock=clock)

    @pytest.mark.asyncio
    async def test_limit_then_deny_then_fresh_window(self, governor, clock):
        """limit=3, window=1000: three admitted, fourth denied, new window after reset."""
        start = clock.now
        results = [await governor.admit("u1", 3, 1000) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert all(r.reset_at == start + 1000 for r in results)

        clock.now = results[-1].reset_at
        fresh = await governor.admit("u1", 3, 1000)
        assert fresh.allowed is True
        assert fresh.remaining == 2
        assert fresh.reset_at == clock.now + 1000

    @pytest.mark.asyncio
    async def test_denial_leaves_state_unchanged(self, governor, clock):
        await governor.admit("u1", 1, 1000)
        first = await governor.admit("u1", 1, 1000)
        clock.advance(500)
        second = await governor.admit("u1", 1, 1000)

        assert first.allowed is False
        assert second.allowed is False
        assert first.reset_at == second.reset_at

    @pytest.mark.asyncio
    async def test_explicit_now_overrides_clock(self, governor):
        result = await governor.admit("u1", 2, 100, now=5000)
        assert result.reset_at == 5100

        later = await governor.admit("u1", 2, 100, now=5100)
        assert later.allowed is True
        assert later.remaining == 1
        assert later.reset_at == 5200

    @pytest.mark.asyncio
    async def test_empty_key_always_admits(self, governor, clock):
        for _ in range(5):
            result = await governor.admit("", 1, 1000)
            assert result.allowed is True
            assert result.remaining == 1
            assert result.reset_at == clock.now
        assert len(governor) == 0

    @pytest.mark.asyncio
    async def test_different_keys_independent(self, governor):
        await governor.admit("key1", 1, 1000)
        assert (await governor.admit("key1", 1, 1000)).allowed is False
        assert (await governor.admit("key2", 1, 1000)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_admissions_never_exceed_limit(self, governor):
        results = await asyncio.gather(
            *(governor.admit("hot", 5, 60_000) for _ in range(50))
        )
        assert sum(1 for r in results if r.allowed) == 5
        assert sorted(r.remaining for r in results if r.allowed) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_invalid_arguments_rejected(self, governor):
        with pytest.raises(ValueError):
            await governor.admit("u1", 0, 1000)
        with pytest.raises(ValueError):
            await governor.admit("u1", 1, 0)

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired(self, governor, clock):
        await governor.admit("short", 1, 100)
        await governor.admit("long", 1, 10_000)
        clock.advance(100)

        removed = await governor.cleanup()

        assert removed == 1
        assert len(governor) == 1
        # The surviving window is still enforced
        assert (await governor.admit("long", 1, 10_000)).allowed is False

    @pytest.mark.asyncio
    async def test_cleanup_with_nothing_expired(self, governor):
        await governor.admit("u1", 1, 1000)
        assert await governor.cleanup() == 0

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self, clock):
        governor = InMemoryRateGovernor(clock=clock, max_entries=10)
        for i in range(25):
            await governor.admit(f"key{i}", 1, 60_000)
        assert len(governor) <= 10

    @pytest.mark.asyncio
    async def test_lru_eviction_prefers_expired_buckets(self, clock):
        governor = InMemoryRateGovernor(clock=clock, max_entries=3)
        await governor.admit("old", 1, 10)
        await governor.admit("live1", 1, 60_000)
        await governor.admit("live2", 1, 60_000)
        clock.advance(10)

        await governor.admit("new", 1, 60_000)

        assert len(governor) == 3
        # live buckets were kept, so they are still exhausted
        assert (await governor.admit("live1", 1, 60_000)).allowed is False
        assert (await governor.admit("live2", 1, 60_000)).allowed is False

    def test_max_entries_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryRateGovernor(max_entries=0)


class TestRateBucket:
    def test_expired_at_reset_instant(self):
        bucket = RateBucket(key="k", remaining=0, reset_at=1000)
        assert bucket.expired(999) is False
        assert bucket.expired(1000) is True

    def test_bucket_is_immutable(self):
        bucket = RateBucket(key="k", remaining=1, reset_at=1000)
        with pytest.raises(Exception):
            bucket.remaining = 0


class TestRateLimitPolicy:
    def test_key_for_scopes_by_call_site(self):
        policy = RateLimitPolicy(limit=10, window_ms=60_000, key_prefix="prompts:bulk-delete")
        assert policy.key_for("user-1") == "prompts:bulk-delete:user-1"

    @pytest.mark.parametrize("limit,window_ms", [(0, 1000), (1, 0), (-1, -1)])
    def test_invalid_policy(self, limit, window_ms):
        with pytest.raises(ValueError):
            RateLimitPolicy(limit=limit, window_ms=window_ms, key_prefix="x")


class TestRedisRateGovernor:
    """Tests for the Redis backend with a mocked client."""

    @pytest.mark.asyncio
    async def test_allows_and_maps_ttl_to_reset_at(self):
        mock_redis = AsyncMock()
        mock_redis.eval.return_value = [1, 9, 60_000]

        governor = RedisRateGovernor(redis_client=mock_redis, clock=lambda: 1000)
        result = await governor.admit("prompts:bulk-delete:u1", 10, 60_000)

        assert result.allowed is True
        assert result.remaining == 9
        assert result.reset_at == 61_000
        assert result.limit == 10
        args = mock_redis.eval.call_args.args
        assert args[1] == 1
        assert args[2] == "ratelimit:prompts:bulk-delete:u1"
        assert args[3:] == (60_000, 10)

    @pytest.mark.asyncio
    async def test_denies_when_script_denies(self):
        mock_redis = AsyncMock()
        mock_redis.eval.return_value = [0, 0, 1500]

        governor = RedisRateGovernor(redis_client=mock_redis, clock=lambda: 1000)
        result = await governor.admit("k", 10, 60_000)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == 2500

    @pytest.mark.asyncio
    async def test_empty_key_skips_redis(self):
        mock_redis = AsyncMock()
        governor = RedisRateGovernor(redis_client=mock_redis, clock=lambda: 1000)

        result = await governor.admit("", 3, 1000)

        assert result.allowed is True
        assert result.remaining == 3
        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_fail_closed_on_connection_error(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = redis.ConnectionError("down")

        governor = RedisRateGovernor(redis_client=mock_redis, clock=lambda: 1000, fail_closed=True)
        result = await governor.admit("k", 10, 60_000)

        assert result.allowed is False
        assert result.error == "rate_limit_unavailable"
        assert result.reset_at == 1000 + UNAVAILABLE_RETRY_MS

    @pytest.mark.asyncio
    async def test_fail_open_on_timeout(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = redis.TimeoutError("slow")

        governor = RedisRateGovernor(redis_client=mock_redis, clock=lambda: 1000, fail_closed=False)
        result = await governor.admit("k", 10, 60_000)

        assert result.allowed is True
        assert result.remaining == 9
        assert result.error == "rate_limit_unavailable"

    @pytest.mark.asyncio
    async def test_generic_redis_error_uses_policy(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = redis.RedisError("boom")

        governor = RedisRateGovernor(redis_client=mock_redis, fail_closed=True)
        result = await governor.admit("k", 10, 60_000)

        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_cleanup_is_noop(self):
        governor = RedisRateGovernor(redis_client=AsyncMock())
        assert await governor.cleanup() == 0


class TestRateGovernorFacade:
    """Tests for backend selection and namespacing."""

    def test_uses_in_memory_by_default(self):
        with patch("promptstore.app.middleware.rate_limit.settings") as mock_settings:
            mock_settings.redis_enabled = False
            mock_settings.deployment_mode = "prod"
            mock_settings.rate_limit_max_entries = 100
            governor = RateGovernor()
            assert isinstance(governor.backend, InMemoryRateGovernor)

    def test_uses_redis_when_enabled(self):
        with patch("promptstore.app.middleware.rate_limit.settings") as mock_settings:
            mock_settings.redis_enabled = True
            mock_settings.deployment_mode = "prod"
            mock_settings.rate_limit_max_entries = 100

            with patch("promptstore.app.middleware.rate_limit.RedisRateGovernor") as mock_redis:
                mock_redis.return_value = Mock()
                RateGovernor()
                mock_redis.assert_called_once()

    def test_falls_back_to_memory_when_redis_init_fails(self):
        with patch(
            "promptstore.app.middleware.rate_limit.RedisRateGovernor",
            side_effect=RuntimeError("no redis"),
        ):
            governor = RateGovernor(use_redis=True)
        assert isinstance(governor.backend, InMemoryRateGovernor)

    @pytest.mark.asyncio
    async def test_demo_namespace_is_isolated(self):
        clock = FakeClock()
        demo = RateGovernor(use_redis=False, clock=clock, namespace="demo")

        await demo.admit("prompts:bulk-delete:u1", 1, 1000)

        assert "demo:prompts:bulk-delete:u1" in demo.backend._buckets
        assert "prompts:bulk-delete:u1" not in demo.backend._buckets

    @pytest.mark.asyncio
    async def test_demo_namespace_keeps_empty_key_unlimited(self):
        demo = RateGovernor(use_redis=False, namespace="demo")
        for _ in range(3):
            assert (await demo.admit("", 1, 1000)).allowed is True

    @pytest.mark.asyncio
    async def test_cleanup_delegates_to_backend(self):
        clock = FakeClock()
        governor = RateGovernor(use_redis=False, clock=clock, namespace="prod")
        await governor.admit("k", 1, 10)
        clock.advance(10)
        assert await governor.cleanup() == 1

    def test_get_rate_governor_is_singleton(self):
        assert get_rate_governor() is get_rate_governor()


def test_admission_result_defaults():
    result = AdmissionResult(allowed=True, remaining=4, reset_at=123, limit=5)
    assert result.error is None
