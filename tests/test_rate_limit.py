"""Tests for the per-identity rate limiter.

One issuance per IP and per address per window; flags lapse on their own.
"""
from unittest.mock import AsyncMock, patch

import pytest

from magiclink.service.rate_limit import RateDecision, RateLimiter, RateScope
from magiclink.storage.errors import StorageBackendError
from magiclink.storage.fallback import FallbackCache
from magiclink.storage.memory import LocalCache


@pytest.fixture
def limiter(local_only_cache):
    return RateLimiter(local_only_cache, window_seconds=60)


class TestCheckAndMark:
    async def test_unmarked_identity_allowed(self, limiter):
        assert await limiter.check(RateScope.EMAIL, "a@x.com") is RateDecision.ALLOWED

    async def test_marked_identity_throttled_within_window(self, limiter, clock):
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        clock.advance(59)
        assert await limiter.check(RateScope.EMAIL, "a@x.com") is RateDecision.THROTTLED

    async def test_allowed_again_after_window(self, limiter, clock):
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        clock.advance(61)
        assert await limiter.check(RateScope.EMAIL, "a@x.com") is RateDecision.ALLOWED

    async def test_identity_is_case_insensitive(self, limiter):
        await limiter.mark(RateScope.EMAIL, "A@X.com ")
        assert await limiter.check(RateScope.EMAIL, "a@x.com") is RateDecision.THROTTLED

    async def test_scopes_use_independent_keys(self, limiter, local_cache):
        await limiter.mark(RateScope.IP, "10.0.0.1")
        assert await local_cache.exists("rate:ip:10.0.0.1")
        assert await limiter.check(RateScope.EMAIL, "10.0.0.1") is RateDecision.ALLOWED


class TestCheckAll:
    async def test_same_ip_different_email_throttled(self, limiter):
        await limiter.mark(RateScope.IP, "10.0.0.1")
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        decision = await limiter.check_all(
            [(RateScope.IP, "10.0.0.1"), (RateScope.EMAIL, "b@x.com")]
        )
        assert decision is RateDecision.THROTTLED

    async def test_same_email_different_ip_throttled(self, limiter):
        await limiter.mark(RateScope.IP, "10.0.0.1")
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        decision = await limiter.check_all(
            [(RateScope.IP, "10.0.0.2"), (RateScope.EMAIL, "a@x.com")]
        )
        assert decision is RateDecision.THROTTLED

    async def test_fresh_ip_and_email_allowed(self, limiter):
        await limiter.mark(RateScope.IP, "10.0.0.1")
        decision = await limiter.check_all(
            [(RateScope.IP, "10.0.0.2"), (RateScope.EMAIL, "b@x.com")]
        )
        assert decision is RateDecision.ALLOWED

    async def test_hit_is_logged_with_scope_name(self, limiter):
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        with patch("magiclink.service.rate_limit.logger") as mock_logger:
            await limiter.check_all([(RateScope.IP, "1.1.1.1"), (RateScope.EMAIL, "a@x.com")])
        mock_logger.info.assert_called_once_with("rate_limit_hit", scope="email")


class TestBackendFailure:
    async def test_check_fails_open(self):
        cache = AsyncMock()
        cache.exists.side_effect = StorageBackendError("local cache broken", backend="local")
        limiter = RateLimiter(cache)
        with patch("magiclink.service.rate_limit.logger") as mock_logger:
            assert await limiter.check(RateScope.IP, "1.1.1.1") is RateDecision.ALLOWED
        assert mock_logger.error.call_args[0][0] == "rate_limit_check_failed"
        assert mock_logger.error.call_args[1]["scope"] == "ip"

    async def test_mark_failure_logged_not_raised(self, clock):
        limiter = RateLimiter(FallbackCache(LocalCache(max_entries=0, clock=clock)))
        with patch("magiclink.service.rate_limit.logger") as mock_logger:
            await limiter.mark(RateScope.IP, "1.1.1.1")
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "rate_limit_mark_failed"

    async def test_distributed_outage_keeps_limiting_locally(self, dual_cache, distributed):
        limiter = RateLimiter(dual_cache)
        distributed.failing = True
        await limiter.mark(RateScope.EMAIL, "a@x.com")
        assert await limiter.check(RateScope.EMAIL, "a@x.com") is RateDecision.THROTTLED
