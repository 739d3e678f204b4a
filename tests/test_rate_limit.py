"""Tests for the fixed-window rate limiter over the in-memory counter backend."""

import asyncio

import pytest

from travelauth.service.rate_limit import (
    ACCOUNT_LOCKOUT,
    LOGIN,
    Allowed,
    Blocked,
    RateLimiter,
    RateLimitPolicy,
    policies_from_settings,
)


@pytest.fixture
def limiter(memory_store, settings, clock):
    return RateLimiter.from_settings(memory_store, settings, clock=clock.time)


class TestPolicies:
    def test_default_policy_table(self, settings):
        policies = policies_from_settings(settings)

        assert policies[LOGIN] == RateLimitPolicy(5, 900)
        assert policies["register"] == RateLimitPolicy(3, 3600)
        assert policies["password_reset"] == RateLimitPolicy(3, 3600)
        assert policies[ACCOUNT_LOCKOUT] == RateLimitPolicy(10, 900)
        assert policies["token_refresh"] == RateLimitPolicy(30, 900)
        assert policies["email_verification_request"] == RateLimitPolicy(3, 3600)
        assert policies["email_verification_confirm"] == RateLimitPolicy(10, 3600)
        assert policies["api:free"].limit == 5
        assert policies["api:basic"].limit == 20
        assert policies["api:premium"].limit == 50
        assert policies["api:enterprise"].limit == 200
        assert policies["api:free"].window_seconds == 60

    def test_unknown_operation_is_a_programming_error(self, limiter):
        with pytest.raises(KeyError):
            asyncio.run(limiter.check("teleport", "key"))


class TestCheck:
    async def test_allows_up_to_limit_then_blocks(self, limiter):
        decisions = [await limiter.check(LOGIN, "1.2.3.4:a@b.co") for _ in range(6)]

        assert all(isinstance(d, Allowed) for d in decisions[:5])
        assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]
        assert isinstance(decisions[5], Blocked)
        assert decisions[5].retry_after == 900

    async def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(5):
            await limiter.check(LOGIN, "k")
        clock.advance(600)

        blocked = await limiter.check(LOGIN, "k")
        assert blocked.retry_after == 300

    async def test_retry_after_is_at_least_one_second(self, limiter, clock):
        for _ in range(5):
            await limiter.check(LOGIN, "k")
        clock.advance(899.9)

        blocked = await limiter.check(LOGIN, "k")
        assert blocked.retry_after == 1

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(6):
            await limiter.check(LOGIN, "k")
        clock.advance(900)

        decision = await limiter.check(LOGIN, "k")
        assert isinstance(decision, Allowed)
        assert decision.remaining == 4

    async def test_keys_are_independent(self, limiter):
        for _ in range(6):
            await limiter.check(LOGIN, "first")

        assert isinstance(await limiter.check(LOGIN, "second"), Allowed)

    async def test_operations_are_independent(self, limiter):
        for _ in range(6):
            await limiter.check(LOGIN, "k")

        assert isinstance(await limiter.check("register", "k"), Allowed)

    async def test_concurrent_checks_never_exceed_limit(self, limiter):
        decisions = await asyncio.gather(*(limiter.check(LOGIN, "burst") for _ in range(20)))

        assert sum(1 for d in decisions if d.allowed) == 5
        assert sum(1 for d in decisions if not d.allowed) == 15

    async def test_bucket_keys_are_hashed(self, limiter, memory_store):
        await limiter.check(LOGIN, "alice@example.com")

        assert all("alice" not in key for key in memory_store.counters)


class TestPeekRefundReset:
    async def test_peek_does_not_consume(self, limiter):
        for _ in range(3):
            await limiter.peek(LOGIN, "k")

        assert await limiter.count(LOGIN, "k") == 0

    async def test_peek_blocked_at_limit(self, limiter):
        for _ in range(5):
            await limiter.check(LOGIN, "k")

        assert isinstance(await limiter.peek(LOGIN, "k"), Blocked)

    async def test_refund_gives_back_one_attempt(self, limiter):
        await limiter.check(LOGIN, "k")
        await limiter.check(LOGIN, "k")

        assert await limiter.refund(LOGIN, "k") == 1
        assert await limiter.count(LOGIN, "k") == 1

    async def test_refund_never_goes_negative(self, limiter):
        assert await limiter.refund(LOGIN, "k") == 0

    async def test_reset_clears_bucket(self, limiter):
        for _ in range(6):
            await limiter.check(LOGIN, "k")
        await limiter.reset(LOGIN, "k")

        assert isinstance(await limiter.check(LOGIN, "k"), Allowed)

    async def test_purge_expired_drops_elapsed_buckets(self, limiter, memory_store, clock):
        await limiter.check(LOGIN, "old")
        clock.advance(900)
        await limiter.check(LOGIN, "new")

        assert await limiter.purge_expired() == 1
        assert list(memory_store.counters) == [limiter.bucket_key(LOGIN, "new")]


class TestApiTiers:
    async def test_tier_limits(self, limiter):
        free = [await limiter.check_api("free", "client") for _ in range(6)]
        basic = [await limiter.check_api("basic", "client") for _ in range(6)]

        assert not free[-1].allowed
        assert all(d.allowed for d in basic)

    async def test_unknown_tier_uses_free_limits(self, limiter):
        decisions = [await limiter.check_api("platinum", "client") for _ in range(6)]
        assert not decisions[-1].allowed

    def test_headers(self):
        allowed = Allowed(limit=5, remaining=2, reset_seconds=30)
        blocked = Blocked(limit=5, retry_after=30, reset_seconds=30)

        assert allowed.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": "30",
        }
        assert blocked.headers()["Retry-After"] == "30"
        assert blocked.headers()["X-RateLimit-Remaining"] == "0"
