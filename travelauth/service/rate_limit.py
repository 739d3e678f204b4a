from __future__ import annotations

import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple, Union

from travelauth.config import Settings
from travelauth.logging import get_logger

logger = get_logger(__name__)

LOGIN = "login"
REGISTER = "register"
PASSWORD_RESET = "password_reset"
PASSWORD_RESET_CONFIRM = "password_reset_confirm"
PASSWORD_CHANGE = "password_change"
TOKEN_REFRESH = "token_refresh"
EMAIL_VERIFICATION_REQUEST = "email_verification_request"
EMAIL_VERIFICATION_CONFIRM = "email_verification_confirm"
ACCOUNT_LOCKOUT = "account_lockout"

API_TIERS = ("free", "basic", "premium", "enterprise")


class CounterBackend(Protocol):
    """Fixed-window counters keyed by an opaque (already hashed) string.

    ``now`` is a unix timestamp supplied by the caller so every backend shares
    the limiter's clock. Windows expire once ``now - window_start >= window``.
    """

    async def increment_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]: ...

    async def get_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]: ...

    async def decrement_counter(
        self, key: str, window_seconds: int, now: float
    ) -> int: ...

    async def delete_counter(self, key: str) -> None: ...

    async def purge_expired_counters(self, now: float) -> int: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class Allowed:
    limit: int
    remaining: int
    reset_seconds: int

    allowed = True

    def headers(self) -> Dict[str, str]:
        """Rate limit headers per IETF draft-polli-ratelimit-headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


@dataclass(frozen=True)
class Blocked:
    limit: int
    retry_after: int
    reset_seconds: int
    remaining: int = 0

    allowed = False

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


RateDecision = Union[Allowed, Blocked]


def policies_from_settings(settings: Settings) -> Dict[str, RateLimitPolicy]:
    policies = {
        LOGIN: RateLimitPolicy(
            settings.login_rate_limit, settings.login_rate_limit_window_seconds
        ),
        REGISTER: RateLimitPolicy(
            settings.signup_rate_limit, settings.signup_rate_limit_window_seconds
        ),
        PASSWORD_RESET: RateLimitPolicy(
            settings.reset_rate_limit, settings.reset_rate_limit_window_seconds
        ),
        PASSWORD_RESET_CONFIRM: RateLimitPolicy(
            settings.reset_confirm_rate_limit,
            settings.reset_confirm_rate_limit_window_seconds,
        ),
        PASSWORD_CHANGE: RateLimitPolicy(
            settings.password_change_rate_limit,
            settings.password_change_rate_limit_window_seconds,
        ),
        TOKEN_REFRESH: RateLimitPolicy(
            settings.refresh_rate_limit, settings.refresh_rate_limit_window_seconds
        ),
        EMAIL_VERIFICATION_REQUEST: RateLimitPolicy(
            settings.verification_request_rate_limit,
            settings.verification_request_rate_limit_window_seconds,
        ),
        EMAIL_VERIFICATION_CONFIRM: RateLimitPolicy(
            settings.verification_confirm_rate_limit,
            settings.verification_confirm_rate_limit_window_seconds,
        ),
        ACCOUNT_LOCKOUT: RateLimitPolicy(
            settings.account_lockout_threshold, settings.account_lockout_window_seconds
        ),
    }
    for tier in API_TIERS:
        policies[api_operation(tier)] = RateLimitPolicy(
            getattr(settings, f"api_rate_limit_{tier}"),
            settings.api_rate_limit_window_seconds,
        )
    return policies


def api_operation(tier: str) -> str:
    return f"api:{tier}"


class RateLimiter:
    """Fixed-window limiter over a shared counter backend.

    ``check`` increments before comparing, so concurrent callers each see a
    distinct count and at most ``limit`` of them are allowed per window.
    """

    def __init__(
        self,
        backend: CounterBackend,
        policies: Dict[str, RateLimitPolicy],
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.backend = backend
        self.policies = dict(policies)
        self._clock = clock or time.time

    @classmethod
    def from_settings(
        cls,
        backend: CounterBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> "RateLimiter":
        return cls(backend, policies_from_settings(settings), clock=clock)

    def policy(self, operation: str) -> RateLimitPolicy:
        # Unknown operations are programming errors and raise KeyError
        return self.policies[operation]

    @staticmethod
    def bucket_key(operation: str, key: str) -> str:
        """Hash the subject so emails and IPs never reach the counter store."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{operation}:{digest}"

    def _seconds_left(self, window_start: float, window_seconds: int, now: float) -> int:
        return max(0, math.ceil(window_start + window_seconds - now))

    def _decision(self, policy: RateLimitPolicy, count: int, window_start: float, now: float) -> RateDecision:
        reset_seconds = self._seconds_left(window_start, policy.window_seconds, now)
        if count > policy.limit:
            return Blocked(
                limit=policy.limit,
                retry_after=max(1, reset_seconds),
                reset_seconds=reset_seconds,
            )
        return Allowed(
            limit=policy.limit,
            remaining=policy.limit - count,
            reset_seconds=reset_seconds,
        )

    async def check(self, operation: str, key: str) -> RateDecision:
        policy = self.policy(operation)
        now = self._clock()
        count, window_start = await self.backend.increment_counter(
            self.bucket_key(operation, key), policy.window_seconds, now
        )
        decision = self._decision(policy, count, window_start, now)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                operation=operation,
                count=count,
                limit=policy.limit,
                retry_after=decision.retry_after,
            )
        return decision

    async def peek(self, operation: str, key: str) -> RateDecision:
        """Current state without consuming an attempt.

        Blocked when the bucket is already at its limit, i.e. the next
        ``check`` would be refused.
        """
        policy = self.policy(operation)
        now = self._clock()
        count, window_start = await self.backend.get_counter(
            self.bucket_key(operation, key), policy.window_seconds, now
        )
        return self._decision(policy, count + 1, window_start, now)

    async def count(self, operation: str, key: str) -> int:
        policy = self.policy(operation)
        count, _ = await self.backend.get_counter(
            self.bucket_key(operation, key), policy.window_seconds, self._clock()
        )
        return count

    async def refund(self, operation: str, key: str) -> int:
        """Give back one attempt in the current window; never goes below zero."""
        policy = self.policy(operation)
        return await self.backend.decrement_counter(
            self.bucket_key(operation, key), policy.window_seconds, self._clock()
        )

    async def reset(self, operation: str, key: str) -> None:
        self.policy(operation)
        await self.backend.delete_counter(self.bucket_key(operation, key))

    async def purge_expired(self) -> int:
        """Drop counters whose window has already elapsed."""
        return await self.backend.purge_expired_counters(self._clock())

    async def check_api(self, tier: str, key: str) -> RateDecision:
        operation = api_operation(tier)
        if operation not in self.policies:
            logger.warning("rate_limit_unknown_tier", tier=tier)
            operation = api_operation("free")
        return await self.check(operation, key)


__all__ = [
    "LOGIN",
    "REGISTER",
    "PASSWORD_RESET",
    "PASSWORD_RESET_CONFIRM",
    "PASSWORD_CHANGE",
    "TOKEN_REFRESH",
    "EMAIL_VERIFICATION_REQUEST",
    "EMAIL_VERIFICATION_CONFIRM",
    "ACCOUNT_LOCKOUT",
    "API_TIERS",
    "CounterBackend",
    "RateLimitPolicy",
    "Allowed",
    "Blocked",
    "RateDecision",
    "RateLimiter",
    "policies_from_settings",
    "api_operation",
]
