from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from travelauth.config import Settings, get_settings, reset_settings_cache
from travelauth.logging import get_logger, sanitize_error_message
from travelauth.service.auth import AuthService, UserRepository
from travelauth.service.email_verification import EmailVerificationManager
from travelauth.service.notifications import LoggingNotificationSender, NotificationSender
from travelauth.service.password_reset import PasswordResetManager
from travelauth.service.passwords import CredentialVerifier
from travelauth.service.rate_limit import RateLimiter
from travelauth.service.sessions import SessionStore
from travelauth.service.tokens import SigningKeyProvider, TokenService
from travelauth.storage.memory import MemoryStore
from travelauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired auth service and its backing stores."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        users: Optional[UserRepository] = None,
        notifier: Optional[NotificationSender] = None,
        key_provider: Optional[SigningKeyProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryStore()

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.external_call_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache and not self.settings.use_memory_store:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, rate limits and one-time tokens; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=sanitize_error_message(str(redis_error)) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, rate limits "
                    "and one-time tokens are in-memory only."
                ),
                mode=fallback_mode,
            )

        ephemeral = self.cache or self.store
        self.users: UserRepository = users or self.store
        self.notifier: NotificationSender = notifier or LoggingNotificationSender(
            self.settings.app_base_url
        )
        self.verifier = CredentialVerifier(self.settings)
        self.rate_limiter = RateLimiter.from_settings(ephemeral, self.settings)
        self.tokens = TokenService(self.settings, key_provider)
        self.sessions = SessionStore(ephemeral, self.settings)
        self.reset_tokens = PasswordResetManager(ephemeral, self.settings)
        self.email_verifications = EmailVerificationManager(ephemeral, self.settings)
        self.auth = AuthService(
            users=self.users,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
            tokens=self.tokens,
            reset_tokens=self.reset_tokens,
            email_verifications=self.email_verifications,
            notifier=self.notifier,
            verifier=self.verifier,
            settings=self.settings,
        )
        logger.info(
            "runtime_init_completed",
            ephemeral_store="redis" if self.cache else "memory",
        )

    async def purge_expired(self) -> Dict[str, int]:
        """Drop expired sessions, spent one-time tokens and elapsed counters.

        Meant for a periodic housekeeping task; Redis expires its own keys so
        this only reclaims memory on the in-process store.
        """
        purged = {
            "sessions": await self.sessions.purge_expired(),
            "reset_tokens": await self.reset_tokens.purge_expired(),
            "verification_tokens": await self.email_verifications.purge_expired(),
            "rate_limit_counters": await self.rate_limiter.purge_expired(),
        }
        logger.info("runtime_purge_completed", **{f"{k}_count": v for k, v in purged.items()})
        return purged


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
