from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from travelauth.config import Settings
from travelauth.logging import get_logger
from travelauth.service.errors import ErrorKind
from travelauth.service.result import Ok, Result, fail
from travelauth.storage.models import (
    PASSWORD_RESET_PURPOSE,
    ConsumeStatus,
    OneTimeToken,
)

logger = get_logger(__name__)


class OneTimeTokenBackend(Protocol):
    async def save_one_time_token(self, record: OneTimeToken) -> None: ...

    async def consume_one_time_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Tuple[ConsumeStatus, Optional[str]]:
        """Atomically check and mark a token consumed.

        Returns ``(CONSUMED, user_id)`` on success, otherwise ``(INVALID, None)``
        for unknown, wrong-purpose or already-consumed tokens and
        ``(EXPIRED, None)``.
        """
        ...

    async def delete_user_one_time_tokens(self, purpose: str, user_id: str) -> int: ...

    async def purge_expired_one_time_tokens(self, purpose: str, now: datetime) -> int: ...


def hash_one_time_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class IssuedOneTimeToken:
    token: str
    record: OneTimeToken


class OneTimeTokenManager:
    """Single-use emailed tokens; only the SHA-256 of a token is ever stored.

    One manager per purpose. A token issued for one purpose never consumes
    under another.
    """

    def __init__(
        self,
        backend: OneTimeTokenBackend,
        *,
        purpose: str,
        ttl: timedelta,
        label: str = "token",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.purpose = purpose
        self.label = label
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def issue(self, user_id: str) -> IssuedOneTimeToken:
        token = secrets.token_urlsafe(32)
        now = self._clock()
        record = OneTimeToken(
            token_hash=hash_one_time_token(token),
            user_id=user_id,
            purpose=self.purpose,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await self.backend.save_one_time_token(record)
        logger.info("one_time_token_issued", purpose=self.purpose, user_id=user_id)
        return IssuedOneTimeToken(token=token, record=record)

    async def consume(self, token: str) -> Result[str]:
        if not token or not isinstance(token, str):
            return fail(ErrorKind.TOKEN_INVALID)
        token_hash = hash_one_time_token(token)
        status, user_id = await self.backend.consume_one_time_token(
            self.purpose, token_hash, self._clock()
        )
        if status == ConsumeStatus.CONSUMED and user_id:
            logger.info("one_time_token_consumed", purpose=self.purpose, user_id=user_id)
            return Ok(user_id)
        if status == ConsumeStatus.EXPIRED:
            logger.info(
                "one_time_token_expired", purpose=self.purpose, token_hash=token_hash[:12]
            )
            return fail(ErrorKind.TOKEN_EXPIRED, f"{self.label} expired")
        logger.warning(
            "one_time_token_invalid", purpose=self.purpose, token_hash=token_hash[:12]
        )
        return fail(ErrorKind.TOKEN_INVALID, f"invalid or already used {self.label}")

    async def revoke_for_user(self, user_id: str) -> int:
        """Drop every outstanding token of this purpose held by ``user_id``."""
        revoked = await self.backend.delete_user_one_time_tokens(self.purpose, user_id)
        if revoked:
            logger.info(
                "one_time_tokens_revoked",
                purpose=self.purpose,
                user_id=user_id,
                revoked_count=revoked,
            )
        return revoked

    async def purge_expired(self) -> int:
        return await self.backend.purge_expired_one_time_tokens(self.purpose, self._clock())


class PasswordResetManager(OneTimeTokenManager):
    def __init__(
        self,
        backend: OneTimeTokenBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(
            backend,
            purpose=PASSWORD_RESET_PURPOSE,
            ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            label="reset token",
            clock=clock,
        )


__all__ = [
    "OneTimeTokenBackend",
    "IssuedOneTimeToken",
    "OneTimeTokenManager",
    "PasswordResetManager",
    "hash_one_time_token",
]
