from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from travelauth.config import Settings
from travelauth.logging import get_logger, sanitize_error_message
from travelauth.storage.models import DeviceInfo, Session

logger = get_logger(__name__)


class SessionBackend(Protocol):
    async def save_session(self, session: Session) -> None: ...

    async def load_session(self, session_id: str) -> Optional[Session]: ...

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        """Update last activity only if the session still exists."""
        ...

    async def delete_session(self, session_id: str) -> None: ...

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    async def list_user_sessions(self, user_id: str) -> List[Session]: ...

    async def purge_expired_sessions(self, now: datetime) -> int: ...


class SessionStore:
    """Create, look up, touch, and invalidate server-side sessions."""

    def __init__(
        self,
        backend: SessionBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def default_ttl(self, remember_me: bool = False) -> timedelta:
        if remember_me:
            return timedelta(minutes=self.settings.remember_me_session_ttl_minutes)
        return timedelta(minutes=self.settings.session_ttl_minutes)

    async def create(
        self,
        user_id: str,
        device: Optional[DeviceInfo] = None,
        ttl: Optional[timedelta] = None,
        *,
        remember_me: bool = False,
    ) -> Session:
        now = self._now()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + (ttl or self.default_ttl(remember_me)),
            device=device or DeviceInfo(),
            remember_me=remember_me,
        )
        await self.backend.save_session(session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id[:8],
            remember_me=remember_me,
        )
        await self._enforce_session_cap(user_id, keep_session_id=session.id)
        return session

    async def _enforce_session_cap(self, user_id: str, *, keep_session_id: str) -> None:
        cap = self.settings.max_sessions_per_user
        live = await self.list_for_user(user_id)
        if len(live) <= cap:
            return
        # Least recently active sessions go first; the new one is never evicted
        candidates = sorted(
            (s for s in live if s.id != keep_session_id),
            key=lambda s: s.last_activity_at,
        )
        for stale in candidates[: len(live) - cap]:
            await self.backend.delete_session(stale.id)
            logger.info("session_evicted", user_id=user_id, session_id=stale.id[:8])

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        session = await self.backend.load_session(session_id)
        if session is None or session.is_expired(self._now()):
            return None
        return session

    async def touch(self, session_id: str) -> None:
        """Best effort; a failed touch never fails the request."""
        try:
            await self.backend.touch_session(session_id, self._now())
        except Exception as exc:
            logger.warning(
                "session_touch_failed",
                session_id=session_id[:8],
                error=sanitize_error_message(str(exc)),
            )

    async def invalidate(self, session_id: str) -> None:
        if not session_id:
            return
        await self.backend.delete_session(session_id)
        logger.info("session_invalidated", session_id=session_id[:8])

    async def invalidate_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        revoked = await self.backend.delete_user_sessions(
            user_id, except_session_id=except_session_id
        )
        logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            revoked=revoked,
            kept=bool(except_session_id),
        )
        return revoked

    async def list_for_user(self, user_id: str) -> List[Session]:
        now = self._now()
        sessions = await self.backend.list_user_sessions(user_id)
        return [s for s in sessions if not s.is_expired(now)]

    async def purge_expired(self) -> int:
        purged = await self.backend.purge_expired_sessions(self._now())
        if purged:
            logger.info("sessions_purged", count=purged)
        return purged


__all__ = ["SessionBackend", "SessionStore"]
