from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from travelauth.logging import get_logger
from travelauth.storage.errors import ConstraintViolation
from travelauth.storage.models import (
    ConsumeStatus,
    Credential,
    OneTimeToken,
    RateLimitBucket,
    Session,
    User,
    UserProfile,
)


class MemoryStore:
    """In-process backing store for users, sessions, one-time tokens and counters.

    Every mutation happens under a single re-entrant lock and never awaits
    while holding it, so check-and-mutate sequences are atomic for both
    threads and coroutines.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self._emails: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self._user_tokens: Dict[Tuple[str, str], Set[str]] = {}
        self.counters: Dict[str, RateLimitBucket] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- users -------------------------------------------------------------

    async def find_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            user_id = self._emails.get(self._normalize_email(email))
            if not user_id:
                return None
            return Credential(
                user_id=user_id,
                email=self.users[user_id].email,
                password_hash=self.credentials.get(user_id, ""),
            )

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def create(self, profile: UserProfile, password_hash: str) -> User:
        email = self._normalize_email(profile.email)
        with self._data_lock:
            if email in self._emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=profile.role or "user",
                first_name=profile.first_name,
                last_name=profile.last_name,
            )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            self._emails[email] = user.id
            return user

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            self.credentials[user_id] = password_hash

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes)
            self.users[user_id] = updated
            return updated

    async def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        return self._update_user(user_id, status=status)

    async def set_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    # -- sessions ----------------------------------------------------------

    async def save_session(self, session: Session) -> None:
        with self._data_lock:
            self.sessions[session.id] = session
            self._user_sessions.setdefault(session.user_id, set()).add(session.id)

    async def load_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return False
            self.sessions[session_id] = replace(session, last_activity_at=at)
            return True

    def _drop_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        owned = self._user_sessions.get(session.user_id)
        if owned is not None:
            owned.discard(session_id)
            if not owned:
                self._user_sessions.pop(session.user_id, None)
        return True

    async def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self._drop_session(session_id)

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for session_id in list(self._user_sessions.get(user_id, ())):
                if except_session_id and session_id == except_session_id:
                    continue
                if self._drop_session(session_id):
                    revoked += 1
            return revoked

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                self.sessions[sid]
                for sid in self._user_sessions.get(user_id, ())
                if sid in self.sessions
            ]

    async def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for session_id in expired:
                self._drop_session(session_id)
        if expired:
            self.logger.info("memory_sessions_purged", count=len(expired))
        return len(expired)

    # -- one-time tokens ---------------------------------------------------

    def _drop_token(self, token_hash: str) -> bool:
        record = self.one_time_tokens.pop(token_hash, None)
        if record is None:
            return False
        index_key = (record.purpose, record.user_id)
        owned = self._user_tokens.get(index_key)
        if owned is not None:
            owned.discard(token_hash)
            if not owned:
                self._user_tokens.pop(index_key, None)
        return True

    async def save_one_time_token(self, record: OneTimeToken) -> None:
        with self._data_lock:
            self.one_time_tokens[record.token_hash] = record
            self._user_tokens.setdefault((record.purpose, record.user_id), set()).add(
                record.token_hash
            )

    async def consume_one_time_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Tuple[ConsumeStatus, Optional[str]]:
        with self._data_lock:
            record = self.one_time_tokens.get(token_hash)
            if record is None or record.purpose != purpose or record.consumed_at is not None:
                return ConsumeStatus.INVALID, None
            if now > record.expires_at:
                return ConsumeStatus.EXPIRED, None
            self.one_time_tokens[token_hash] = replace(record, consumed_at=now)
            return ConsumeStatus.CONSUMED, record.user_id

    async def delete_user_one_time_tokens(self, purpose: str, user_id: str) -> int:
        with self._data_lock:
            hashes = list(self._user_tokens.get((purpose, user_id), ()))
            return sum(1 for token_hash in hashes if self._drop_token(token_hash))

    async def purge_expired_one_time_tokens(self, purpose: str, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.one_time_tokens.items()
                if record.purpose == purpose and not record.is_retained(now)
            ]
            for token_hash in stale:
                self._drop_token(token_hash)
        if stale:
            self.logger.info(
                "memory_one_time_tokens_purged", purpose=purpose, count=len(stale)
            )
        return len(stale)

    # -- rate limit counters -----------------------------------------------

    def _live_bucket(
        self, key: str, window_seconds: int, now: float
    ) -> Optional[RateLimitBucket]:
        bucket = self.counters.get(key)
        if bucket is None:
            return None
        if now - bucket.window_start >= window_seconds:
            self.counters.pop(key, None)
            return None
        return bucket

    async def increment_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        with self._data_lock:
            bucket = self._live_bucket(key, window_seconds, now)
            if bucket is None:
                bucket = RateLimitBucket(
                    count=0, window_start=now, window_seconds=window_seconds
                )
                self.counters[key] = bucket
            bucket.count += 1
            return bucket.count, bucket.window_start

    async def get_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        with self._data_lock:
            bucket = self._live_bucket(key, window_seconds, now)
            if bucket is None:
                return 0, now
            return bucket.count, bucket.window_start

    async def decrement_counter(self, key: str, window_seconds: int, now: float) -> int:
        with self._data_lock:
            bucket = self._live_bucket(key, window_seconds, now)
            if bucket is None:
                return 0
            bucket.count = max(0, bucket.count - 1)
            return bucket.count

    async def delete_counter(self, key: str) -> None:
        with self._data_lock:
            self.counters.pop(key, None)

    async def purge_expired_counters(self, now: float) -> int:
        with self._data_lock:
            elapsed = [key for key, bucket in self.counters.items() if bucket.is_elapsed(now)]
            for key in elapsed:
                self.counters.pop(key, None)
        if elapsed:
            self.logger.info("memory_counters_purged", count=len(elapsed))
        return len(elapsed)


__all__ = ["MemoryStore"]
