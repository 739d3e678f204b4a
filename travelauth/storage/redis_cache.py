from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from travelauth.logging import get_logger
from travelauth.storage.errors import StoreUnavailable
from travelauth.storage.models import (
    ONE_TIME_TOKEN_RETENTION_SECONDS,
    ConsumeStatus,
    OneTimeToken,
    Session,
)

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed sessions, one-time tokens and rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: atomic reset-or-increment. The window start is
    # kept as the caller's raw string so Lua never truncates it to an integer.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start_raw = data[2]
local start = tonumber(start_raw)

if count == nil or start == nil or now - start >= window then
  count = 0
  start_raw = ARGV[1]
  redis.call('DEL', key)
  redis.call('HSET', key, 'start', start_raw)
  redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
end

count = redis.call('HINCRBY', key, 'count', 1)
return {count, start_raw}
"""

    _DECREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])
if count == nil or start == nil or now - start >= window then
  return 0
end
if count <= 0 then
  return 0
end
return redis.call('HINCRBY', key, 'count', -1)
"""

    # One-time token check-and-mark; returns {status, user_id}
    _CONSUME_TOKEN_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])

local data = redis.call('HMGET', key, 'user_id', 'expires_at', 'consumed_at')
if not data[1] then
  return {'invalid', ''}
end
if data[3] and data[3] ~= '' then
  return {'invalid', ''}
end
if now > tonumber(data[2]) then
  return {'expired', ''}
end
redis.call('HSET', key, 'consumed_at', ARGV[1])
return {'consumed', data[1]}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._register_scripts()

    def _register_scripts(self) -> None:
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._decrement = self.client.register_script(self._DECREMENT_SCRIPT)
        self._consume_token = self.client.register_script(self._CONSUME_TOKEN_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Whole seconds until ``expires_at``, clamped to at least 1."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - current).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # -- sessions ----------------------------------------------------------

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _user_sessions_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    @staticmethod
    def _decode_session(raw: Optional[str]) -> Optional[Session]:
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            # Corrupted cache entry - treat as missing
            logger.warning("session_cache_entry_corrupt")
            return None

    async def save_session(self, session: Session) -> None:
        ttl = self._ttl_seconds(session.expires_at)
        user_key = self._user_sessions_key(session.user_id)
        # The index must outlive its longest-lived session
        current_ttl = await self.client.ttl(user_key)
        pipe = self.client.pipeline()
        pipe.set(self._session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
        # Track session in user's session set for bulk revocation
        pipe.sadd(user_key, session.id)
        pipe.expire(user_key, max(ttl, int(current_ttl or 0)))
        await pipe.execute()

    async def load_session(self, session_id: str) -> Optional[Session]:
        return self._decode_session(await self.client.get(self._session_key(session_id)))

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        key = self._session_key(session_id)
        session = self._decode_session(await self.client.get(key))
        if session is None:
            return False
        session.last_activity_at = at
        # XX never recreates a session deleted in the meantime
        updated = await self.client.set(
            key, json.dumps(session.to_dict()), xx=True, keepttl=True
        )
        return bool(updated)

    async def delete_session(self, session_id: str) -> None:
        key = self._session_key(session_id)
        session = self._decode_session(await self.client.get(key))
        pipe = self.client.pipeline()
        pipe.delete(key)
        if session is not None:
            pipe.srem(self._user_sessions_key(session.user_id), session_id)
        await pipe.execute()

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        user_key = self._user_sessions_key(user_id)
        session_ids = await self.client.smembers(user_key)
        if not session_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(self._session_key(session_id))
            pipe.srem(user_key, session_id)
            revoked += 1
        await pipe.execute()
        return revoked

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        user_key = self._user_sessions_key(user_id)
        session_ids = sorted(await self.client.smembers(user_key) or [])
        if not session_ids:
            return []
        raw_sessions = await self.client.mget(
            [self._session_key(sid) for sid in session_ids]
        )
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id, raw in zip(session_ids, raw_sessions):
            session = self._decode_session(raw)
            if session is None:
                stale.append(session_id)
            else:
                sessions.append(session)
        if stale:
            await self.client.srem(user_key, *stale)
        return sessions

    async def purge_expired_sessions(self, now: datetime) -> int:
        # Session keys carry a TTL; Redis expires them on its own.
        return 0

    # -- one-time tokens ---------------------------------------------------

    @staticmethod
    def _token_key(purpose: str, token_hash: str) -> str:
        return f"auth:token:{purpose}:{token_hash}"

    @staticmethod
    def _user_tokens_key(purpose: str, user_id: str) -> str:
        return f"auth:user_tokens:{purpose}:{user_id}"

    async def save_one_time_token(self, record: OneTimeToken) -> None:
        key = self._token_key(record.purpose, record.token_hash)
        user_key = self._user_tokens_key(record.purpose, record.user_id)
        ttl = self._ttl_seconds(record.expires_at) + ONE_TIME_TOKEN_RETENTION_SECONDS
        current_ttl = await self.client.ttl(user_key)
        pipe = self.client.pipeline()
        pipe.hset(
            key,
            mapping={
                "user_id": record.user_id,
                "issued_at": repr(record.issued_at.timestamp()),
                "expires_at": repr(record.expires_at.timestamp()),
            },
        )
        pipe.expire(key, ttl)
        pipe.sadd(user_key, record.token_hash)
        pipe.expire(user_key, max(ttl, int(current_ttl or 0)))
        await pipe.execute()

    async def consume_one_time_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Tuple[ConsumeStatus, Optional[str]]:
        status, user_id = await self._consume_token(
            keys=[self._token_key(purpose, token_hash)],
            args=[repr(now.timestamp())],
        )
        try:
            outcome = ConsumeStatus(status)
        except ValueError as exc:
            raise StoreUnavailable(f"unexpected one-time token status {status!r}") from exc
        if outcome != ConsumeStatus.CONSUMED:
            return outcome, None
        return outcome, user_id or None

    async def delete_user_one_time_tokens(self, purpose: str, user_id: str) -> int:
        user_key = self._user_tokens_key(purpose, user_id)
        token_hashes = await self.client.smembers(user_key)
        if not token_hashes:
            return 0
        pipe = self.client.pipeline()
        for token_hash in token_hashes:
            pipe.delete(self._token_key(purpose, token_hash))
        pipe.delete(user_key)
        deleted = await pipe.execute()
        return sum(int(n) for n in deleted[:-1])

    async def purge_expired_one_time_tokens(self, purpose: str, now: datetime) -> int:
        # Token keys carry a TTL covering expiry plus retention.
        return 0

    # -- rate limit counters -----------------------------------------------

    async def increment_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        count, start = await self._fixed_window(
            keys=[key], args=[repr(float(now)), window_seconds]
        )
        return int(count), float(start)

    async def get_counter(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        count, start = await self.client.hmget(key, "count", "start")
        if count is None or start is None:
            return 0, now
        window_start = float(start)
        if now - window_start >= window_seconds:
            return 0, now
        return int(count), window_start

    async def decrement_counter(self, key: str, window_seconds: int, now: float) -> int:
        remaining = await self._decrement(
            keys=[key], args=[repr(float(now)), window_seconds]
        )
        return int(remaining)

    async def delete_counter(self, key: str) -> None:
        await self.client.delete(key)

    async def purge_expired_counters(self, now: float) -> int:
        # Counter hashes expire with their window.
        return 0


__all__ = ["RedisCache"]
