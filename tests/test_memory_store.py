"""Tests for the in-process store backing users, sessions, tokens and counters."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from travelauth.storage.errors import ConstraintViolation
from travelauth.storage.memory import MemoryStore
from travelauth.storage.models import (
    EMAIL_VERIFICATION_PURPOSE,
    ONE_TIME_TOKEN_RETENTION_SECONDS,
    PASSWORD_RESET_PURPOSE,
    ConsumeStatus,
    OneTimeToken,
    Session,
    UserProfile,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _session(session_id, user_id="u-1", minutes=30):
    return Session(
        id=session_id,
        user_id=user_id,
        created_at=NOW,
        last_activity_at=NOW,
        expires_at=NOW + timedelta(minutes=minutes),
    )


class TestUsers:
    async def test_email_is_unique_case_insensitively(self, memory_store):
        await memory_store.create(UserProfile(email="Alice@Example.com"), "hash")

        with pytest.raises(ConstraintViolation):
            await memory_store.create(UserProfile(email="alice@example.com "), "hash")

    async def test_find_by_email_returns_credential(self, memory_store):
        user = await memory_store.create(UserProfile(email="alice@example.com"), "hash-1")

        credential = await memory_store.find_by_email("ALICE@example.com")

        assert credential.user_id == user.id
        assert credential.password_hash == "hash-1"

    async def test_update_password_hash_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            await memory_store.update_password_hash("missing", "hash")

    async def test_set_user_status(self, memory_store):
        user = await memory_store.create(UserProfile(email="alice@example.com"), "hash")

        updated = await memory_store.set_user_status(user.id, "suspended")

        assert updated.status == "suspended"
        assert (await memory_store.get_user(user.id)).status == "suspended"
        assert await memory_store.set_user_status("missing", "active") is None

    async def test_set_email_verified(self, memory_store):
        user = await memory_store.create(UserProfile(email="alice@example.com"), "hash")
        assert user.email_verified is False

        updated = await memory_store.set_email_verified(user.id)

        assert updated.email_verified is True
        assert (await memory_store.get_user(user.id)).email_verified is True
        assert await memory_store.set_email_verified("missing") is None


class TestSessions:
    async def test_delete_user_sessions_keeps_excepted(self, memory_store):
        for sid in ("a", "b", "c"):
            await memory_store.save_session(_session(sid))

        revoked = await memory_store.delete_user_sessions("u-1", except_session_id="b")

        assert revoked == 2
        assert [s.id for s in await memory_store.list_user_sessions("u-1")] == ["b"]

    async def test_purge_drops_only_expired(self, memory_store):
        await memory_store.save_session(_session("short", minutes=1))
        await memory_store.save_session(_session("long", minutes=60))

        purged = await memory_store.purge_expired_sessions(NOW + timedelta(minutes=5))

        assert purged == 1
        assert await memory_store.load_session("short") is None
        assert await memory_store.load_session("long") is not None

    async def test_touch_missing_session(self, memory_store):
        assert await memory_store.touch_session("nope", NOW) is False


def _token(token_hash, user_id="u-1", purpose=PASSWORD_RESET_PURPOSE, hours=1):
    return OneTimeToken(
        token_hash=token_hash,
        user_id=user_id,
        purpose=purpose,
        issued_at=NOW,
        expires_at=NOW + timedelta(hours=hours),
    )


class TestOneTimeTokens:
    async def test_concurrent_consumers_single_winner(self, memory_store):
        await memory_store.save_one_time_token(_token("h"))

        results = await asyncio.gather(
            *(
                memory_store.consume_one_time_token(PASSWORD_RESET_PURPOSE, "h", NOW)
                for _ in range(10)
            )
        )

        statuses = [status for status, _ in results]
        assert statuses.count(ConsumeStatus.CONSUMED) == 1
        assert statuses.count(ConsumeStatus.INVALID) == 9

    async def test_token_does_not_consume_under_another_purpose(self, memory_store):
        await memory_store.save_one_time_token(_token("h"))

        status, user_id = await memory_store.consume_one_time_token(
            EMAIL_VERIFICATION_PURPOSE, "h", NOW
        )

        assert (status, user_id) == (ConsumeStatus.INVALID, None)

    async def test_delete_user_tokens_is_scoped(self, memory_store):
        await memory_store.save_one_time_token(_token("a"))
        await memory_store.save_one_time_token(_token("b"))
        await memory_store.save_one_time_token(_token("c", user_id="u-2"))
        await memory_store.save_one_time_token(_token("d", purpose=EMAIL_VERIFICATION_PURPOSE))

        deleted = await memory_store.delete_user_one_time_tokens(PASSWORD_RESET_PURPOSE, "u-1")

        assert deleted == 2
        assert set(memory_store.one_time_tokens) == {"c", "d"}
        assert await memory_store.delete_user_one_time_tokens(PASSWORD_RESET_PURPOSE, "u-1") == 0

    async def test_purge_keeps_tokens_within_retention(self, memory_store):
        await memory_store.save_one_time_token(_token("old", hours=1))
        await memory_store.save_one_time_token(_token("fresh", hours=48))
        await memory_store.save_one_time_token(
            _token("other", purpose=EMAIL_VERIFICATION_PURPOSE, hours=1)
        )
        later = NOW + timedelta(hours=1, seconds=ONE_TIME_TOKEN_RETENTION_SECONDS + 1)

        purged = await memory_store.purge_expired_one_time_tokens(PASSWORD_RESET_PURPOSE, later)

        assert purged == 1
        assert set(memory_store.one_time_tokens) == {"fresh", "other"}
        assert (PASSWORD_RESET_PURPOSE, "u-1") in memory_store._user_tokens

    async def test_expired_token_still_reports_expired_before_purge(self, memory_store):
        await memory_store.save_one_time_token(_token("h", hours=1))

        status, _ = await memory_store.consume_one_time_token(
            PASSWORD_RESET_PURPOSE, "h", NOW + timedelta(hours=2)
        )

        assert status == ConsumeStatus.EXPIRED


class TestCounters:
    async def test_window_expiry_starts_fresh_bucket(self, memory_store):
        assert await memory_store.increment_counter("k", 60, 100.0) == (1, 100.0)
        assert await memory_store.increment_counter("k", 60, 120.0) == (2, 100.0)
        assert await memory_store.increment_counter("k", 60, 160.0) == (1, 160.0)

    async def test_decrement_never_goes_negative(self, memory_store):
        await memory_store.increment_counter("k", 60, 0.0)

        assert await memory_store.decrement_counter("k", 60, 1.0) == 0
        assert await memory_store.decrement_counter("k", 60, 1.0) == 0

    async def test_delete_counter(self, memory_store):
        await memory_store.increment_counter("k", 60, 0.0)
        await memory_store.delete_counter("k")

        assert await memory_store.get_counter("k", 60, 1.0) == (0, 1.0)

    async def test_purge_drops_only_elapsed_windows(self, memory_store):
        await memory_store.increment_counter("short", 60, 0.0)
        await memory_store.increment_counter("long", 3600, 0.0)

        purged = await memory_store.purge_expired_counters(120.0)

        assert purged == 1
        assert set(memory_store.counters) == {"long"}
