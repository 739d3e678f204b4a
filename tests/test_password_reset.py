"""Tests for single-use emailed tokens (password reset and email verification)."""

import asyncio
from datetime import timedelta

import pytest

from travelauth.service.errors import ErrorKind
from travelauth.service.email_verification import EmailVerificationManager
from travelauth.service.password_reset import PasswordResetManager, hash_one_time_token


@pytest.fixture
def manager(memory_store, settings, clock):
    return PasswordResetManager(memory_store, settings, clock=clock.datetime)


async def test_issue_stores_only_the_hash(manager, memory_store):
    issued = await manager.issue("user-1")

    assert issued.token not in memory_store.one_time_tokens
    assert hash_one_time_token(issued.token) in memory_store.one_time_tokens
    assert issued.record.expires_at - issued.record.issued_at == timedelta(minutes=60)
    assert len(issued.token) >= 32


async def test_consume_returns_user_id(manager):
    issued = await manager.issue("user-1")

    result = await manager.consume(issued.token)
    assert result.is_ok()
    assert result.value == "user-1"


async def test_consumed_token_cannot_be_reused(manager):
    issued = await manager.issue("user-1")
    await manager.consume(issued.token)

    second = await manager.consume(issued.token)
    assert second.error.kind == ErrorKind.TOKEN_INVALID


async def test_expired_token(manager, clock):
    issued = await manager.issue("user-1")
    clock.advance(61 * 60)

    result = await manager.consume(issued.token)
    assert result.error.kind == ErrorKind.TOKEN_EXPIRED


async def test_unknown_token(manager):
    assert (await manager.consume("never-issued")).error.kind == ErrorKind.TOKEN_INVALID
    assert (await manager.consume("")).error.kind == ErrorKind.TOKEN_INVALID


async def test_concurrent_consume_succeeds_once(manager):
    issued = await manager.issue("user-1")

    results = await asyncio.gather(*(manager.consume(issued.token) for _ in range(10)))

    assert sum(1 for r in results if r.is_ok()) == 1
    assert all(r.error.kind == ErrorKind.TOKEN_INVALID for r in results if r.is_err())


async def test_tokens_are_independent(manager):
    first = await manager.issue("user-1")
    second = await manager.issue("user-1")
    await manager.consume(first.token)

    assert (await manager.consume(second.token)).is_ok()


async def test_consume_messages_name_the_token_kind(manager, clock):
    issued = await manager.issue("user-1")
    clock.advance(61 * 60)

    assert (await manager.consume(issued.token)).error.message == "reset token expired"
    assert (await manager.consume("nope")).error.message == (
        "invalid or already used reset token"
    )


async def test_revoke_for_user_invalidates_outstanding_tokens(manager):
    first = await manager.issue("user-1")
    second = await manager.issue("user-1")
    other_user = await manager.issue("user-2")

    assert await manager.revoke_for_user("user-1") == 2

    assert (await manager.consume(first.token)).error.kind == ErrorKind.TOKEN_INVALID
    assert (await manager.consume(second.token)).error.kind == ErrorKind.TOKEN_INVALID
    assert (await manager.consume(other_user.token)).is_ok()


async def test_purge_expired_uses_manager_clock(manager, memory_store, clock):
    await manager.issue("user-1")
    clock.advance(2 * 24 * 60 * 60)

    assert await manager.purge_expired() == 1
    assert memory_store.one_time_tokens == {}


class TestEmailVerificationTokens:
    @pytest.fixture
    def verifications(self, memory_store, settings, clock):
        return EmailVerificationManager(memory_store, settings, clock=clock.datetime)

    async def test_ttl_comes_from_settings(self, verifications):
        issued = await verifications.issue("user-1")

        assert issued.record.expires_at - issued.record.issued_at == timedelta(hours=24)
        assert issued.record.purpose == "email_verification"

    async def test_reset_token_is_not_a_verification_token(self, manager, verifications):
        reset = await manager.issue("user-1")
        verify = await verifications.issue("user-1")

        assert (await verifications.consume(reset.token)).error.kind == ErrorKind.TOKEN_INVALID
        assert (await manager.consume(verify.token)).error.kind == ErrorKind.TOKEN_INVALID
        assert (await verifications.consume(verify.token)).value == "user-1"

    async def test_expired_verification_token(self, verifications, clock):
        issued = await verifications.issue("user-1")
        clock.advance(24 * 60 * 60 + 1)

        result = await verifications.consume(issued.token)
        assert result.error.kind == ErrorKind.TOKEN_EXPIRED
        assert result.error.message == "verification token expired"

    async def test_revoke_leaves_reset_tokens_alone(self, manager, verifications):
        reset = await manager.issue("user-1")
        await verifications.issue("user-1")

        assert await verifications.revoke_for_user("user-1") == 1
        assert (await manager.consume(reset.token)).is_ok()
