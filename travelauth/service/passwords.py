from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from travelauth.config import Settings
from travelauth.logging import get_logger
from travelauth.service.errors import ErrorKind
from travelauth.service.result import Ok, Result, fail

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_DUMMY_PASSWORD = "travelauth-timing-dummy"


def check_policy(password: str) -> List[str]:
    """Return the list of policy violations for ``password`` (empty when valid)."""

    violations: List[str] = []
    if not isinstance(password, str):
        return ["password must be a string"]
    if len(password) < MIN_PASSWORD_LENGTH:
        violations.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        violations.append(f"password must not exceed {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        violations.append("password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        violations.append("password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        violations.append("password must contain at least one number")
    if not re.search(r"[^a-zA-Z0-9]", password):
        violations.append("password must contain at least one special character")
    return violations


class CredentialVerifier:
    """argon2id hashing and constant-time verification.

    All methods are synchronous and CPU bound; async callers should run them
    through ``asyncio.to_thread``.
    """

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        # Same cost parameters as real hashes so a missing user takes as long
        # as a wrong password.
        self._dummy_hash = self._hasher.hash(_DUMMY_PASSWORD)

    def check_policy(self, password: str) -> List[str]:
        return check_policy(password)

    def hash(self, password: str) -> Result[str]:
        violations = check_policy(password)
        if violations:
            return fail(
                ErrorKind.WEAK_PASSWORD,
                details={"violations": violations},
            )
        return Ok(self._hasher.hash(password))

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerificationError):
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False


__all__ = [
    "CredentialVerifier",
    "check_policy",
    "MIN_PASSWORD_LENGTH",
    "MAX_PASSWORD_LENGTH",
]
