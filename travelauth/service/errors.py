from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds an auth flow can return."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    SERVER_ERROR = "SERVER_ERROR"


DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.VALIDATION_ERROR: "invalid request",
    ErrorKind.WEAK_PASSWORD: "password does not meet the password policy",
    ErrorKind.INVALID_CREDENTIALS: "invalid email or password",
    ErrorKind.USER_ALREADY_EXISTS: "an account with this email already exists",
    ErrorKind.USER_NOT_FOUND: "user not found",
    ErrorKind.TOKEN_INVALID: "invalid token",
    ErrorKind.TOKEN_EXPIRED: "token expired",
    ErrorKind.SESSION_EXPIRED: "session expired",
    ErrorKind.AUTHENTICATION_REQUIRED: "authentication required",
    ErrorKind.RATE_LIMIT_EXCEEDED: "too many requests",
    ErrorKind.ACCOUNT_LOCKED: "account locked",
    ErrorKind.ACCOUNT_SUSPENDED: "account suspended",
    ErrorKind.SERVER_ERROR: "internal error",
}


@dataclass(frozen=True)
class AuthError:
    kind: ErrorKind
    message: str
    retry_after: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AuthError":
        return cls(
            kind=kind,
            message=message or DEFAULT_MESSAGES[kind],
            retry_after=retry_after,
            details=details or {},
        )


class FatalAuthError(Exception):
    """Unrecoverable misconfiguration; never converted into an ``Err``."""


class SigningKeyUnavailable(FatalAuthError):
    """The token signing key is missing or too short to be safe."""


class ExternalCallError(Exception):
    """A collaborator call failed or timed out; surfaces as SERVER_ERROR."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"{operation}: {reason}")
        self.operation = operation
        self.reason = reason


__all__ = [
    "ErrorKind",
    "DEFAULT_MESSAGES",
    "AuthError",
    "FatalAuthError",
    "SigningKeyUnavailable",
    "ExternalCallError",
]
