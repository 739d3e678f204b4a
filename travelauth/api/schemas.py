from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from travelauth.logging import get_correlation_id
from travelauth.service.auth import AuthContext, AuthSuccess
from travelauth.service.errors import ErrorKind
from travelauth.storage.models import Session, User

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="One of the ErrorKind values")
    message: str
    retry_after: Optional[int] = None
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class UserPayload(BaseModel):
    id: str
    email: str
    role: str = "user"
    first_name: str = ""
    last_name: str = ""
    status: str = "active"
    email_verified: bool = False

    @classmethod
    def from_user(cls, user: User) -> "UserPayload":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            status=user.status,
            email_verified=user.email_verified,
        )


class SessionPayload(BaseModel):
    session_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    remember_me: bool = False
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionPayload":
        return cls(
            session_id=session.id,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            remember_me=session.remember_me,
            ip_addr=session.device.ip_addr,
            user_agent=session.device.user_agent,
        )


class AuthResponse(BaseModel):
    user: UserPayload
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime

    @classmethod
    def from_success(cls, success: AuthSuccess) -> "AuthResponse":
        return cls(
            user=UserPayload.from_user(success.user),
            session_id=success.session.id,
            session_expires_at=success.session.expires_at,
            access_token=success.access_token,
            refresh_token=success.refresh_token,
            token_type=success.token_type,
            expires_at=success.expires_at,
        )


class MeResponse(BaseModel):
    user: UserPayload
    session: SessionPayload

    @classmethod
    def from_context(cls, ctx: AuthContext) -> "MeResponse":
        return cls(
            user=UserPayload.from_user(ctx.user),
            session=SessionPayload.from_session(ctx.session),
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionPayload]


class MessageResponse(BaseModel):
    message: str


class RevokedResponse(BaseModel):
    revoked: int


__all__ = [
    "ErrorBody",
    "Envelope",
    "UserPayload",
    "SessionPayload",
    "AuthResponse",
    "MeResponse",
    "SessionListResponse",
    "MessageResponse",
    "RevokedResponse",
]
