from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

from travelauth.api.schemas import (
    AuthResponse,
    Envelope,
    ErrorBody,
    MeResponse,
    MessageResponse,
    RevokedResponse,
    SessionListResponse,
    SessionPayload,
    UserPayload,
)
from travelauth.logging import get_logger
from travelauth.service.auth import AuthContext, AuthSuccess
from travelauth.service.errors import AuthError, ErrorKind
from travelauth.service.rate_limit import Allowed
from travelauth.service.result import Result
from travelauth.storage.models import User

logger = get_logger(__name__)

HTTP_STATUS: Mapping[ErrorKind, int] = MappingProxyType(
    {
        ErrorKind.VALIDATION_ERROR: 400,
        ErrorKind.WEAK_PASSWORD: 400,
        ErrorKind.INVALID_CREDENTIALS: 401,
        ErrorKind.TOKEN_INVALID: 401,
        ErrorKind.TOKEN_EXPIRED: 401,
        ErrorKind.SESSION_EXPIRED: 401,
        ErrorKind.AUTHENTICATION_REQUIRED: 401,
        ErrorKind.ACCOUNT_LOCKED: 403,
        ErrorKind.ACCOUNT_SUSPENDED: 403,
        ErrorKind.USER_NOT_FOUND: 404,
        ErrorKind.USER_ALREADY_EXISTS: 409,
        ErrorKind.RATE_LIMIT_EXCEEDED: 429,
        ErrorKind.SERVER_ERROR: 500,
    }
)

# A refresh token that fails its signature or structure is refused outright
# rather than prompting re-authentication.
OPERATION_STATUS_OVERRIDES: Mapping[Tuple[str, ErrorKind], int] = MappingProxyType(
    {("refresh", ErrorKind.TOKEN_INVALID): 403}
)

SUCCESS_STATUS: Mapping[str, int] = MappingProxyType({"register": 201})


@dataclass(frozen=True)
class RenderedResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def status_for(operation: str, kind: ErrorKind) -> int:
    return OPERATION_STATUS_OVERRIDES.get((operation, kind), HTTP_STATUS[kind])


def _rate_limit_headers(error: AuthError) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)
    if "limit" in error.details:
        headers["X-RateLimit-Limit"] = str(error.details["limit"])
        headers["X-RateLimit-Remaining"] = str(error.details.get("remaining", 0))
        headers["X-RateLimit-Reset"] = str(error.details.get("reset_seconds", 0))
    return headers


def _serialize(value: Any) -> Any:
    if isinstance(value, AuthSuccess):
        return AuthResponse.from_success(value).model_dump(mode="json")
    if isinstance(value, AuthContext):
        return MeResponse.from_context(value).model_dump(mode="json")
    if isinstance(value, User):
        return UserPayload.from_user(value).model_dump()
    if isinstance(value, str):
        return MessageResponse(message=value).model_dump()
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return RevokedResponse(revoked=value).model_dump()
    if isinstance(value, Allowed):
        return {
            "limit": value.limit,
            "remaining": value.remaining,
            "reset_seconds": value.reset_seconds,
        }
    if isinstance(value, list):
        return SessionListResponse(
            sessions=[SessionPayload.from_session(item) for item in value]
        ).model_dump(mode="json")
    return value


def error_response(operation: str, error: AuthError) -> RenderedResponse:
    status_code = status_for(operation, error.kind)
    details = {k: v for k, v in error.details.items() if k not in {"limit", "remaining", "reset_seconds"}}
    body = ErrorBody(
        code=error.kind.value,
        message=error.message,
        retry_after=error.retry_after,
        details=details or None,
    )
    headers = _rate_limit_headers(error) if error.kind == ErrorKind.RATE_LIMIT_EXCEEDED else {}
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        "auth_error_response",
        operation=operation,
        status_code=status_code,
        error_code=error.kind.value,
    )
    envelope = Envelope(status="error", error=body)
    return RenderedResponse(status_code, envelope.model_dump(mode="json"), headers)


def render_result(operation: str, result: Result) -> RenderedResponse:
    """Map a flow's ``Result`` to an HTTP status, envelope and headers."""

    if result.is_err():
        return error_response(operation, result.error)
    value = result.value
    headers = value.headers() if isinstance(value, Allowed) else {}
    envelope = Envelope(status="ok", data=_serialize(value))
    return RenderedResponse(
        SUCCESS_STATUS.get(operation, 200), envelope.model_dump(mode="json"), headers
    )


__all__ = [
    "HTTP_STATUS",
    "OPERATION_STATUS_OVERRIDES",
    "SUCCESS_STATUS",
    "RenderedResponse",
    "status_for",
    "error_response",
    "render_result",
]
