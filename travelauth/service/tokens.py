from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from travelauth.config import Settings
from travelauth.logging import get_logger
from travelauth.service.errors import ErrorKind, SigningKeyUnavailable
from travelauth.service.result import Ok, Result, fail

logger = get_logger(__name__)

MIN_SIGNING_KEY_LENGTH = 32
# Issued tokens are a few hundred bytes; anything far larger is hostile
MAX_TOKEN_LENGTH = 8192

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "sid", "role", "iat", "exp", "jti")


class SigningKeyProvider(Protocol):
    def get_signing_key(self) -> str: ...


class SettingsKeyProvider:
    """Reads the HS256 secret from ``Settings.jwt_secret``."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_signing_key(self) -> str:
        secret = self.settings.jwt_secret
        if not secret:
            raise SigningKeyUnavailable("JWT_SECRET is not configured")
        if len(secret) < MIN_SIGNING_KEY_LENGTH:
            raise SigningKeyUnavailable(
                f"JWT_SECRET must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        return secret


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    sid: str
    role: str
    iat: int
    exp: int
    jti: str
    token_type: str

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def session_id(self) -> str:
        return self.sid

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenService:
    """HS256 JWT issuance and validation.

    Validation is purely cryptographic and temporal; whether the referenced
    session is still live is the caller's concern.
    """

    def __init__(
        self,
        settings: Settings,
        key_provider: Optional[SigningKeyProvider] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.key_provider = key_provider or SettingsKeyProvider(settings)
        self._clock = clock or time.time
        self._leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        key = self.key_provider.get_signing_key()
        return self._encode_segment(
            hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(
        self,
        token_type: str,
        user_id: str,
        session_id: str,
        role: str,
        ttl: timedelta,
    ) -> IssuedToken:
        now = int(self._clock())
        exp = now + int(ttl.total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "role": role,
            "token_type": token_type,
            "iat": now,
            "exp": exp,
            "jti": jti,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=jti,
        )

    def issue(
        self,
        user_id: str,
        session_id: str,
        role: str,
        ttl: Optional[timedelta] = None,
    ) -> IssuedToken:
        ttl = ttl or timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._issue(ACCESS, user_id, session_id, role, ttl)

    def issue_refresh(
        self,
        user_id: str,
        session_id: str,
        role: str,
        ttl: Optional[timedelta] = None,
    ) -> IssuedToken:
        ttl = ttl or timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return self._issue(REFRESH, user_id, session_id, role, ttl)

    def validate(self, token: str, *, expected_type: str = ACCESS) -> Result[TokenPayload]:
        if not token or not isinstance(token, str):
            return fail(ErrorKind.TOKEN_INVALID)
        # compare_digest only accepts ASCII strings
        if len(token) > MAX_TOKEN_LENGTH or not token.isascii():
            logger.warning("jwt_rejected_unparseable", length=len(token))
            return fail(ErrorKind.TOKEN_INVALID)
        parts = token.split(".")
        if len(parts) != 3:
            return fail(ErrorKind.TOKEN_INVALID)
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return fail(ErrorKind.TOKEN_INVALID)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return fail(ErrorKind.TOKEN_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return fail(ErrorKind.TOKEN_INVALID)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error_type=type(exc).__name__)
            return fail(ErrorKind.TOKEN_INVALID)
        if not isinstance(payload, dict):
            return fail(ErrorKind.TOKEN_INVALID)
        if any(payload.get(claim) in (None, "") for claim in _REQUIRED_CLAIMS):
            return fail(ErrorKind.TOKEN_INVALID)
        if payload.get("iss") != self.settings.jwt_issuer:
            return fail(ErrorKind.TOKEN_INVALID)
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return fail(ErrorKind.TOKEN_INVALID)
        if payload.get("token_type", ACCESS) != expected_type:
            return fail(ErrorKind.TOKEN_INVALID)
        try:
            exp_ts = int(payload["exp"])
            iat_ts = int(payload["iat"])
        except (TypeError, ValueError):
            return fail(ErrorKind.TOKEN_INVALID)
        if exp_ts <= self._clock() - self._leeway.total_seconds():
            return fail(ErrorKind.TOKEN_EXPIRED)
        return Ok(
            TokenPayload(
                sub=str(payload["sub"]),
                sid=str(payload["sid"]),
                role=str(payload["role"]),
                iat=iat_ts,
                exp=exp_ts,
                jti=str(payload["jti"]),
                token_type=payload.get("token_type", ACCESS),
            )
        )


__all__ = [
    "SigningKeyProvider",
    "SettingsKeyProvider",
    "IssuedToken",
    "TokenPayload",
    "TokenService",
    "ACCESS",
    "REFRESH",
    "MIN_SIGNING_KEY_LENGTH",
    "MAX_TOKEN_LENGTH",
]
