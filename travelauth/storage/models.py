from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    first_name: str = ""
    last_name: str = ""
    status: str = "active"
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserProfile:
    """Registration input; everything about a user except the password."""

    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"


@dataclass
class Credential:
    user_id: str
    email: str
    password_hash: str


@dataclass
class DeviceInfo:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)
    remember_me: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "device": asdict(self.device),
            "remember_me": self.remember_me,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Session":
        device = raw.get("device") or {}
        return cls(
            id=raw["id"],
            user_id=raw["user_id"],
            created_at=datetime.fromisoformat(raw["created_at"]),
            last_activity_at=datetime.fromisoformat(raw["last_activity_at"]),
            expires_at=datetime.fromisoformat(raw["expires_at"]),
            device=DeviceInfo(
                ip_addr=device.get("ip_addr"),
                user_agent=device.get("user_agent"),
                fingerprint=device.get("fingerprint"),
            ),
            remember_me=bool(raw.get("remember_me", False)),
        )


PASSWORD_RESET_PURPOSE = "password_reset"
EMAIL_VERIFICATION_PURPOSE = "email_verification"

# Spent and expired one-time tokens are kept this long so a replay is
# reported as invalid/expired rather than silently unknown.
ONE_TIME_TOKEN_RETENTION_SECONDS = 24 * 60 * 60


@dataclass
class OneTimeToken:
    """Stored form of an emailed single-use token; only its hash is kept."""

    token_hash: str
    user_id: str
    purpose: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_retained(self, now: datetime) -> bool:
        return (now - self.expires_at).total_seconds() <= ONE_TIME_TOKEN_RETENTION_SECONDS


class ConsumeStatus(str, Enum):
    """Outcome of an atomic one-time-token check-and-mark."""

    CONSUMED = "consumed"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass
class RateLimitBucket:
    count: int
    window_start: float
    window_seconds: int = 0

    def is_elapsed(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds
