from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from travelauth.logging import get_logger, mask_email

logger = get_logger(__name__)


class NotificationSender(Protocol):
    async def send_password_reset(self, email: str, token: str) -> None: ...

    async def send_email_verification(self, email: str, token: str) -> None: ...


@dataclass(frozen=True)
class OutboundMessage:
    email: str
    subject: str
    token: str
    link: str


class LoggingNotificationSender:
    """Dev-mode sender: logs a redacted notice instead of delivering mail.

    Messages are kept in ``outbox`` so local tooling can pick up emailed links.
    """

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.outbox: List[OutboundMessage] = []

    def _deliver(self, email: str, subject: str, token: str, path: str) -> None:
        link = f"{self.base_url}/{path}?token={token}"
        self.outbox.append(
            OutboundMessage(email=email, subject=subject, token=token, link=link)
        )
        logger.info("email_dev_mode", to=mask_email(email), subject=subject)

    async def send_password_reset(self, email: str, token: str) -> None:
        self._deliver(email, "Reset your password", token, "reset-password")

    async def send_email_verification(self, email: str, token: str) -> None:
        self._deliver(email, "Verify your email address", token, "verify-email")


__all__ = [
    "NotificationSender",
    "OutboundMessage",
    "LoggingNotificationSender",
]
