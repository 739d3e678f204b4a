from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from travelauth.config import Settings
from travelauth.service.password_reset import OneTimeTokenBackend, OneTimeTokenManager
from travelauth.storage.models import EMAIL_VERIFICATION_PURPOSE


class EmailVerificationManager(OneTimeTokenManager):
    """Single-use tokens proving control of a registered address."""

    def __init__(
        self,
        backend: OneTimeTokenBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(
            backend,
            purpose=EMAIL_VERIFICATION_PURPOSE,
            ttl=timedelta(minutes=settings.email_verification_ttl_minutes),
            label="verification token",
            clock=clock,
        )


__all__ = ["EmailVerificationManager"]
