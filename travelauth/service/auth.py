from __future__ import annotations

import asyncio
import functools
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, List, Optional, Protocol

from travelauth.config import Settings
from travelauth.logging import get_logger, hash_for_log, sanitize_error_message
from travelauth.service.errors import AuthError, ErrorKind, ExternalCallError, FatalAuthError
from travelauth.service.email_verification import EmailVerificationManager
from travelauth.service.notifications import NotificationSender
from travelauth.service.password_reset import PasswordResetManager, hash_one_time_token
from travelauth.service.passwords import CredentialVerifier
from travelauth.service.rate_limit import (
    ACCOUNT_LOCKOUT,
    EMAIL_VERIFICATION_CONFIRM,
    EMAIL_VERIFICATION_REQUEST,
    LOGIN,
    PASSWORD_CHANGE,
    PASSWORD_RESET,
    PASSWORD_RESET_CONFIRM,
    REGISTER,
    TOKEN_REFRESH,
    RateDecision,
    RateLimiter,
)
from travelauth.service.result import Err, Ok, Result, fail
from travelauth.service.sessions import SessionStore
from travelauth.service.tokens import REFRESH, TokenPayload, TokenService
from travelauth.storage.errors import ConstraintViolation
from travelauth.storage.models import Credential, DeviceInfo, Session, User, UserProfile

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254

RESET_REQUESTED_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)
VERIFICATION_SENT_MESSAGE = "A verification link has been sent to your email address."
ALREADY_VERIFIED_MESSAGE = "Email address is already verified."


class UserRepository(Protocol):
    async def find_by_email(self, email: str) -> Optional[Credential]: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def create(self, profile: UserProfile, password_hash: str) -> User:
        """Persist a new user; raises ConstraintViolation on a duplicate email."""
        ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    async def set_email_verified(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class AuthSuccess:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthContext:
    user: User
    session: Session
    claims: TokenPayload


def normalize_email(email: Any) -> str:
    if not isinstance(email, str):
        return ""
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= MAX_EMAIL_LENGTH and bool(EMAIL_PATTERN.match(email))


def _guarded(func):
    """Turn collaborator failures escaping a flow into a generic SERVER_ERROR."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (ExternalCallError, ConstraintViolation) as exc:
            self.logger.error(
                "auth_flow_failed",
                flow=func.__name__,
                error=sanitize_error_message(str(exc)),
            )
            return fail(ErrorKind.SERVER_ERROR)

    return wrapper


class AuthService:
    """Register, login, logout, token refresh, password reset and email
    verification flows.

    Every flow consults the rate limiter before touching a store and returns a
    ``Result``. Storage, email and signing are injected collaborators; each
    call to them is bounded by ``external_call_timeout_seconds``.
    """

    def __init__(
        self,
        *,
        users: UserRepository,
        sessions: SessionStore,
        rate_limiter: RateLimiter,
        tokens: TokenService,
        reset_tokens: PasswordResetManager,
        email_verifications: EmailVerificationManager,
        notifier: NotificationSender,
        verifier: CredentialVerifier,
        settings: Settings,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.reset_tokens = reset_tokens
        self.email_verifications = email_verifications
        self.notifier = notifier
        self.verifier = verifier
        self.settings = settings
        self.timeout = settings.external_call_timeout_seconds
        self.logger = logger

    # -- plumbing ----------------------------------------------------------

    async def _call(self, operation: str, awaitable: Awaitable, *, shield: bool = False):
        """Await a collaborator under the external-call timeout.

        Mutations are shielded so a cancelled caller cannot abandon them half
        way. Constraint violations and fatal errors pass through unchanged.
        """
        task = asyncio.shield(awaitable) if shield else awaitable
        try:
            return await asyncio.wait_for(task, timeout=self.timeout)
        except (ConstraintViolation, FatalAuthError):
            raise
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "external_call_timeout", operation=operation, timeout=self.timeout
            )
            raise ExternalCallError(operation, "timeout") from exc
        except Exception as exc:
            self.logger.error(
                "external_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ExternalCallError(operation, type(exc).__name__) from exc

    @staticmethod
    def _rate_limited(decision: RateDecision) -> Err:
        return fail(
            ErrorKind.RATE_LIMIT_EXCEEDED,
            retry_after=decision.retry_after,
            details={
                "limit": decision.limit,
                "remaining": 0,
                "reset_seconds": decision.reset_seconds,
            },
        )

    async def _gate(self, operation: str, key: str) -> Optional[Err]:
        decision = await self._call(
            f"rate_limit:{operation}",
            self.rate_limiter.check(operation, key),
            shield=True,
        )
        if decision.allowed:
            return None
        return self._rate_limited(decision)

    @staticmethod
    def _client_ip(device: Optional[DeviceInfo]) -> Optional[str]:
        return device.ip_addr if device and device.ip_addr else None

    @staticmethod
    def _login_key(email: str, device: Optional[DeviceInfo]) -> str:
        ip = AuthService._client_ip(device)
        return f"{ip}:{email}" if ip else email

    @staticmethod
    def _policy_error(violations: List[str]) -> Err:
        return fail(
            ErrorKind.VALIDATION_ERROR,
            "password does not meet the password policy",
            details={"field": "password", "violations": violations},
        )

    def _weak_password(self, error: AuthError) -> Err:
        return self._policy_error(list(error.details.get("violations", [])))

    async def _hash(self, password: str) -> Result[str]:
        return await asyncio.to_thread(self.verifier.hash, password)

    def _issue_tokens(self, user: User, session: Session) -> AuthSuccess:
        access = self.tokens.issue(user.id, session.id, user.role)
        refresh = self.tokens.issue_refresh(user.id, session.id, user.role)
        return AuthSuccess(
            user=user,
            session=session,
            access_token=access.token,
            refresh_token=refresh.token,
            expires_at=access.expires_at,
        )

    async def _start_session(
        self,
        user: User,
        device: Optional[DeviceInfo],
        *,
        remember_me: bool = False,
    ) -> AuthSuccess:
        session = await self._call(
            "create_session",
            self.sessions.create(user.id, device, remember_me=remember_me),
            shield=True,
        )
        return self._issue_tokens(user, session)

    async def _touch(self, session_id: str) -> None:
        try:
            await self._call("touch_session", self.sessions.touch(session_id), shield=True)
        except ExternalCallError:
            # Already logged; activity tracking never fails a request
            pass

    # -- flows -------------------------------------------------------------

    @_guarded
    async def register(
        self,
        profile: UserProfile,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Result[AuthSuccess]:
        email = normalize_email(profile.email)
        limited = await self._gate(REGISTER, self._client_ip(device) or email)
        if limited:
            return limited
        if not is_valid_email(email):
            return fail(
                ErrorKind.VALIDATION_ERROR,
                "invalid email address",
                details={"field": "email"},
            )
        violations = self.verifier.check_policy(password)
        if violations:
            return self._policy_error(violations)

        existing = await self._call("find_by_email", self.users.find_by_email(email))
        if existing is not None:
            self.logger.info("register_email_taken", email_hash=hash_for_log(email))
            return fail(ErrorKind.USER_ALREADY_EXISTS)

        hashed = await self._hash(password)
        if hashed.is_err():
            return self._weak_password(hashed.error)
        try:
            user = await self._call(
                "create_user",
                self.users.create(replace(profile, email=email), hashed.value),
                shield=True,
            )
        except ConstraintViolation:
            # Lost a concurrent registration race for the same email
            self.logger.info("register_email_taken", email_hash=hash_for_log(email))
            return fail(ErrorKind.USER_ALREADY_EXISTS)

        success = await self._start_session(user, device)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return Ok(success)

    @_guarded
    async def login(
        self,
        email: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
    ) -> Result[AuthSuccess]:
        email = normalize_email(email)
        login_key = self._login_key(email, device)
        limited = await self._gate(LOGIN, login_key)
        if limited:
            return limited
        if not email or not password or not isinstance(password, str):
            return fail(
                ErrorKind.VALIDATION_ERROR,
                "email and password are required",
                details={"fields": ["email", "password"]},
            )

        credential = await self._call("find_by_email", self.users.find_by_email(email))
        if credential is None:
            await asyncio.to_thread(self.verifier.verify_dummy, password)
            self.logger.info("login_failed", email_hash=hash_for_log(email))
            return fail(ErrorKind.INVALID_CREDENTIALS)

        verified = await asyncio.to_thread(
            self.verifier.verify, password, credential.password_hash
        )
        if not verified:
            await self._call(
                "record_login_failure",
                self.rate_limiter.check(ACCOUNT_LOCKOUT, credential.user_id),
                shield=True,
            )
            self.logger.info("login_failed", user_id=credential.user_id)
            return fail(ErrorKind.INVALID_CREDENTIALS)

        user = await self._call("get_user", self.users.get_user(credential.user_id))
        if user is None:
            return fail(ErrorKind.INVALID_CREDENTIALS)
        if user.status == "suspended":
            self.logger.warning("login_account_suspended", user_id=user.id)
            return fail(ErrorKind.ACCOUNT_SUSPENDED)
        lockout = await self._call(
            "lockout_status", self.rate_limiter.peek(ACCOUNT_LOCKOUT, user.id)
        )
        if user.status == "locked" or not lockout.allowed:
            self.logger.warning("login_account_locked", user_id=user.id)
            return fail(
                ErrorKind.ACCOUNT_LOCKED,
                retry_after=None if lockout.allowed else lockout.retry_after,
            )

        if not self.settings.count_successful_logins:
            await self._call(
                "refund_login_attempt",
                self.rate_limiter.refund(LOGIN, login_key),
                shield=True,
            )
        await self._call(
            "clear_lockout",
            self.rate_limiter.reset(ACCOUNT_LOCKOUT, user.id),
            shield=True,
        )
        await self._maybe_rehash(credential, password)

        success = await self._start_session(user, device, remember_me=remember_me)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=success.session.id[:8],
            remember_me=remember_me,
        )
        return Ok(success)

    async def _maybe_rehash(self, credential: Credential, password: str) -> None:
        if not self.verifier.needs_rehash(credential.password_hash):
            return
        hashed = await self._hash(password)
        if hashed.is_err():
            # Stored password predates the current policy; keep its hash
            return
        try:
            await self._call(
                "rehash_password",
                self.users.update_password_hash(credential.user_id, hashed.value),
                shield=True,
            )
            self.logger.info("password_rehashed", user_id=credential.user_id)
        except (ExternalCallError, ConstraintViolation) as exc:
            self.logger.warning(
                "password_rehash_failed",
                user_id=credential.user_id,
                error=sanitize_error_message(str(exc)),
            )

    @_guarded
    async def logout(self, session_id: Optional[str], *, all_devices: bool = False) -> Result[int]:
        """Invalidate a session; repeating a logout still succeeds.

        Returns the number of sessions revoked (0 when already gone).
        """
        if not session_id:
            return fail(ErrorKind.AUTHENTICATION_REQUIRED)
        if all_devices:
            session = await self._call("load_session", self.sessions.get(session_id))
            if session is not None:
                revoked = await self._call(
                    "invalidate_user_sessions",
                    self.sessions.invalidate_all_for_user(session.user_id),
                    shield=True,
                )
                self.logger.info("logout_all_devices", user_id=session.user_id, revoked=revoked)
                return Ok(revoked)
        existed = await self._call("load_session", self.sessions.get(session_id))
        await self._call("invalidate_session", self.sessions.invalidate(session_id), shield=True)
        return Ok(1 if existed else 0)

    @_guarded
    async def authenticate(self, access_token: Optional[str]) -> Result[AuthContext]:
        if not access_token:
            return fail(ErrorKind.AUTHENTICATION_REQUIRED)
        validated = self.tokens.validate(access_token)
        if validated.is_err():
            return validated
        claims = validated.value
        session = await self._call("load_session", self.sessions.get(claims.sid))
        if session is None or session.user_id != claims.sub:
            return fail(ErrorKind.SESSION_EXPIRED)
        await self._touch(session.id)
        user = await self._call("get_user", self.users.get_user(claims.sub))
        if user is None:
            return fail(ErrorKind.SESSION_EXPIRED)
        return Ok(AuthContext(user=user, session=session, claims=claims))

    async def me(self, access_token: Optional[str]) -> Result[AuthContext]:
        return await self.authenticate(access_token)

    @_guarded
    async def refresh(
        self,
        *,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Result[AuthSuccess]:
        if bool(refresh_token) == bool(session_id):
            return fail(
                ErrorKind.VALIDATION_ERROR,
                "provide exactly one of refresh_token or session_id",
            )
        expected_user: Optional[str] = None
        if refresh_token:
            validated = self.tokens.validate(refresh_token, expected_type=REFRESH)
            if validated.is_err():
                return validated
            session_id = validated.value.sid
            expected_user = validated.value.sub
        # Keyed by session: every refresh hands out a new refresh token
        limited = await self._gate(TOKEN_REFRESH, session_id)
        if limited:
            return limited

        session = await self._call("load_session", self.sessions.get(session_id))
        if session is None or (expected_user and session.user_id != expected_user):
            return fail(ErrorKind.SESSION_EXPIRED)
        user = await self._call("get_user", self.users.get_user(session.user_id))
        if user is None:
            return fail(ErrorKind.SESSION_EXPIRED)

        if self.settings.rotate_session_on_refresh:
            rotated = await self._start_session(
                user, session.device, remember_me=session.remember_me
            )
            await self._call(
                "invalidate_session", self.sessions.invalidate(session.id), shield=True
            )
            self.logger.info(
                "session_rotated",
                user_id=user.id,
                old_session_id=session.id[:8],
                new_session_id=rotated.session.id[:8],
            )
            return Ok(rotated)

        await self._touch(session.id)
        return Ok(self._issue_tokens(user, session))

    @_guarded
    async def forgot_password(
        self, email: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[str]:
        email = normalize_email(email)
        limited = await self._gate(PASSWORD_RESET, email)
        if limited:
            return limited
        if not is_valid_email(email):
            return fail(
                ErrorKind.VALIDATION_ERROR,
                "invalid email address",
                details={"field": "email"},
            )

        credential = await self._call("find_by_email", self.users.find_by_email(email))
        if credential is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_for_log(email))
            return Ok(RESET_REQUESTED_MESSAGE)

        issued = await self._call(
            "issue_reset_token",
            self.reset_tokens.issue(credential.user_id),
            shield=True,
        )
        try:
            await self._call(
                "send_password_reset",
                self.notifier.send_password_reset(credential.email, issued.token),
            )
        except ExternalCallError:
            self.logger.warning(
                "password_reset_notification_failed", user_id=credential.user_id
            )
        self.logger.info(
            "password_reset_requested",
            user_id=credential.user_id,
            email_hash=hash_for_log(email),
        )
        return Ok(RESET_REQUESTED_MESSAGE)

    @_guarded
    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Result[AuthSuccess]:
        token = token if isinstance(token, str) else ""
        limited = await self._gate(
            PASSWORD_RESET_CONFIRM, self._client_ip(device) or hash_one_time_token(token)
        )
        if limited:
            return limited
        if not token:
            return fail(ErrorKind.TOKEN_INVALID)
        # Checked before consuming so a weak password does not burn the token
        violations = self.verifier.check_policy(new_password)
        if violations:
            return self._policy_error(violations)

        consumed = await self._call(
            "consume_reset_token", self.reset_tokens.consume(token), shield=True
        )
        if consumed.is_err():
            return consumed
        await self._call(
            "revoke_reset_tokens",
            self.reset_tokens.revoke_for_user(consumed.value),
            shield=True,
        )
        user = await self._call("get_user", self.users.get_user(consumed.value))
        if user is None:
            return fail(ErrorKind.TOKEN_INVALID)

        hashed = await self._hash(new_password)
        if hashed.is_err():
            return self._weak_password(hashed.error)
        await self._call(
            "update_password_hash",
            self.users.update_password_hash(user.id, hashed.value),
            shield=True,
        )
        revoked = await self._call(
            "invalidate_user_sessions",
            self.sessions.invalidate_all_for_user(user.id),
            shield=True,
        )
        await self._call(
            "clear_lockout", self.rate_limiter.reset(ACCOUNT_LOCKOUT, user.id), shield=True
        )
        success = await self._start_session(user, device)
        self.logger.info("password_reset_completed", user_id=user.id, revoked=revoked)
        return Ok(success)

    @_guarded
    async def request_email_verification(self, access_token: Optional[str]) -> Result[str]:
        """Email the signed-in user a fresh verification link.

        Earlier unused links stop working once a new one is issued.
        """
        authenticated = await self.authenticate(access_token)
        if authenticated.is_err():
            return authenticated
        user = authenticated.value.user
        limited = await self._gate(EMAIL_VERIFICATION_REQUEST, user.id)
        if limited:
            return limited
        if user.email_verified:
            return Ok(ALREADY_VERIFIED_MESSAGE)

        await self._call(
            "revoke_verification_tokens",
            self.email_verifications.revoke_for_user(user.id),
            shield=True,
        )
        issued = await self._call(
            "issue_verification_token",
            self.email_verifications.issue(user.id),
            shield=True,
        )
        try:
            await self._call(
                "send_email_verification",
                self.notifier.send_email_verification(user.email, issued.token),
            )
        except ExternalCallError:
            self.logger.warning("email_verification_notification_failed", user_id=user.id)
        self.logger.info("email_verification_requested", user_id=user.id)
        return Ok(VERIFICATION_SENT_MESSAGE)

    @_guarded
    async def verify_email(
        self, token: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[User]:
        token = token if isinstance(token, str) else ""
        limited = await self._gate(
            EMAIL_VERIFICATION_CONFIRM,
            self._client_ip(device) or hash_one_time_token(token),
        )
        if limited:
            return limited
        if not token:
            return fail(ErrorKind.TOKEN_INVALID)

        consumed = await self._call(
            "consume_verification_token",
            self.email_verifications.consume(token),
            shield=True,
        )
        if consumed.is_err():
            return consumed
        user = await self._call(
            "set_email_verified",
            self.users.set_email_verified(consumed.value),
            shield=True,
        )
        if user is None:
            return fail(ErrorKind.TOKEN_INVALID)
        await self._call(
            "revoke_verification_tokens",
            self.email_verifications.revoke_for_user(user.id),
            shield=True,
        )
        self.logger.info("email_verified", user_id=user.id)
        return Ok(user)

    @_guarded
    async def change_password(
        self,
        access_token: Optional[str],
        current_password: str,
        new_password: str,
    ) -> Result[int]:
        """Change the caller's password and sign out every other session.

        Returns the number of other sessions revoked.
        """
        authenticated = await self.authenticate(access_token)
        if authenticated.is_err():
            return authenticated
        ctx = authenticated.value
        limited = await self._gate(PASSWORD_CHANGE, ctx.user.id)
        if limited:
            return limited

        credential = await self._call(
            "find_by_email", self.users.find_by_email(ctx.user.email)
        )
        if credential is None:
            return fail(ErrorKind.SESSION_EXPIRED)
        verified = await asyncio.to_thread(
            self.verifier.verify, current_password, credential.password_hash
        )
        if not verified:
            self.logger.info("password_change_rejected", user_id=ctx.user.id)
            return fail(ErrorKind.INVALID_CREDENTIALS, "current password is incorrect")
        violations = self.verifier.check_policy(new_password)
        if violations:
            return self._policy_error(violations)
        if new_password == current_password:
            return self._policy_error(["new password must differ from the current password"])

        hashed = await self._hash(new_password)
        if hashed.is_err():
            return self._weak_password(hashed.error)
        await self._call(
            "update_password_hash",
            self.users.update_password_hash(ctx.user.id, hashed.value),
            shield=True,
        )
        revoked = await self._call(
            "invalidate_user_sessions",
            self.sessions.invalidate_all_for_user(
                ctx.user.id, except_session_id=ctx.session.id
            ),
            shield=True,
        )
        self.logger.info("password_changed", user_id=ctx.user.id, revoked=revoked)
        return Ok(revoked)

    @_guarded
    async def list_sessions(self, access_token: Optional[str]) -> Result[List[Session]]:
        authenticated = await self.authenticate(access_token)
        if authenticated.is_err():
            return authenticated
        sessions = await self._call(
            "list_sessions", self.sessions.list_for_user(authenticated.value.user.id)
        )
        return Ok(sorted(sessions, key=lambda s: s.last_activity_at, reverse=True))

    @_guarded
    async def check_api_rate(self, tier: str, key: str) -> Result[RateDecision]:
        decision = await self._call(
            "rate_limit:api", self.rate_limiter.check_api(tier, key), shield=True
        )
        if not decision.allowed:
            return self._rate_limited(decision)
        return Ok(decision)


__all__ = [
    "AuthService",
    "AuthSuccess",
    "AuthContext",
    "UserRepository",
    "RESET_REQUESTED_MESSAGE",
    "VERIFICATION_SENT_MESSAGE",
    "ALREADY_VERIFIED_MESSAGE",
    "normalize_email",
    "is_valid_email",
]
