from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from identifier.config import Settings
from identifier.logging import get_logger
from identifier.service.errors import (
    AccountLockedError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
)
from identifier.service.events import (
    BestEffortPublisher,
    IdentityLoggedInV1,
    IdentityLoggedOutV1,
    IdentityRegisteredV1,
    PasswordChangedV1,
)
from identifier.service.passwords import PasswordHasher
from identifier.service.sessions import TokenLifecycleEngine
from identifier.storage.errors import ConstraintViolation
from identifier.storage.interfaces import AttemptLedger, CredentialStore
from identifier.storage.models import (
    Identity,
    IdentityStatus,
    LoginAttempt,
    utcnow,
)

logger = get_logger(__name__)

REGISTERED_MESSAGE = "Registration successful. Please verify your email."
LOGGED_OUT_MESSAGE = "Logged out successfully"


@dataclass
class RegisterResult:
    user_id: str
    email: str
    message: str = REGISTERED_MESSAGE


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class IdentityLifecycleEngine:
    """Register, login, logout and the account operations around them."""

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        attempts: AttemptLedger,
        sessions: TokenLifecycleEngine,
        hasher: PasswordHasher,
        events: BestEffortPublisher,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.attempts = attempts
        self.sessions = sessions
        self.hasher = hasher
        self.events = events
        self.settings = settings

    async def _require_identity(self, external_user_id: str) -> Identity:
        identity = await asyncio.to_thread(
            self.credentials.find_by_external_user_id, external_user_id
        )
        if identity is None:
            raise NotFoundError("identity not found")
        return identity

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> RegisterResult:
        existing = await asyncio.to_thread(self.credentials.find_by_email, email)
        if existing is not None:
            logger.info("register_rejected", reason="duplicate_email")
            raise DuplicateEmailError()

        password_hash = await self.hasher.hash_async(password)
        try:
            identity = await asyncio.to_thread(
                self.credentials.create, Identity.new(email, password_hash)
            )
        except ConstraintViolation as exc:
            # lost a concurrent register race at the unique index
            if exc.detail.get("field") == "email":
                logger.info("register_rejected", reason="duplicate_email_race")
                raise DuplicateEmailError() from exc
            raise

        logger.info("identity_registered", user_id=identity.user_id)
        self.events.emit(
            IdentityRegisteredV1(
                user_id=identity.user_id,
                email=identity.email,
                first_name=first_name,
                last_name=last_name,
            )
        )
        return RegisterResult(user_id=identity.user_id, email=identity.email)

    async def login(
        self,
        email: str,
        password: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        identity = await asyncio.to_thread(self.credentials.find_by_email, email)
        if identity is None:
            # same cost and same error as a wrong password
            await self.hasher.dummy_verify_async(password)
            await asyncio.to_thread(
                self.attempts.record,
                LoginAttempt.new(email, False, ip_address=ip_address),
            )
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()

        if identity.is_blocked:
            logger.info("login_failed", reason="blocked", user_id=identity.user_id)
            raise AccountLockedError()

        if not await self.hasher.verify_async(identity.password_hash, password):
            await asyncio.to_thread(
                self.attempts.record,
                LoginAttempt.new(email, False, identity_id=identity.id, ip_address=ip_address),
            )
            logger.info("login_failed", reason="bad_password", user_id=identity.user_id)
            raise InvalidCredentialsError()

        if not identity.can_login(require_verified=self.settings.require_verified_email):
            logger.info("login_failed", reason="unverified", user_id=identity.user_id)
            raise EmailNotVerifiedError()

        await asyncio.to_thread(
            self.attempts.record,
            LoginAttempt.new(email, True, identity_id=identity.id, ip_address=ip_address),
        )

        access = await self.sessions.issue_access_token(identity)
        refresh_secret = await self.sessions.issue_refresh_token(
            identity.id, device_info=device_info, ip_address=ip_address
        )

        logger.info("login_succeeded", user_id=identity.user_id)
        self.events.emit(
            IdentityLoggedInV1(
                user_id=identity.user_id,
                email=identity.email,
                device_info=device_info,
                ip_address=ip_address,
            )
        )
        return LoginResult(
            access_token=access.token,
            refresh_token=refresh_secret,
            expires_in=access.expires_in,
        )

    async def logout(self, external_user_id: str) -> str:
        """Revoke every active refresh token held by the identity.

        An identity that no longer exists has nothing to revoke; the call
        still succeeds. Store failures during revocation propagate.
        """
        identity = await asyncio.to_thread(
            self.credentials.find_by_external_user_id, external_user_id
        )
        if identity is None:
            logger.warning("logout_identity_missing", user_id=external_user_id)
            return LOGGED_OUT_MESSAGE
        revoked = await self.sessions.revoke_all(identity.id)
        self.events.emit(
            IdentityLoggedOutV1(
                user_id=identity.user_id,
                email=identity.email,
                revoked_tokens=revoked,
            )
        )
        return LOGGED_OUT_MESSAGE

    async def change_password(
        self, external_user_id: str, current_password: str, new_password: str
    ) -> None:
        identity = await self._require_identity(external_user_id)
        if not await self.hasher.verify_async(identity.password_hash, current_password):
            logger.info("password_change_rejected", user_id=identity.user_id)
            raise InvalidCredentialsError("current password is incorrect")
        new_hash = await self.hasher.hash_async(new_password)
        await asyncio.to_thread(self.credentials.update_password_hash, identity.id, new_hash)
        await self.sessions.revoke_all(identity.id)
        logger.info("password_changed", user_id=identity.user_id)
        self.events.emit(
            PasswordChangedV1(user_id=identity.user_id, email=identity.email, reason="change")
        )

    async def verify_email(self, external_user_id: str) -> Identity:
        """Mark the address verified; an unverified identity becomes active."""
        identity = await self._require_identity(external_user_id)
        identity = await asyncio.to_thread(self.credentials.mark_email_verified, identity.id)
        if identity.status == IdentityStatus.UNVERIFIED:
            identity = await asyncio.to_thread(
                self.credentials.update_status, identity.id, IdentityStatus.ACTIVE
            )
        logger.info("email_verified", user_id=identity.user_id)
        return identity

    async def set_status(self, external_user_id: str, status: IdentityStatus) -> Identity:
        """Administrative status change. Locking or suspending ends all sessions."""
        status = IdentityStatus(status)
        identity = await self._require_identity(external_user_id)
        identity = await asyncio.to_thread(self.credentials.update_status, identity.id, status)
        if identity.is_blocked:
            await self.sessions.revoke_all(identity.id)
        logger.info("identity_status_changed", user_id=identity.user_id, status=status.value)
        return identity

    async def get_identity(self, external_user_id: str) -> Identity:
        return await self._require_identity(external_user_id)

    async def recent_failures(
        self, external_user_id: str, window: Optional[timedelta] = None
    ) -> int:
        """Failed logins inside the window, for an external rate limiter.

        No lockout is applied here.
        """
        identity = await self._require_identity(external_user_id)
        window = window or timedelta(seconds=self.settings.failure_window_seconds)
        return await asyncio.to_thread(
            self.attempts.count_recent_failures, identity.id, utcnow() - window
        )

    async def recent_attempts(self, external_user_id: str, limit: int = 20) -> List[LoginAttempt]:
        identity = await self._require_identity(external_user_id)
        return await asyncio.to_thread(self.attempts.list_recent, identity.id, limit)
