from __future__ import annotations

import asyncio
from typing import Optional, Set

from identifier.config import Settings
from identifier.logging import get_logger
from identifier.service.email import EmailService
from identifier.service.errors import InvalidOrExpiredTokenError
from identifier.service.events import BestEffortPublisher, PasswordChangedV1
from identifier.service.passwords import PasswordHasher
from identifier.service.sessions import TokenLifecycleEngine
from identifier.service.tokens import OpaqueTokenGenerator
from identifier.storage.errors import RecordNotFound
from identifier.storage.interfaces import CredentialStore, TokenStore
from identifier.storage.models import PasswordResetToken, utcnow

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email exists, a reset link has been sent."
RESET_PASSWORD_MESSAGE = "Password reset successful."


class PasswordRecoveryEngine:
    """Forgot-password and reset-password with single-use, one-hour reset secrets."""

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tokens: TokenStore,
        sessions: TokenLifecycleEngine,
        hasher: PasswordHasher,
        email: EmailService,
        events: BestEffortPublisher,
        settings: Settings,
        generator: Optional[OpaqueTokenGenerator] = None,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.hasher = hasher
        self.email = email
        self.events = events
        self.settings = settings
        self.generator = generator or OpaqueTokenGenerator()
        self._deliveries: Set[asyncio.Task] = set()

    async def forgot_password(self, email: str) -> str:
        """Start a reset. The answer is the same whether or not the email exists."""
        identity = await asyncio.to_thread(self.credentials.find_by_email, email)
        if identity is None:
            logger.info("password_reset_requested", known=False)
            return FORGOT_PASSWORD_MESSAGE

        secret, secret_hash = self.generator.generate()
        record = PasswordResetToken.new(
            identity.id, secret_hash, self.settings.reset_token_ttl_seconds
        )
        await asyncio.to_thread(self.tokens.create_reset_token, record)
        logger.info("password_reset_requested", known=True, user_id=identity.user_id)

        # delivered off the request path so both answers take about as long
        task = asyncio.get_running_loop().create_task(
            self._deliver(identity.user_id, identity.email, secret)
        )
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return FORGOT_PASSWORD_MESSAGE

    async def _deliver(self, user_id: str, address: str, secret: str) -> None:
        try:
            sent = await asyncio.to_thread(
                self.email.send_password_reset,
                address,
                secret,
                ttl_minutes=self.settings.reset_token_ttl_seconds // 60,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "password_reset_delivery_error",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.warning("password_reset_delivery_failed", user_id=user_id)

    async def drain(self) -> None:
        """Wait for reset emails still being sent."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def reset_password(self, secret: str, new_password: str) -> str:
        """Consume a reset secret and set a new password.

        The password is written before the secret is marked used, so a crash
        in between leaves the secret usable for a retry. Only one of several
        concurrent resets with the same secret succeeds. All refresh tokens
        are revoked afterwards.
        """
        record = await asyncio.to_thread(
            self.tokens.find_reset_token_by_hash, self.generator.hash(secret)
        )
        if record is None:
            logger.info("password_reset_rejected", reason="unknown")
            raise InvalidOrExpiredTokenError()
        if not record.is_valid(utcnow()):
            logger.info(
                "password_reset_rejected",
                reason="used" if record.used_at else "expired",
                record_id=record.id,
            )
            raise InvalidOrExpiredTokenError()

        new_hash = await self.hasher.hash_async(new_password)
        try:
            identity = await asyncio.to_thread(
                self.tokens.apply_password_reset, record.id, new_hash
            )
        except RecordNotFound as exc:
            logger.warning("password_reset_owner_missing", record_id=record.id)
            raise InvalidOrExpiredTokenError() from exc
        if identity is None:
            # a concurrent reset consumed the secret first
            logger.info("password_reset_rejected", reason="consumed", record_id=record.id)
            raise InvalidOrExpiredTokenError()
        await self.sessions.revoke_all(identity.id)

        logger.info("password_reset_completed", user_id=identity.user_id)
        self.events.emit(
            PasswordChangedV1(user_id=identity.user_id, email=identity.email, reason="reset")
        )
        return RESET_PASSWORD_MESSAGE
