from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from identifier.config import Settings
from identifier.logging import get_logger
from identifier.service.errors import InvalidOrExpiredTokenError
from identifier.service.roles import RoleResolver
from identifier.service.tokens import AccessToken, AccessTokenIssuer, OpaqueTokenGenerator
from identifier.storage.interfaces import CredentialStore, TokenStore
from identifier.storage.models import Identity, RefreshToken, utcnow

logger = get_logger(__name__)


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenLifecycleEngine:
    """Refresh-token issuance, access-token renewal and revocation.

    Refresh secrets are not rotated on use: a secret stays valid until it
    expires or is revoked, so a leaked secret can be replayed for its whole
    lifetime. Logout, password change and password reset revoke every secret
    the identity holds.

    Renewal applies the same status policy as login, so an identity that
    could not log in right now cannot renew either.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tokens: TokenStore,
        issuer: AccessTokenIssuer,
        resolver: RoleResolver,
        settings: Settings,
        generator: Optional[OpaqueTokenGenerator] = None,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.issuer = issuer
        self.resolver = resolver
        self.settings = settings
        self.generator = generator or OpaqueTokenGenerator()

    async def resolve_roles(self, external_user_id: str) -> Tuple[List[str], List[str]]:
        """Roles and permissions for a subject; ``([], [])`` when the lookup fails."""
        try:
            return await self.resolver.resolve(external_user_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "role_resolution_degraded",
                user_id=external_user_id,
                error_type=type(exc).__name__,
            )
            return [], []

    async def issue_access_token(self, identity: Identity) -> AccessToken:
        roles, permissions = await self.resolve_roles(identity.user_id)
        return self.issuer.issue(identity.user_id, identity.email, roles, permissions)

    async def issue_refresh_token(
        self,
        identity_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """Store a new refresh token and return its plaintext secret.

        The secret is not recoverable afterwards; only its hash is persisted.
        """
        secret, secret_hash = self.generator.generate()
        record = RefreshToken.new(
            identity_id,
            secret_hash,
            self.settings.refresh_token_ttl_seconds,
            device_info=device_info,
            ip_address=ip_address,
        )
        await asyncio.to_thread(self.tokens.create_refresh_token, record)
        logger.info("refresh_token_issued", identity_id=identity_id, record_id=record.id)
        return secret

    async def _active_token(self, secret: str) -> RefreshToken:
        record = await asyncio.to_thread(
            self.tokens.find_refresh_token_by_hash, self.generator.hash(secret)
        )
        if record is None:
            logger.info("refresh_rejected", reason="unknown")
            raise InvalidOrExpiredTokenError()
        if not record.is_active(utcnow()):
            logger.info(
                "refresh_rejected",
                reason="revoked" if record.revoked_at else "expired",
                record_id=record.id,
            )
            raise InvalidOrExpiredTokenError()
        return record

    async def refresh_access_token(self, secret: str) -> RefreshResult:
        record = await self._active_token(secret)
        identity = await asyncio.to_thread(
            self.credentials.find_by_internal_id, record.identity_id
        )
        if identity is None:
            logger.warning("refresh_owner_missing", record_id=record.id)
            raise InvalidOrExpiredTokenError()
        if not identity.can_login(require_verified=self.settings.require_verified_email):
            logger.info(
                "refresh_rejected",
                reason="blocked" if identity.is_blocked else "unverified",
                identity_id=identity.id,
            )
            raise InvalidOrExpiredTokenError()
        access = await self.issue_access_token(identity)
        return RefreshResult(access_token=access.token, expires_in=access.expires_in)

    async def revoke_refresh_token(self, secret: str, *, identity_id: Optional[str] = None) -> bool:
        """Revoke one refresh token. Returns False when there was nothing to revoke.

        When ``identity_id`` is given, tokens owned by someone else are left alone.
        """
        record = await asyncio.to_thread(
            self.tokens.find_refresh_token_by_hash, self.generator.hash(secret)
        )
        if record is None or record.revoked_at is not None:
            return False
        if identity_id is not None and record.identity_id != identity_id:
            logger.warning("refresh_revoke_foreign_token", identity_id=identity_id)
            return False
        await asyncio.to_thread(self.tokens.revoke_refresh_token, record.id)
        return True

    async def revoke_all(self, identity_id: str) -> int:
        revoked = await asyncio.to_thread(self.tokens.revoke_all_refresh_tokens_for, identity_id)
        logger.info("refresh_tokens_revoked", identity_id=identity_id, count=revoked)
        return revoked

    async def purge_expired(self) -> Tuple[int, int]:
        """Delete expired refresh and reset tokens. Returns ``(refresh, reset)`` counts."""
        now = utcnow()
        refresh_removed = await asyncio.to_thread(self.tokens.delete_expired_refresh_tokens, now)
        reset_removed = await asyncio.to_thread(self.tokens.delete_expired_reset_tokens, now)
        logger.info(
            "expired_tokens_purged",
            refresh_removed=refresh_removed,
            reset_removed=reset_removed,
        )
        return refresh_removed, reset_removed
