"""Accessor contracts the engines depend on.

Each accessor is a ``Protocol`` with a Postgres implementation
(:mod:`identifier.storage.postgres`) and an in-memory one
(:mod:`identifier.storage.memory`). Calls are synchronous; engines push them
onto a worker thread when they need to stay off the event loop.

Lookups return ``None`` when nothing matches. Updates against a missing row
raise :class:`~identifier.storage.errors.RecordNotFound`; uniqueness
violations raise :class:`~identifier.storage.errors.ConstraintViolation`.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from identifier.storage.models import (
    Identity,
    IdentityStatus,
    LoginAttempt,
    PasswordResetToken,
    RefreshToken,
)


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def find_by_external_user_id(self, user_id: str) -> Optional[Identity]: ...

    def find_by_internal_id(self, identity_id: str) -> Optional[Identity]: ...

    def create(self, identity: Identity) -> Identity: ...

    def update_status(self, identity_id: str, status: IdentityStatus) -> Identity: ...

    def update_password_hash(self, identity_id: str, password_hash: str) -> Identity: ...

    def mark_email_verified(self, identity_id: str) -> Identity: ...

    def delete(self, identity_id: str) -> None: ...


class AttemptLedger(Protocol):
    def record(self, attempt: LoginAttempt) -> None: ...

    def count_recent_failures(self, identity_id: str, since: datetime) -> int: ...

    def list_recent(self, identity_id: str, limit: int = 20) -> List[LoginAttempt]: ...


class TokenStore(Protocol):
    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: str) -> None: ...

    def revoke_all_refresh_tokens_for(self, identity_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def find_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: str) -> bool: ...

    def apply_password_reset(self, token_id: str, password_hash: str) -> Optional[Identity]:
        """Set the owner's password hash, then consume the token, in one unit.

        Returns ``None`` when the token is already consumed or expired, which
        includes losing a race against a concurrent reset with the same token.
        """
        ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


__all__ = ["AttemptLedger", "CredentialStore", "TokenStore"]
