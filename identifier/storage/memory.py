from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from identifier.logging import get_logger
from identifier.storage.errors import ConstraintViolation, RecordNotFound
from identifier.storage.models import (
    Identity,
    IdentityStatus,
    LoginAttempt,
    PasswordResetToken,
    RefreshToken,
    utcnow,
)


class MemoryStore:
    """In-memory credential store, attempt ledger and token store.

    Used for local development and as the test double for the Postgres store.
    Returned records are copies; mutate state only through the accessor methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.attempts: List[LoginAttempt] = []
        # RLock for all data operations; nested acquisition is allowed
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # identities
    def find_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.email == email:
                    return replace(identity)
        return None

    def find_by_external_user_id(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.user_id == user_id:
                    return replace(identity)
        return None

    def find_by_internal_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def create(self, identity: Identity) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if existing.email == identity.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.user_id == identity.user_id:
                    raise ConstraintViolation("user id already exists", {"field": "user_id"})
            self.identities[identity.id] = replace(identity)
            return replace(identity)

    def _update(self, identity_id: str, **changes) -> Identity:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                raise RecordNotFound("identity", identity_id)
            updated = replace(identity, updated_at=utcnow(), **changes)
            self.identities[identity_id] = updated
            return replace(updated)

    def update_status(self, identity_id: str, status: IdentityStatus) -> Identity:
        return self._update(identity_id, status=IdentityStatus(status))

    def update_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        return self._update(identity_id, password_hash=password_hash)

    def mark_email_verified(self, identity_id: str) -> Identity:
        return self._update(identity_id, email_verified=True)

    def delete(self, identity_id: str) -> None:
        with self._data_lock:
            if self.identities.pop(identity_id, None) is None:
                raise RecordNotFound("identity", identity_id)
            # owned tokens go with the identity; attempts are kept for audit
            for token_id, token in list(self.refresh_tokens.items()):
                if token.identity_id == identity_id:
                    self.refresh_tokens.pop(token_id, None)
            for token_id, token in list(self.reset_tokens.items()):
                if token.identity_id == identity_id:
                    self.reset_tokens.pop(token_id, None)

    # login attempts
    def record(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.attempts.append(attempt)

    def count_recent_failures(self, identity_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.attempts
                if attempt.identity_id == identity_id
                and not attempt.success
                and attempt.attempted_at >= since
            )

    def list_recent(self, identity_id: str, limit: int = 20) -> List[LoginAttempt]:
        with self._data_lock:
            owned = [a for a in self.attempts if a.identity_id == identity_id]
        owned.sort(key=lambda a: a.attempted_at, reverse=True)
        return owned[:limit]

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.identity_id not in self.identities:
                raise ConstraintViolation(
                    "refresh token owner missing", {"identity_id": token.identity_id}
                )
            if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.refresh_tokens[token.id] = replace(token)
            return replace(token)

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def revoke_refresh_token(self, token_id: str) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token and token.revoked_at is None:
                token.revoked_at = utcnow()

    def revoke_all_refresh_tokens_for(self, identity_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.identity_id == identity_id and token.is_active(now):
                    token.revoked_at = now
                    revoked += 1
        return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.refresh_tokens.items() if t.expires_at <= now]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
        return len(stale)

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.identity_id not in self.identities:
                raise ConstraintViolation(
                    "reset token owner missing", {"identity_id": token.identity_id}
                )
            if any(t.token_hash == token.token_hash for t in self.reset_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.reset_tokens[token.id] = replace(token)
            return replace(token)

    def find_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for token in self.reset_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def mark_reset_token_used(self, token_id: str) -> bool:
        """Consume the token. Returns False when it was already consumed."""
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token:
                raise RecordNotFound("password reset token", token_id)
            if token.used_at is not None:
                return False
            token.used_at = utcnow()
            return True

    def apply_password_reset(self, token_id: str, password_hash: str) -> Optional[Identity]:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token:
                raise RecordNotFound("password reset token", token_id)
            if not token.is_valid(utcnow()):
                return None
            # password first; a failure below leaves the token usable
            identity = self.update_password_hash(token.identity_id, password_hash)
            if not self.mark_reset_token_used(token_id):
                return None
            return identity

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.reset_tokens.items() if t.expires_at <= now]
            for tid in stale:
                self.reset_tokens.pop(tid, None)
        return len(stale)
