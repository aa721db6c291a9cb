from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityStatus(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    LOCKED = "locked"
    SUSPENDED = "suspended"


BLOCKED_STATUSES = frozenset({IdentityStatus.LOCKED, IdentityStatus.SUSPENDED})


@dataclass
class Identity:
    """Authentication record. ``user_id`` is the id other services know."""

    id: str
    user_id: str
    email: str
    password_hash: str
    status: IdentityStatus = IdentityStatus.UNVERIFIED
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str) -> "Identity":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            status=IdentityStatus.UNVERIFIED,
            email_verified=False,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_blocked(self) -> bool:
        return self.status in BLOCKED_STATUSES

    def can_login(self, *, require_verified: bool = False) -> bool:
        if self.is_blocked:
            return False
        if require_verified:
            return self.status == IdentityStatus.ACTIVE and self.email_verified
        return True


@dataclass
class RefreshToken:
    id: str
    identity_id: str
    token_hash: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        identity_id: str,
        token_hash: str,
        ttl_seconds: int,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            device_info=device_info,
            ip_address=ip_address,
            created_at=now,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and now < self.expires_at


@dataclass(frozen=True)
class LoginAttempt:
    id: str
    email: str
    success: bool
    identity_id: Optional[str] = None
    ip_address: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        success: bool,
        identity_id: str | None = None,
        ip_address: str | None = None,
    ) -> "LoginAttempt":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            success=success,
            identity_id=identity_id,
            ip_address=ip_address,
        )


@dataclass
class PasswordResetToken:
    id: str
    identity_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, identity_id: str, token_hash: str, ttl_seconds: int) -> "PasswordResetToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.used_at is None and now < self.expires_at
