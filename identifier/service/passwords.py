from __future__ import annotations

import asyncio

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from identifier.logging import get_logger
from identifier.service.errors import HashingError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """Salted argon2id hashing with a constant-cost miss path.

    ``dummy_verify`` runs a full verification against a throwaway hash so a
    lookup miss costs about the same as a wrong password.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except (Argon2HashingError, TypeError) as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise HashingError("password could not be hashed") from exc

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def dummy_verify(self, password: str) -> bool:
        self.verify(self._dummy_hash, password)
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, stored_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, password)

    async def dummy_verify_async(self, password: str) -> bool:
        return await asyncio.to_thread(self.dummy_verify, password)
