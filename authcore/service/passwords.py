from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with cost parameters taken from settings."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> bool:
        """Run a full verify against a throwaway hash and return False.

        Used when no account matches so the caller spends the same work as a
        real password check.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("authcore-dummy-password")
        self.verify(self._dummy_hash, password)
        return False
