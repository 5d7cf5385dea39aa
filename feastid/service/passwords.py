from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from feastid.logging import get_logger

logger = get_logger(__name__)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")


@dataclass(frozen=True)
class PasswordStrength:
    valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordManager:
    """Argon2id hashing, verification and strength rules.

    Hashes are PHC strings, so parameters travel with each hash and older
    hashes keep verifying after the cost settings are raised.
    """

    def __init__(
        self,
        *,
        min_length: int = 8,
        memory_cost: int = 65536,
        time_cost: int = 3,
        parallelism: int = 4,
    ) -> None:
        self.min_length = min_length
        self._hasher = PasswordHasher(
            type=Type.ID,
            memory_cost=memory_cost,
            time_cost=time_cost,
            parallelism=parallelism,
        )

    def hash(self, password: str) -> str:
        if not isinstance(password, str) or not password:
            raise ValueError("password must be a non-empty string")
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str | None) -> bool:
        """Constant-time check; malformed or missing hashes verify as False."""
        if not password or not hashed:
            return False
        try:
            return self._hasher.verify(hashed, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def validate_strength(self, password: Any) -> PasswordStrength:
        """Report every violated rule, not just the first."""
        if not isinstance(password, str):
            return PasswordStrength(valid=False, errors=["Password must be a string"])
        errors: List[str] = []
        if len(password) < self.min_length:
            errors.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if not _UPPER.search(password):
            errors.append("Password must contain at least one uppercase letter")
        if not _LOWER.search(password):
            errors.append("Password must contain at least one lowercase letter")
        if not _DIGIT.search(password):
            errors.append("Password must contain at least one number")
        return PasswordStrength(valid=not errors, errors=errors)
