from __future__ import annotations

from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import PasswordPolicyError

logger = get_logger(__name__)

_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\")


class PasswordService:
    """argon2id hashing plus the configurable password policy."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        # Verified against when the account does not exist so both paths cost the same
        self._dummy_hash = self._hasher.hash("warden-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def policy_violations(self, password: str) -> List[str]:
        s = self.settings
        violations: List[str] = []
        if len(password) < s.password_min_length:
            violations.append(f"must be at least {s.password_min_length} characters")
        if s.password_require_uppercase and not any(c.isupper() for c in password):
            violations.append("must contain an uppercase letter")
        if s.password_require_lowercase and not any(c.islower() for c in password):
            violations.append("must contain a lowercase letter")
        if s.password_require_digit and not any(c.isdigit() for c in password):
            violations.append("must contain a digit")
        if s.password_require_special and not any(c in _SPECIAL_CHARS for c in password):
            violations.append("must contain a special character")
        return violations

    def enforce_policy(self, password: str) -> None:
        violations = self.policy_violations(password)
        if violations:
            raise PasswordPolicyError(
                "password does not meet policy",
                violations=violations,
                error_code="weak_password",
            )
