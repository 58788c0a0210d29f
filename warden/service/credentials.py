from __future__ import annotations

from typing import Optional, Protocol

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.breach import BreachedPasswordChecker
from warden.service.errors import ConcurrencyConflictError, PasswordPolicyError
from warden.service.passwords import PasswordService
from warden.storage.models import SYSTEM_ACTOR, Actor, Credential
from warden.storage.repositories import CredentialRepository, Transactional


class CredentialStoreBackend(CredentialRepository, Transactional, Protocol):
    pass


class CredentialStore:
    """Sole writer of password hashes."""

    def __init__(
        self,
        store: CredentialStoreBackend,
        passwords: PasswordService,
        breach_checker: BreachedPasswordChecker,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.breach_checker = breach_checker
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    def get(self, user_id: str) -> Optional[Credential]:
        return self.store.get_credential(user_id)

    def get_for_update(self, user_id: str) -> Optional[Credential]:
        """Row-locked read; only meaningful inside ``store.transaction()``."""
        return self.store.get_credential_for_update(user_id)

    def create(self, user_id: str, password_hash: str, *, actor: Actor) -> Credential:
        return self.store.create_credential(
            user_id, password_hash, now=self.clock.now(), actor=actor
        )

    def update(
        self, user_id: str, password_hash: str, *, actor: Actor
    ) -> Optional[Credential]:
        return self.store.update_credential(
            user_id, password_hash, now=self.clock.now(), actor=actor
        )

    def has_password(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    async def verify_password(self, user_id: str, password: str) -> bool:
        credential = self.get(user_id)
        if not credential:
            self.passwords.verify_dummy(password)
            return False
        if not self.passwords.verify(credential.password_hash, password):
            return False
        if self.passwords.needs_rehash(credential.password_hash):
            self.update(user_id, self.passwords.hash(password), actor=SYSTEM_ACTOR)
            self.logger.info("password_rehashed", user_id=user_id)
        return True

    async def validate_new_password(self, password: str) -> None:
        """Raise ``PasswordPolicyError`` for weak or breached passwords."""
        self.passwords.enforce_policy(password)
        result = await self.breach_checker.check(password)
        if result.is_breached and self.settings.breached_password_block:
            raise PasswordPolicyError(
                "password appears in a known data breach",
                violations=["has appeared in a data breach"],
                error_code="password_breached",
            )

    async def set_password(
        self, user_id: str, password: str, *, actor: Actor, validate: bool = True
    ) -> Credential:
        if validate:
            await self.validate_new_password(password)
        password_hash = self.passwords.hash(password)
        with self.store.transaction():
            return self.write_hash(user_id, password_hash, actor=actor)

    def write_hash(self, user_id: str, password_hash: str, *, actor: Actor) -> Credential:
        """Create-or-update under the row lock; call inside a transaction."""
        existing = self.get_for_update(user_id)
        if existing:
            updated = self.update(user_id, password_hash, actor=actor)
            if updated is None:
                raise ConcurrencyConflictError(
                    "credential removed during update", detail={"user_id": user_id}
                )
            self.logger.info("password_updated", user_id=user_id, actor=str(actor))
            return updated
        created = self.create(user_id, password_hash, actor=actor)
        self.logger.info("password_created", user_id=user_id, actor=str(actor))
        return created
