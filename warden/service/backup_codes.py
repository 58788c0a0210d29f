from __future__ import annotations

import secrets
from typing import List, Protocol

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.passwords import PasswordService
from warden.storage.models import BackupCode, new_id
from warden.storage.repositories import BackupCodeRepository

# No 0/O or 1/I, codes get read off paper
_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class BackupCodeBackend(BackupCodeRepository, Protocol):
    pass


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


class BackupCodeService:
    """One-time recovery codes, stored as argon2id hashes."""

    def __init__(
        self,
        store: BackupCodeBackend,
        passwords: PasswordService,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    async def generate(self, user_id: str) -> List[str]:
        """Replace any existing codes and return the new plaintext set once."""
        now = self.clock.now()
        plaintext = [
            "".join(secrets.choice(_ALPHABET) for _ in range(self.settings.backup_code_length))
            for _ in range(self.settings.backup_code_count)
        ]
        records = [
            BackupCode(
                id=new_id(),
                user_id=user_id,
                code_hash=self.passwords.hash(code),
                created_at=now,
            )
            for code in plaintext
        ]
        self.store.replace_backup_codes(user_id, records)
        self.logger.info("backup_codes_generated", user_id=user_id, count=len(records))
        return plaintext

    def consume(self, user_id: str, code: str) -> bool:
        candidate = normalize_backup_code(code)
        if not candidate:
            return False
        for record in self.store.list_unused_backup_codes(user_id):
            if self.passwords.verify(record.code_hash, candidate):
                if self.store.mark_backup_code_used(record.id, now=self.clock.now()):
                    self.logger.info(
                        "backup_code_used",
                        user_id=user_id,
                        remaining=self.remaining(user_id),
                    )
                    return True
                return False
        return False

    def remaining(self, user_id: str) -> int:
        return len(self.store.list_unused_backup_codes(user_id))

    async def revoke_all(self, user_id: str) -> int:
        return self.store.delete_backup_codes(user_id)
