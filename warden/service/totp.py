from __future__ import annotations

import base64
import hashlib
import hmac
import os
from datetime import datetime
from typing import Optional, Protocol
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.hashing import constant_time_equals
from warden.service.results import TotpEnrollment
from warden.storage.models import TotpSecret
from warden.storage.repositories import TotpRepository


class TotpBackend(TotpRepository, Protocol):
    pass


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def generate_totp(secret: str, counter: int, *, digits: int = 6) -> str:
    """RFC 6238 code (HMAC-SHA1) for a base32 secret at a given time step."""
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class TotpService:
    """Authenticator-app enrollment and verification.

    Secrets are Fernet-encrypted before they reach the store. A step that
    has been accepted once is recorded so the same code cannot be replayed.
    """

    def __init__(self, store: TotpBackend, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)
        material = settings.mfa_encryption_key or settings.jwt_secret
        self._cipher = Fernet(_derive_cipher_key(material))

    def _step(self, at: datetime) -> int:
        return int(at.timestamp()) // self.settings.totp_step_seconds

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, stored: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(stored.encode()).decode()
        except InvalidToken:
            self.logger.warning("totp_secret_decrypt_failed")
            return None

    def code_at(self, secret: str, at: datetime) -> str:
        return generate_totp(secret, self._step(at))

    async def begin_enrollment(self, user_id: str, account_label: str) -> TotpEnrollment:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        self.store.save_totp_secret(
            TotpSecret(
                user_id=user_id,
                secret=self._encrypt(secret),
                created_at=self.clock.now(),
                enabled=False,
            )
        )
        issuer = quote(self.settings.totp_issuer)
        uri = (
            f"otpauth://totp/{issuer}:{quote(account_label)}"
            f"?secret={secret}&issuer={issuer}&period={self.settings.totp_step_seconds}"
        )
        self.logger.info("totp_enrollment_started", user_id=user_id)
        return TotpEnrollment(secret=secret, otpauth_uri=uri)

    async def confirm_enrollment(self, user_id: str, code: str) -> bool:
        if not self._check(user_id, code, require_enabled=False):
            return False
        self.store.enable_totp(user_id)
        self.logger.info("totp_enrollment_confirmed", user_id=user_id)
        return True

    def is_enrolled(self, user_id: str) -> bool:
        record = self.store.get_totp_secret(user_id)
        return bool(record and record.enabled)

    def verify(self, user_id: str, code: str) -> bool:
        return self._check(user_id, code, require_enabled=True)

    def _check(self, user_id: str, code: str, *, require_enabled: bool) -> bool:
        record = self.store.get_totp_secret(user_id)
        if not record or (require_enabled and not record.enabled):
            return False
        secret = self._decrypt(record.secret)
        if not secret:
            return False
        code = code.strip()
        current = self._step(self.clock.now())
        drift = self.settings.totp_allowed_drift_steps
        for step in range(current - drift, current + drift + 1):
            if constant_time_equals(generate_totp(secret, step), code):
                if self.store.advance_totp_step(user_id, step):
                    return True
                self.logger.warning("totp_code_replayed", user_id=user_id)
                return False
        return False

    async def disable(self, user_id: str) -> bool:
        removed = self.store.delete_totp_secret(user_id)
        if removed:
            self.logger.info("totp_disabled", user_id=user_id)
        return removed
