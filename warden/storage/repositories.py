"""Narrow repository interfaces the engines are written against.

Both ``MemoryStore`` and ``PostgresStore`` implement every protocol here, so
an engine can be handed either store. Methods that must not race are
expressed as conditional writes whose return value says whether the write
happened.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from warden.storage.models import (
    Actor,
    BackupCode,
    Credential,
    ExternalLogin,
    MfaChallenge,
    RefreshToken,
    SingleUseToken,
    TokenPurpose,
    TotpSecret,
    TrustedDevice,
    User,
)


class Transactional(Protocol):
    def transaction(self) -> AbstractContextManager[None]:
        """All writes inside the block commit together or not at all."""
        ...


class UserRepository(Protocol):
    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        pending_registration: bool = False,
        now: datetime,
        actor: Actor,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def lock_user(self, user_id: str) -> Optional[User]:
        """Row-lock the user until the enclosing transaction ends."""
        ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def activate_user(
        self, user_id: str, *, username: str, roles: Sequence[str], actor: Actor
    ) -> Optional[User]:
        """Activate a pending registration; ``None`` for any other user."""
        ...

    def mark_email_confirmed(self, user_id: str, *, actor: Actor) -> Optional[User]: ...

    def set_requires_password_change(
        self, user_id: str, value: bool, *, actor: Actor
    ) -> None: ...

    def set_user_mfa_enabled(self, user_id: str, enabled: bool, *, actor: Actor) -> None: ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> Optional[User]:
        """Atomically bump the failure counter, locking once it reaches the max."""
        ...

    def record_login_success(
        self, user_id: str, *, now: datetime, client_ip: Optional[str]
    ) -> None: ...


class CredentialRepository(Protocol):
    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def get_credential_for_update(self, user_id: str) -> Optional[Credential]: ...

    def create_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Credential: ...

    def update_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Optional[Credential]: ...


class RefreshTokenRepository(Protocol):
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[RefreshToken]:
        """Active tokens ordered oldest first."""
        ...

    def revoke_refresh_token_if_active(
        self, token_id: str, *, now: datetime, actor: Actor
    ) -> bool: ...

    def revoke_refresh_family(
        self, family_id: str, *, now: datetime, actor: Actor
    ) -> int: ...

    def revoke_refresh_tokens_for_user(
        self,
        user_id: str,
        *,
        now: datetime,
        actor: Actor,
        keep_family_id: Optional[str] = None,
    ) -> int: ...


class MfaChallengeRepository(Protocol):
    def add_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge: ...

    def get_mfa_challenge(self, token: str) -> Optional[MfaChallenge]: ...

    def increment_mfa_attempts(
        self, token: str, *, max_attempts: int
    ) -> Optional[MfaChallenge]:
        """Count one attempt if the challenge is unused and below the limit.

        Returns the updated challenge, or ``None`` when no attempt was counted.
        """
        ...

    def mark_mfa_challenge_used(self, token: str) -> bool: ...

    def reissue_mfa_code(
        self, token: str, *, code_hash: str, now: datetime, expires_at: datetime
    ) -> bool: ...


class SingleUseTokenRepository(Protocol):
    def add_single_use_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def get_single_use_token_by_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[SingleUseToken]: ...

    def mark_single_use_token_used(self, token_id: str, *, now: datetime) -> bool: ...

    def invalidate_single_use_tokens(
        self, purpose: TokenPurpose, subject: str, *, now: datetime
    ) -> int: ...


class TotpRepository(Protocol):
    def get_totp_secret(self, user_id: str) -> Optional[TotpSecret]: ...

    def save_totp_secret(self, record: TotpSecret) -> TotpSecret: ...

    def enable_totp(self, user_id: str) -> bool: ...

    def delete_totp_secret(self, user_id: str) -> bool: ...

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as used unless it (or a later step) already was."""
        ...


class BackupCodeRepository(Protocol):
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None: ...

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]: ...

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool: ...

    def delete_backup_codes(self, user_id: str) -> int: ...


class TrustedDeviceRepository(Protocol):
    def add_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]: ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        """Devices ordered oldest first."""
        ...

    def touch_trusted_device(self, device_id: str, *, now: datetime) -> None: ...

    def delete_trusted_device(self, device_id: str) -> bool: ...

    def delete_trusted_devices_for_user(self, user_id: str) -> int: ...


class ExternalLoginRepository(Protocol):
    def add_external_login(self, login: ExternalLogin) -> ExternalLogin:
        """Idempotent per user; raises ``ConstraintViolation`` if another user holds the key."""
        ...

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]: ...

    def delete_external_login(self, user_id: str, provider: str) -> bool: ...


class AuthStore(
    Transactional,
    UserRepository,
    CredentialRepository,
    RefreshTokenRepository,
    MfaChallengeRepository,
    SingleUseTokenRepository,
    TotpRepository,
    BackupCodeRepository,
    TrustedDeviceRepository,
    ExternalLoginRepository,
    Protocol,
):
    """Everything the identity core needs from a backing store."""
