from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class MfaChannel(str, Enum):
    EMAIL = "email"
    TOTP = "totp"
    BACKUP = "backup"


class TokenPurpose(str, Enum):
    """Which flow a single-use token belongs to."""

    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    REGISTRATION = "registration"


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation; recorded on audited rows."""

    kind: str
    id: Optional[str] = None

    @classmethod
    def for_user(cls, user_id: str) -> "Actor":
        return cls(kind="user", id=user_id)

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}" if self.id else self.kind


SYSTEM_ACTOR = Actor(kind="system")


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    created_at: datetime
    username: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["user"])
    is_active: bool = True
    is_deleted: bool = False
    email_confirmed: bool = False
    requires_password_change: bool = False
    mfa_enabled: bool = False
    pending_registration: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    failed_login_count: int = 0
    lockout_end: Optional[datetime] = None

    def is_valid_for_authentication(self) -> bool:
        return self.is_active and not self.is_deleted

    def is_locked_out(self, now: datetime) -> bool:
        return self.lockout_end is not None and self.lockout_end > now


@dataclass
class Credential:
    user_id: str
    password_hash: str
    created_at: datetime
    updated_at: datetime
    created_by: str = "system"
    updated_by: str = "system"


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    session_started_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    client_ip: Optional[str] = None
    created_by: str = "system"
    revoked_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass
class MfaChallenge:
    token: str
    user_id: str
    channel: MfaChannel
    created_at: datetime
    last_sent_at: datetime
    expires_at: datetime
    code_hash: Optional[str] = None
    attempts: int = 0
    is_used: bool = False
    client_ip: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class SingleUseToken:
    id: str
    purpose: TokenPurpose
    subject: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_by: str = "system"


@dataclass
class TotpSecret:
    user_id: str
    secret: str
    created_at: datetime
    enabled: bool = False
    last_used_step: Optional[int] = None


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    token_hash: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    device_name: Optional[str] = None
    last_used_at: Optional[datetime] = None


@dataclass
class ExternalLogin:
    user_id: str
    provider: str
    provider_key: str
    created_at: Optional[datetime] = None
