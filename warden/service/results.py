from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from warden.storage.models import MfaChannel


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REUSED = "TOKEN_REUSED"
    TOKEN_INVALID = "TOKEN_INVALID"
    ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
    ALREADY_USED = "ALREADY_USED"
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    CHALLENGE_USED = "CHALLENGE_USED"
    CODE_EXPIRED = "CODE_EXPIRED"
    INVALID_CODE = "INVALID_CODE"
    RESEND_COOLDOWN = "RESEND_COOLDOWN"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    LAST_AUTH_METHOD = "LAST_AUTH_METHOD"
    PASSWORD_BREACHED = "PASSWORD_BREACHED"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    RATE_LIMITED = "RATE_LIMITED"


_TOKEN_FAILURES = {
    AuthErrorCode.TOKEN_EXPIRED,
    AuthErrorCode.TOKEN_REUSED,
    AuthErrorCode.TOKEN_INVALID,
    AuthErrorCode.ALREADY_USED,
}


def public_error_code(code: AuthErrorCode, *, session: bool = False) -> AuthErrorCode:
    """Collapse token failure detail before it reaches a caller.

    Session (refresh) failures all look like bad credentials; single-use token
    failures all look like one invalid-token outcome, so a caller cannot tell
    an expired token from a consumed or never-issued one.
    """
    if code in _TOKEN_FAILURES:
        return AuthErrorCode.INVALID_CREDENTIALS if session else AuthErrorCode.TOKEN_INVALID
    return code


@dataclass
class AuthResult:
    success: bool
    error_code: Optional[AuthErrorCode] = None
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    requires_password_change: bool = False
    requires_mfa: bool = False
    mfa_challenge_token: Optional[str] = None
    mfa_channel: Optional[MfaChannel] = None
    trusted_device_token: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def succeeded(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        *,
        requires_password_change: bool = False,
        trusted_device_token: Optional[str] = None,
    ) -> "AuthResult":
        return cls(
            success=True,
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_token_expires_at,
            requires_password_change=requires_password_change,
            trusted_device_token=trusted_device_token,
        )

    @classmethod
    def failed(
        cls, error_code: AuthErrorCode, errors: Optional[List[str]] = None
    ) -> "AuthResult":
        return cls(success=False, error_code=error_code, errors=list(errors or []))

    @classmethod
    def mfa_required(cls, challenge_token: str, channel: MfaChannel) -> "AuthResult":
        return cls(
            success=False,
            requires_mfa=True,
            mfa_challenge_token=challenge_token,
            mfa_channel=channel,
        )


@dataclass
class MfaVerificationResult:
    success: bool
    user_id: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None
    remaining_attempts: Optional[int] = None
    client_ip: Optional[str] = None


@dataclass
class MfaRefreshResult:
    success: bool
    user_id: Optional[str] = None
    code: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None


@dataclass
class ConsumeResult:
    success: bool
    subject: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None


@dataclass
class AuthContext:
    user_id: str
    roles: List[str]
    token_id: str
    expires_at: datetime


@dataclass
class TotpEnrollment:
    secret: str
    otpauth_uri: str


__all__ = [
    "AuthErrorCode",
    "public_error_code",
    "AuthResult",
    "MfaVerificationResult",
    "MfaRefreshResult",
    "ConsumeResult",
    "AuthContext",
    "TotpEnrollment",
]
