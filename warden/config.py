from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/warden", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_dir: str = env_field("/srv/warden", "WARDEN_STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; skips external network checks.",
    )

    # Access tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")

    # Refresh tokens / sessions
    refresh_token_ttl_days: int = env_field(1, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_remember_me_ttl_days: int = env_field(
        14, "REFRESH_TOKEN_REMEMBER_ME_TTL_DAYS"
    )
    absolute_session_timeout_days: int = env_field(
        30,
        "ABSOLUTE_SESSION_TIMEOUT_DAYS",
        description="Hard ceiling on a rotation lineage measured from the original login",
    )
    max_active_sessions_per_user: int = env_field(5, "MAX_ACTIVE_SESSIONS_PER_USER")

    # Lockout
    lockout_enabled: bool = env_field(True, "LOCKOUT_ENABLED")
    lockout_max_failed_attempts: int = env_field(5, "LOCKOUT_MAX_FAILED_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # MFA
    mfa_enabled: bool = env_field(True, "MFA_ENABLED")
    mfa_required_for_all_users: bool = env_field(False, "MFA_REQUIRED_FOR_ALL_USERS")
    mfa_code_length: int = env_field(6, "MFA_CODE_LENGTH")
    mfa_code_ttl_minutes: int = env_field(5, "MFA_CODE_TTL_MINUTES")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_resend_cooldown_seconds: int = env_field(60, "MFA_RESEND_COOLDOWN_SECONDS")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )
    totp_issuer: str = env_field("Warden", "TOTP_ISSUER")
    totp_step_seconds: int = env_field(30, "TOTP_STEP_SECONDS")
    totp_allowed_drift_steps: int = env_field(1, "TOTP_ALLOWED_DRIFT_STEPS")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    backup_code_length: int = env_field(8, "BACKUP_CODE_LENGTH")
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")
    max_trusted_devices_per_user: int = env_field(5, "MAX_TRUSTED_DEVICES_PER_USER")

    # Single-use tokens
    password_reset_ttl_hours: int = env_field(1, "PASSWORD_RESET_TTL_HOURS")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    registration_ttl_hours: int = env_field(24, "REGISTRATION_TTL_HOURS")

    # Password policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(False, "PASSWORD_REQUIRE_SPECIAL")
    argon2_memory_cost_kib: int = env_field(19456, "ARGON2_MEMORY_COST_KIB")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    # Breached password check (HIBP k-anonymity range API)
    breached_password_enabled: bool = env_field(True, "BREACHED_PASSWORD_ENABLED")
    breached_password_block: bool = env_field(True, "BREACHED_PASSWORD_BLOCK")
    breached_password_min_count: int = env_field(1, "BREACHED_PASSWORD_MIN_COUNT")
    breached_password_timeout_ms: int = env_field(3000, "BREACHED_PASSWORD_TIMEOUT_MS")
    breached_password_api_url: str = env_field(
        "https://api.pwnedpasswords.com/range/", "BREACHED_PASSWORD_API_URL"
    )

    # Rate limits (enforced only when Redis is configured)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_verify_rate_limit_per_minute: int = env_field(
        10, "MFA_VERIFY_RATE_LIMIT_PER_MINUTE"
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:4200", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "max_active_sessions_per_user",
        "lockout_max_failed_attempts",
        "mfa_max_attempts",
        "mfa_code_length",
        "backup_code_count",
        "max_trusted_devices_per_user",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _check_refresh_lifetimes(self) -> "Settings":
        if self.refresh_token_remember_me_ttl_days < self.refresh_token_ttl_days:
            raise ValueError(
                "refresh_token_remember_me_ttl_days must not be shorter than refresh_token_ttl_days"
            )
        if self.absolute_session_timeout_days < self.refresh_token_remember_me_ttl_days:
            raise ValueError(
                "absolute_session_timeout_days must cover the remember-me refresh lifetime"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens stay valid across restarts
        state_dir = Path(os.getenv("WARDEN_STATE_DIR", "/srv/warden"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make WARDEN_STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
