from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Actor,
    BackupCode,
    Credential,
    ExternalLogin,
    MfaChallenge,
    MfaChannel,
    RefreshToken,
    SingleUseToken,
    TokenPurpose,
    TotpSecret,
    TrustedDevice,
    User,
    new_id,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "refresh_token",
    "mfa_challenge",
    "single_use_token",
    "user_totp_secret",
    "backup_code",
    "trusted_device",
    "user_external_login",
)

# Connection bound by transaction(); store methods reuse it instead of the pool
_tx_conn: ContextVar[Any] = ContextVar("warden_pg_tx_conn", default=None)


class PostgresStore:
    """Postgres-backed implementation of every repository protocol."""

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        bound = _tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if _tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn, conn.transaction():
            token = _tx_conn.set(conn)
            try:
                yield
            finally:
                _tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema has not been applied."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def apply_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_PATH.read_text())

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            roles=list(row.get("roles") or ["user"]),
            is_active=row.get("is_active", True),
            is_deleted=row.get("is_deleted", False),
            email_confirmed=row.get("email_confirmed", False),
            requires_password_change=row.get("requires_password_change", False),
            mfa_enabled=row.get("mfa_enabled", False),
            pending_registration=row.get("pending_registration", False),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            failed_login_count=row.get("failed_login_count", 0),
            lockout_end=row.get("lockout_end"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _credential_from_row(row: dict) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            created_by=row.get("created_by", "system"),
            updated_by=row.get("updated_by", "system"),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            family_id=str(row["family_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            session_started_at=row["session_started_at"],
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            client_ip=row.get("client_ip"),
            created_by=row.get("created_by", "system"),
            revoked_by=row.get("revoked_by"),
        )

    @staticmethod
    def _challenge_from_row(row: dict) -> MfaChallenge:
        return MfaChallenge(
            token=row["token"],
            user_id=str(row["user_id"]),
            channel=MfaChannel(row["channel"]),
            code_hash=row.get("code_hash"),
            created_at=row["created_at"],
            last_sent_at=row["last_sent_at"],
            expires_at=row["expires_at"],
            attempts=row.get("attempts", 0),
            is_used=row.get("is_used", False),
            client_ip=row.get("client_ip"),
        )

    @staticmethod
    def _single_use_from_row(row: dict) -> SingleUseToken:
        return SingleUseToken(
            id=str(row["id"]),
            purpose=TokenPurpose(row["purpose"]),
            subject=row["subject"],
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_used=row.get("is_used", False),
            used_at=row.get("used_at"),
            created_by=row.get("created_by", "system"),
        )

    @staticmethod
    def _device_from_row(row: dict) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            fingerprint=row["fingerprint"],
            device_name=row.get("device_name"),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            expires_at=row["expires_at"],
        )

    # users
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
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            username=username,
            roles=list(roles) if roles is not None else ["user"],
            is_active=is_active,
            pending_registration=pending_registration,
            created_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user
                        (id, email, username, roles, is_active, created_at, created_by, pending_registration)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.roles,
                        user.is_active,
                        now,
                        str(actor),
                        user.pending_registration,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in (exc.diag.constraint_name or "") else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def lock_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username.strip(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def activate_user(
        self, user_id: str, *, username: str, roles: Sequence[str], actor: Actor
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = %s,
                        is_active = TRUE,
                        pending_registration = FALSE,
                        email_confirmed = TRUE,
                        roles = ARRAY(SELECT DISTINCT unnest(roles || %s::text[])),
                        updated_by = %s
                    WHERE id = %s AND pending_registration
                    RETURNING *
                    """,
                    (username, list(roles), str(actor), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._user_from_row(row) if row else None

    def mark_email_confirmed(self, user_id: str, *, actor: Actor) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_confirmed = TRUE, updated_by = %s WHERE id = %s RETURNING *",
                (str(actor), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_requires_password_change(
        self, user_id: str, value: bool, *, actor: Actor
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET requires_password_change = %s, updated_by = %s WHERE id = %s",
                (value, str(actor), user_id),
            )

    def set_user_mfa_enabled(self, user_id: str, enabled: bool, *, actor: Actor) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET mfa_enabled = %s, updated_by = %s WHERE id = %s",
                (enabled, str(actor), user_id),
            )

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = CASE
                        WHEN failed_login_count + 1 >= %(max)s THEN 0
                        ELSE failed_login_count + 1
                    END,
                    lockout_end = CASE
                        WHEN failed_login_count + 1 >= %(max)s THEN %(until)s
                        ELSE lockout_end
                    END
                WHERE id = %(id)s
                RETURNING *
                """,
                {"max": max_attempts, "until": now + lockout_duration, "id": user_id},
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login_success(
        self, user_id: str, *, now: datetime, client_ip: Optional[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = 0, lockout_end = NULL,
                    last_login_at = %s, last_login_ip = COALESCE(%s, last_login_ip)
                WHERE id = %s
                """,
                (now, client_ip, user_id),
            )

    # credentials
    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_for_update(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s FOR UPDATE", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def create_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Credential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, created_at, updated_at, created_by, updated_by)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, password_hash, now, now, str(actor), str(actor)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("credential already exists", {"user_id": user_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
        return self._credential_from_row(row)

    def update_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_credential
                SET password_hash = %s, updated_at = %s, updated_by = %s
                WHERE user_id = %s
                RETURNING *
                """,
                (password_hash, now, str(actor), user_id),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, family_id, issued_at, expires_at,
                        session_started_at, is_revoked, client_ip, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_hash,
                        token.family_id,
                        token.issued_at,
                        token.expires_at,
                        token.session_started_at,
                        token.is_revoked,
                        token.client_ip,
                        token.created_by,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND NOT is_revoked AND expires_at > %s
                ORDER BY issued_at ASC
                """,
                (user_id, now),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def revoke_refresh_token_if_active(
        self, token_id: str, *, now: datetime, actor: Actor
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
                WHERE id = %s AND NOT is_revoked
                """,
                (now, str(actor), token_id),
            )
            return result.rowcount > 0

    def revoke_refresh_family(
        self, family_id: str, *, now: datetime, actor: Actor
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
                WHERE family_id = %s AND NOT is_revoked
                """,
                (now, str(actor), family_id),
            )
            return result.rowcount

    def revoke_refresh_tokens_for_user(
        self,
        user_id: str,
        *,
        now: datetime,
        actor: Actor,
        keep_family_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
                WHERE user_id = %s AND NOT is_revoked
                  AND (%s::uuid IS NULL OR family_id <> %s::uuid)
                """,
                (now, str(actor), user_id, keep_family_id, keep_family_id),
            )
            return result.rowcount

    # mfa challenges
    def add_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mfa_challenge (token, user_id, channel, code_hash, created_at,
                        last_sent_at, expires_at, attempts, is_used, client_ip)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        challenge.token,
                        challenge.user_id,
                        challenge.channel.value,
                        challenge.code_hash,
                        challenge.created_at,
                        challenge.last_sent_at,
                        challenge.expires_at,
                        challenge.attempts,
                        challenge.is_used,
                        challenge.client_ip,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("mfa challenge user missing", {"user_id": challenge.user_id})
        return challenge

    def get_mfa_challenge(self, token: str) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_challenge WHERE token = %s", (token,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def increment_mfa_attempts(
        self, token: str, *, max_attempts: int
    ) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge
                SET attempts = attempts + 1
                WHERE token = %s AND NOT is_used AND attempts < %s
                RETURNING *
                """,
                (token, max_attempts),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def mark_mfa_challenge_used(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE mfa_challenge SET is_used = TRUE WHERE token = %s AND NOT is_used",
                (token,),
            )
            return result.rowcount > 0

    def reissue_mfa_code(
        self, token: str, *, code_hash: str, now: datetime, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE mfa_challenge
                SET code_hash = %s, last_sent_at = %s, expires_at = %s, attempts = 0
                WHERE token = %s AND NOT is_used
                """,
                (code_hash, now, expires_at, token),
            )
            return result.rowcount > 0

    # single-use tokens
    def add_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO single_use_token (id, purpose, subject, token_hash, created_at,
                        expires_at, is_used, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.purpose.value,
                        token.subject,
                        token.token_hash,
                        token.created_at,
                        token.expires_at,
                        token.is_used,
                        token.created_by,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("single-use token hash collision", {"field": "token_hash"})
        return token

    def get_single_use_token_by_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[SingleUseToken]:
        query = "SELECT * FROM single_use_token WHERE token_hash = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (token_hash,)).fetchone()
        return self._single_use_from_row(row) if row else None

    def mark_single_use_token_used(self, token_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE single_use_token SET is_used = TRUE, used_at = %s WHERE id = %s AND NOT is_used",
                (now, token_id),
            )
            return result.rowcount > 0

    def invalidate_single_use_tokens(
        self, purpose: TokenPurpose, subject: str, *, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE single_use_token SET is_used = TRUE, used_at = %s
                WHERE purpose = %s AND subject = %s AND NOT is_used
                """,
                (now, purpose.value, subject),
            )
            return result.rowcount

    # totp
    def get_totp_secret(self, user_id: str) -> Optional[TotpSecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_totp_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TotpSecret(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            enabled=bool(row.get("enabled", False)),
            created_at=row["created_at"],
            last_used_step=row.get("last_used_step"),
        )

    def save_totp_secret(self, record: TotpSecret) -> TotpSecret:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_totp_secret (user_id, secret, enabled, created_at, last_used_step)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled,
                        created_at = EXCLUDED.created_at, last_used_step = EXCLUDED.last_used_step
                    """,
                    (
                        record.user_id,
                        record.secret,
                        record.enabled,
                        record.created_at,
                        record.last_used_step,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": record.user_id})
        return record

    def enable_totp(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_totp_secret SET enabled = TRUE WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    def delete_totp_secret(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_totp_secret WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_totp_secret SET last_used_step = %s
                WHERE user_id = %s AND (last_used_step IS NULL OR last_used_step < %s)
                """,
                (step, user_id, step),
            )
            return result.rowcount > 0

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        with self.transaction(), self._connect() as conn:
            conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
            for code in codes:
                conn.execute(
                    """
                    INSERT INTO backup_code (id, user_id, code_hash, created_at, is_used)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (code.id, code.user_id, code.code_hash, code.created_at, code.is_used),
                )

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM backup_code WHERE user_id = %s AND NOT is_used ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            BackupCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                created_at=row["created_at"],
                is_used=row.get("is_used", False),
                used_at=row.get("used_at"),
            )
            for row in rows
        ]

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE backup_code SET is_used = TRUE, used_at = %s WHERE id = %s AND NOT is_used",
                (now, code_id),
            )
            return result.rowcount > 0

    def delete_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
            return result.rowcount

    # trusted devices
    def add_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO trusted_device (id, user_id, token_hash, fingerprint, device_name,
                        created_at, last_used_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.id,
                        device.user_id,
                        device.token_hash,
                        device.fingerprint,
                        device.device_name,
                        device.created_at,
                        device.last_used_at,
                        device.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("trusted device user missing", {"user_id": device.user_id})
        return device

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def touch_trusted_device(self, device_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s", (now, device_id)
            )

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM trusted_device WHERE id = %s", (device_id,))
            return result.rowcount > 0

    def delete_trusted_devices_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            return result.rowcount

    # external logins
    def add_external_login(self, login: ExternalLogin) -> ExternalLogin:
        with self._connect() as conn:
            inserted = conn.execute(
                """
                INSERT INTO user_external_login (user_id, provider, provider_key)
                VALUES (%s, %s, %s)
                ON CONFLICT (provider, provider_key) DO NOTHING
                RETURNING user_id
                """,
                (login.user_id, login.provider, login.provider_key),
            ).fetchone()
            if inserted:
                return login
            owner = conn.execute(
                "SELECT user_id FROM user_external_login WHERE provider = %s AND provider_key = %s",
                (login.provider, login.provider_key),
            ).fetchone()
        if owner and str(owner["user_id"]) != login.user_id:
            raise ConstraintViolation("external login already linked", {"field": "provider_key"})
        return login

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_external_login WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            ExternalLogin(
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_key=row["provider_key"],
                created_at=row.get("created_at"),
            )
            for row in rows
        ]

    def delete_external_login(self, user_id: str, provider: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_external_login WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return result.rowcount > 0
