from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
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
    new_id,
)

_TABLES = (
    "users",
    "credentials",
    "refresh_tokens",
    "mfa_challenges",
    "single_use_tokens",
    "totp_secrets",
    "backup_codes",
    "trusted_devices",
    "external_logins",
)


def _clone(obj: Any) -> Any:
    return copy.deepcopy(obj) if obj is not None else None


class MemoryStore:
    """In-process store for tests and single-node development.

    Every method takes the same re-entrant lock, and ``transaction()`` holds
    it for the whole block, so a transaction is serialized against all other
    callers. Records are copied on the way in and out; callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.mfa_challenges: Dict[str, MfaChallenge] = {}
        self.single_use_tokens: Dict[str, SingleUseToken] = {}
        self.totp_secrets: Dict[str, TotpSecret] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.external_logins: List[ExternalLogin] = []
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    # transactions
    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

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
        with self._data_lock:
            normalized = email.strip().lower()
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and self._find_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=new_id(),
                email=normalized,
                username=username,
                roles=list(roles) if roles is not None else ["user"],
                is_active=is_active,
                pending_registration=pending_registration,
                created_at=now,
            )
            self.users[user.id] = user
            self.logger.debug("user_created", user_id=user.id, actor=str(actor))
            return _clone(user)

    def _find_username(self, username: str) -> Optional[User]:
        wanted = username.strip().lower()
        return next(
            (u for u in self.users.values() if u.username and u.username.lower() == wanted),
            None,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return _clone(self.users.get(user_id))

    def lock_user(self, user_id: str) -> Optional[User]:
        # transaction() already holds the store lock
        return self.get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return _clone(next((u for u in self.users.values() if u.email == normalized), None))

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return _clone(self._find_username(username))

    def activate_user(
        self, user_id: str, *, username: str, roles: Sequence[str], actor: Actor
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.pending_registration:
                return None
            existing = self._find_username(username)
            if existing and existing.id != user_id:
                raise ConstraintViolation("username already exists", {"field": "username"})
            user.username = username
            user.is_active = True
            user.pending_registration = False
            user.email_confirmed = True
            for role in roles:
                if role not in user.roles:
                    user.roles.append(role)
            return _clone(user)

    def mark_email_confirmed(self, user_id: str, *, actor: Actor) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_confirmed = True
            return _clone(user)

    def set_requires_password_change(
        self, user_id: str, value: bool, *, actor: Actor
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.requires_password_change = value

    def set_user_mfa_enabled(self, user_id: str, enabled: bool, *, actor: Actor) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.mfa_enabled = enabled

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count += 1
            if user.failed_login_count >= max_attempts:
                # The counter restarts once the lockout is armed
                user.lockout_end = now + lockout_duration
                user.failed_login_count = 0
            return _clone(user)

    def record_login_success(
        self, user_id: str, *, now: datetime, client_ip: Optional[str]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = 0
            user.lockout_end = None
            user.last_login_at = now
            if client_ip is not None:
                user.last_login_ip = client_ip

    # credentials
    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            return _clone(self.credentials.get(user_id))

    def get_credential_for_update(self, user_id: str) -> Optional[Credential]:
        # The caller's transaction() already holds the store lock
        return self.get_credential(user_id)

    def create_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Credential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            if user_id in self.credentials:
                raise ConstraintViolation("credential already exists", {"user_id": user_id})
            cred = Credential(
                user_id=user_id,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
                created_by=str(actor),
                updated_by=str(actor),
            )
            self.credentials[user_id] = cred
            return _clone(cred)

    def update_credential(
        self, user_id: str, password_hash: str, *, now: datetime, actor: Actor
    ) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            cred.password_hash = password_hash
            cred.updated_at = now
            cred.updated_by = str(actor)
            return _clone(cred)

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
            if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            self.refresh_tokens[token.id] = _clone(token)
            return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return _clone(
                next((t for t in self.refresh_tokens.values() if t.token_hash == token_hash), None)
            )

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[RefreshToken]:
        with self._data_lock:
            active = [
                t for t in self.refresh_tokens.values() if t.user_id == user_id and t.is_active(now)
            ]
            return [_clone(t) for t in sorted(active, key=lambda t: t.issued_at)]

    def _revoke(self, token: RefreshToken, now: datetime, actor: Actor) -> None:
        token.is_revoked = True
        token.revoked_at = now
        token.revoked_by = str(actor)

    def revoke_refresh_token_if_active(
        self, token_id: str, *, now: datetime, actor: Actor
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return False
            self._revoke(token, now, actor)
            return True

    def revoke_refresh_family(
        self, family_id: str, *, now: datetime, actor: Actor
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.family_id == family_id and not token.is_revoked:
                    self._revoke(token, now, actor)
                    count += 1
            return count

    def revoke_refresh_tokens_for_user(
        self,
        user_id: str,
        *,
        now: datetime,
        actor: Actor,
        keep_family_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id != user_id or token.is_revoked:
                    continue
                if keep_family_id and token.family_id == keep_family_id:
                    continue
                self._revoke(token, now, actor)
                count += 1
            return count

    # mfa challenges
    def add_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._data_lock:
            if challenge.user_id not in self.users:
                raise ConstraintViolation("mfa challenge user missing", {"user_id": challenge.user_id})
            self.mfa_challenges[challenge.token] = _clone(challenge)
            return challenge

    def get_mfa_challenge(self, token: str) -> Optional[MfaChallenge]:
        with self._data_lock:
            return _clone(self.mfa_challenges.get(token))

    def increment_mfa_attempts(
        self, token: str, *, max_attempts: int
    ) -> Optional[MfaChallenge]:
        with self._data_lock:
            challenge = self.mfa_challenges.get(token)
            if not challenge or challenge.is_used or challenge.attempts >= max_attempts:
                return None
            challenge.attempts += 1
            return _clone(challenge)

    def mark_mfa_challenge_used(self, token: str) -> bool:
        with self._data_lock:
            challenge = self.mfa_challenges.get(token)
            if not challenge or challenge.is_used:
                return False
            challenge.is_used = True
            return True

    def reissue_mfa_code(
        self, token: str, *, code_hash: str, now: datetime, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            challenge = self.mfa_challenges.get(token)
            if not challenge or challenge.is_used:
                return False
            challenge.code_hash = code_hash
            challenge.last_sent_at = now
            challenge.expires_at = expires_at
            challenge.attempts = 0
            return True

    # single-use tokens
    def add_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.single_use_tokens.values()):
                raise ConstraintViolation("single-use token hash collision", {"field": "token_hash"})
            self.single_use_tokens[token.id] = _clone(token)
            return token

    def get_single_use_token_by_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[SingleUseToken]:
        with self._data_lock:
            return _clone(
                next(
                    (t for t in self.single_use_tokens.values() if t.token_hash == token_hash),
                    None,
                )
            )

    def mark_single_use_token_used(self, token_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            token = self.single_use_tokens.get(token_id)
            if not token or token.is_used:
                return False
            token.is_used = True
            token.used_at = now
            return True

    def invalidate_single_use_tokens(
        self, purpose: TokenPurpose, subject: str, *, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.single_use_tokens.values():
                if token.purpose == purpose and token.subject == subject and not token.is_used:
                    token.is_used = True
                    token.used_at = now
                    count += 1
            return count

    # totp
    def get_totp_secret(self, user_id: str) -> Optional[TotpSecret]:
        with self._data_lock:
            return _clone(self.totp_secrets.get(user_id))

    def save_totp_secret(self, record: TotpSecret) -> TotpSecret:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": record.user_id})
            self.totp_secrets[record.user_id] = _clone(record)
            return record

    def enable_totp(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.totp_secrets.get(user_id)
            if not record:
                return False
            record.enabled = True
            return True

    def delete_totp_secret(self, user_id: str) -> bool:
        with self._data_lock:
            return self.totp_secrets.pop(user_id, None) is not None

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        with self._data_lock:
            record = self.totp_secrets.get(user_id)
            if not record:
                return False
            if record.last_used_step is not None and record.last_used_step >= step:
                return False
            record.last_used_step = step
            return True

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        with self._data_lock:
            self.backup_codes = {
                cid: code for cid, code in self.backup_codes.items() if code.user_id != user_id
            }
            for code in codes:
                self.backup_codes[code.id] = _clone(code)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._data_lock:
            return [
                _clone(c)
                for c in self.backup_codes.values()
                if c.user_id == user_id and not c.is_used
            ]

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.is_used:
                return False
            code.is_used = True
            code.used_at = now
            return True

    def delete_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [cid for cid, c in self.backup_codes.items() if c.user_id == user_id]
            for cid in doomed:
                self.backup_codes.pop(cid, None)
            return len(doomed)

    # trusted devices
    def add_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            if device.user_id not in self.users:
                raise ConstraintViolation("trusted device user missing", {"user_id": device.user_id})
            self.trusted_devices[device.id] = _clone(device)
            return device

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            return _clone(
                next((d for d in self.trusted_devices.values() if d.token_hash == token_hash), None)
            )

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [d for d in self.trusted_devices.values() if d.user_id == user_id]
            return [_clone(d) for d in sorted(devices, key=lambda d: d.created_at)]

    def touch_trusted_device(self, device_id: str, *, now: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device:
                device.last_used_at = now

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._data_lock:
            return self.trusted_devices.pop(device_id, None) is not None

    def delete_trusted_devices_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [did for did, d in self.trusted_devices.items() if d.user_id == user_id]
            for did in doomed:
                self.trusted_devices.pop(did, None)
            return len(doomed)

    # external logins
    def add_external_login(self, login: ExternalLogin) -> ExternalLogin:
        with self._data_lock:
            for existing in self.external_logins:
                if existing.provider == login.provider and existing.provider_key == login.provider_key:
                    if existing.user_id != login.user_id:
                        raise ConstraintViolation(
                            "external login already linked", {"field": "provider_key"}
                        )
                    return _clone(existing)
            self.external_logins.append(_clone(login))
            return login

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]:
        with self._data_lock:
            return [_clone(l) for l in self.external_logins if l.user_id == user_id]

    def delete_external_login(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            before = len(self.external_logins)
            self.external_logins = [
                l
                for l in self.external_logins
                if not (l.user_id == user_id and l.provider == provider)
            ]
            return len(self.external_logins) < before
