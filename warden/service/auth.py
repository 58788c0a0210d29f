from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set

from redis.exceptions import RedisError

from warden.clock import Clock, SystemClock
from warden.config import Settings
from warden.logging import get_logger, redact_email
from warden.service.access_tokens import AccessTokenIssuer
from warden.service.backup_codes import BackupCodeService
from warden.service.breach import BreachedPasswordChecker
from warden.service.credentials import CredentialStore
from warden.service.email import EmailService, Notifier
from warden.service.errors import ConflictError, PasswordPolicyError
from warden.service.mfa import MfaChallengeEngine
from warden.service.passwords import PasswordService
from warden.service.refresh_tokens import RefreshTokenEngine
from warden.service.results import (
    AuthContext,
    AuthErrorCode,
    AuthResult,
    ConsumeResult,
    MfaRefreshResult,
    MfaVerificationResult,
    TotpEnrollment,
    public_error_code,
)
from warden.service.single_use import SingleUseTokenEngine
from warden.service.totp import TotpService
from warden.service.trusted_devices import TrustedDeviceService
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    SYSTEM_ACTOR,
    Actor,
    ExternalLogin,
    MfaChannel,
    TokenPurpose,
    User,
)
from warden.storage.redis_cache import RedisCache
from warden.storage.repositories import AuthStore

logger = get_logger(__name__)

_DEFAULT_ROLES = ["user"]


class _SubjectUnavailable(Exception):
    """The user a token points at no longer exists or is disabled."""


class AuthService:
    """Login, MFA, session and account-recovery flows over the engines.

    Every public method is a coroutine. Outcomes a client can cause (wrong
    password, bad code, expired link) come back as typed results; store and
    configuration failures propagate as exceptions.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        breach_checker: Optional[BreachedPasswordChecker] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.notifier: Notifier = notifier or EmailService.from_settings(settings)
        self.logger = logger

        self.passwords = PasswordService(settings)
        self.credentials = CredentialStore(
            store,
            self.passwords,
            breach_checker or BreachedPasswordChecker(settings),
            settings,
            self.clock,
        )
        self.refresh_tokens = RefreshTokenEngine(store, settings, self.clock)
        self.mfa = MfaChallengeEngine(store, settings, self.clock)
        self.totp = TotpService(store, settings, self.clock)
        self.backup_codes = BackupCodeService(store, self.passwords, settings, self.clock)
        self.trusted_devices = TrustedDeviceService(store, settings, self.clock)
        self.access_tokens = AccessTokenIssuer(settings, self.clock)
        self.password_reset_tokens = SingleUseTokenEngine(
            store,
            TokenPurpose.PASSWORD_RESET,
            timedelta(hours=settings.password_reset_ttl_hours),
            self.clock,
        )
        self.email_verification_tokens = SingleUseTokenEngine(
            store,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=settings.email_verification_ttl_hours),
            self.clock,
        )
        self.registration_tokens = SingleUseTokenEngine(
            store,
            TokenPurpose.REGISTRATION,
            timedelta(hours=settings.registration_ttl_hours),
            self.clock,
        )
        self._pending_notifications: Set[asyncio.Task] = set()

    # helpers
    def _find_user(self, login: str) -> Optional[User]:
        login = (login or "").strip()
        if not login:
            return None
        if "@" in login:
            return self.store.get_user_by_email(login)
        return self.store.get_user_by_username(login)

    def _mfa_required(self, user: User) -> bool:
        if not self.settings.mfa_enabled:
            return False
        if self.settings.mfa_required_for_all_users:
            return True
        return user.mfa_enabled or self.totp.is_enrolled(user.id)

    async def _rate_limited(self, scope: str, subject: str, limit: int) -> bool:
        if not self.cache:
            return False
        try:
            allowed = await self.cache.check_rate_limit(
                RedisCache.rate_key(scope, subject), limit, 60
            )
        except RedisError as exc:
            # Fail open: a Redis outage must not lock everyone out
            self.logger.warning("rate_limit_check_failed", scope=scope, error=str(exc))
            return False
        if not allowed:
            self.logger.warning("rate_limited", scope=scope)
        return not allowed

    def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        """Send on a worker thread without waiting; failures are only logged."""
        task = asyncio.create_task(asyncio.to_thread(send, *args))
        self._pending_notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning(
                "notification_failed", error_type=type(exc).__name__, error=str(exc)
            )
        elif task.result() is False:
            self.logger.warning("notification_not_delivered")

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight notifications; used at shutdown and in tests."""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    async def _validate_password(self, password: str) -> Optional[AuthResult]:
        try:
            await self.credentials.validate_new_password(password)
        except PasswordPolicyError as exc:
            code = (
                AuthErrorCode.PASSWORD_BREACHED
                if exc.error_code == "password_breached"
                else AuthErrorCode.WEAK_PASSWORD
            )
            return AuthResult.failed(code, exc.violations)
        return None

    async def _issue_session(
        self,
        user: User,
        client_ip: Optional[str],
        remember_me: bool,
        *,
        trusted_device_token: Optional[str] = None,
    ) -> AuthResult:
        refresh = await self.refresh_tokens.issue(
            user.id, client_ip, remember_me, actor=Actor.for_user(user.id)
        )
        access = self.access_tokens.issue(user.id, user.roles)
        self.logger.info("session_started", user_id=user.id, remember_me=remember_me)
        return AuthResult.succeeded(
            user.id,
            access.token,
            refresh,
            access.expires_at,
            requires_password_change=user.requires_password_change,
            trusted_device_token=trusted_device_token,
        )

    # login
    async def login(
        self,
        login: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
        remember_me: bool = False,
        trusted_device_token: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if await self._rate_limited(
            "login", client_ip or login, self.settings.login_rate_limit_per_minute
        ):
            return AuthResult.failed(AuthErrorCode.RATE_LIMITED)

        user = self._find_user(login)
        if not user or not user.is_valid_for_authentication():
            # Same cost and shape as a wrong password
            self.passwords.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_or_inactive")
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)

        now = self.clock.now()
        if self.settings.lockout_enabled and user.is_locked_out(now):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            return AuthResult.failed(AuthErrorCode.ACCOUNT_LOCKED)

        if not await self.credentials.verify_password(user.id, password):
            if self.settings.lockout_enabled:
                updated = self.store.record_login_failure(
                    user.id,
                    now=now,
                    max_attempts=self.settings.lockout_max_failed_attempts,
                    lockout_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
                )
                if updated and updated.is_locked_out(now):
                    self.logger.warning(
                        "account_locked",
                        user_id=user.id,
                        lockout_end=updated.lockout_end.isoformat(),
                    )
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)

        self.store.record_login_success(user.id, now=now, client_ip=client_ip)

        if self._mfa_required(user):
            if trusted_device_token and await self.trusted_devices.validate(
                user.id, trusted_device_token, user_agent, client_ip
            ):
                self.logger.info("mfa_bypassed_trusted_device", user_id=user.id)
                return await self._issue_session(user, client_ip, remember_me)
            return await self._start_mfa(user, client_ip)

        return await self._issue_session(user, client_ip, remember_me)

    async def _start_mfa(self, user: User, client_ip: Optional[str]) -> AuthResult:
        actor = Actor.for_user(user.id)
        if self.totp.is_enrolled(user.id):
            token, _ = await self.mfa.create_challenge(
                user.id, client_ip, channel=MfaChannel.TOTP, actor=actor
            )
            return AuthResult.mfa_required(token, MfaChannel.TOTP)
        token, code = await self.mfa.create_challenge(
            user.id, client_ip, channel=MfaChannel.EMAIL, actor=actor
        )
        self._notify(self.notifier.send_mfa_code, user.email, code)
        return AuthResult.mfa_required(token, MfaChannel.EMAIL)

    # second factor
    async def _finish_mfa(
        self,
        result: MfaVerificationResult,
        *,
        client_ip: Optional[str],
        remember_me: bool,
        trust_device: bool,
        user_agent: Optional[str],
    ) -> AuthResult:
        if not result.success:
            return AuthResult.failed(result.error_code or AuthErrorCode.INVALID_CODE)
        user = self.store.get_user(result.user_id)
        if not user or not user.is_valid_for_authentication():
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)
        device_token = None
        if trust_device:
            device_token = await self.trusted_devices.trust(user.id, user_agent, client_ip)
        return await self._issue_session(
            user, client_ip or result.client_ip, remember_me, trusted_device_token=device_token
        )

    async def _mfa_rate_limited(self, challenge_token: str) -> bool:
        return await self._rate_limited(
            "mfa_verify", challenge_token, self.settings.mfa_verify_rate_limit_per_minute
        )

    async def verify_mfa(
        self,
        challenge_token: str,
        code: str,
        *,
        client_ip: Optional[str] = None,
        remember_me: bool = False,
        trust_device: bool = False,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if await self._mfa_rate_limited(challenge_token):
            return AuthResult.failed(AuthErrorCode.RATE_LIMITED)
        result = await self.mfa.verify_code(challenge_token, code)
        return await self._finish_mfa(
            result,
            client_ip=client_ip,
            remember_me=remember_me,
            trust_device=trust_device,
            user_agent=user_agent,
        )

    async def verify_totp(
        self,
        challenge_token: str,
        code: str,
        *,
        client_ip: Optional[str] = None,
        remember_me: bool = False,
        trust_device: bool = False,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if await self._mfa_rate_limited(challenge_token):
            return AuthResult.failed(AuthErrorCode.RATE_LIMITED)
        result = await self.mfa.verify_with(
            challenge_token, lambda challenge: self.totp.verify(challenge.user_id, code)
        )
        return await self._finish_mfa(
            result,
            client_ip=client_ip,
            remember_me=remember_me,
            trust_device=trust_device,
            user_agent=user_agent,
        )

    async def verify_backup_code(
        self,
        challenge_token: str,
        code: str,
        *,
        client_ip: Optional[str] = None,
        remember_me: bool = False,
        trust_device: bool = False,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if await self._mfa_rate_limited(challenge_token):
            return AuthResult.failed(AuthErrorCode.RATE_LIMITED)
        result = await self.mfa.verify_with(
            challenge_token,
            lambda challenge: self.backup_codes.consume(challenge.user_id, code),
        )
        return await self._finish_mfa(
            result,
            client_ip=client_ip,
            remember_me=remember_me,
            trust_device=trust_device,
            user_agent=user_agent,
        )

    async def resend_mfa_code(self, challenge_token: str) -> MfaRefreshResult:
        result = await self.mfa.refresh_challenge(challenge_token)
        if not result.success:
            return result
        user = self.store.get_user(result.user_id)
        if user:
            self._notify(self.notifier.send_mfa_code, user.email, result.code)
        # The new code only ever leaves through the notifier
        return MfaRefreshResult(success=True, user_id=result.user_id)

    # sessions
    async def refresh(self, raw_refresh: str, client_ip: Optional[str] = None) -> AuthResult:
        rotated = await self.refresh_tokens.rotate(raw_refresh, client_ip, actor=SYSTEM_ACTOR)
        if not rotated:
            return AuthResult.failed(
                public_error_code(AuthErrorCode.TOKEN_INVALID, session=True)
            )
        user = self.store.get_user(rotated.user_id)
        if not user or not user.is_valid_for_authentication():
            await self.refresh_tokens.revoke_family(rotated.family_id, actor=SYSTEM_ACTOR)
            self.logger.warning("refresh_for_disabled_user", user_id=rotated.user_id)
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)
        access = self.access_tokens.issue(user.id, user.roles)
        return AuthResult.succeeded(
            user.id,
            access.token,
            rotated.refresh_token,
            access.expires_at,
            requires_password_change=user.requires_password_change,
        )

    async def logout(
        self,
        raw_refresh: str,
        access_token: Optional[str] = None,
        *,
        actor: Actor = SYSTEM_ACTOR,
    ) -> bool:
        revoked = await self.refresh_tokens.revoke_by_raw_token(raw_refresh, actor=actor)
        if access_token and self.cache:
            payload = self.access_tokens.decode(access_token)
            if payload and payload.get("jti"):
                ttl = int(float(payload["exp"]) - self.clock.now().timestamp())
                try:
                    await self.cache.denylist_access_token(payload["jti"], ttl)
                except RedisError as exc:
                    self.logger.warning("access_token_denylist_failed", error=str(exc))
        self.logger.info("logout", revoked=revoked)
        return revoked

    async def logout_everywhere(self, user_id: str) -> int:
        return await self.refresh_tokens.revoke_all(user_id, actor=Actor.for_user(user_id))

    async def authenticate(self, access_token: str) -> Optional[AuthContext]:
        payload = self.access_tokens.decode(access_token)
        if not payload:
            return None
        jti = payload.get("jti")
        if self.cache and jti:
            try:
                if await self.cache.is_access_token_denylisted(jti):
                    self.logger.info("access_token_denylisted", jti=jti)
                    return None
            except RedisError as exc:
                self.logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        user = self.store.get_user(str(payload.get("sub")))
        if not user or not user.is_valid_for_authentication():
            return None
        return AuthContext(
            user_id=user.id,
            roles=list(user.roles),
            token_id=jti,
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    # password reset
    async def request_password_reset(self, email: str) -> None:
        """Always returns quietly so callers cannot enumerate accounts."""
        user = self.store.get_user_by_email(email)
        if not user or not user.is_valid_for_authentication():
            self.logger.info("password_reset_requested_unknown", email=redact_email(email))
            return None
        raw = await self.password_reset_tokens.issue(user.id, actor=SYSTEM_ACTOR)
        self._notify(self.notifier.send_password_reset, user.email, raw)
        self.logger.info("password_reset_requested", user_id=user.id)
        return None

    async def complete_password_reset(
        self, token: str, new_password: str, *, client_ip: Optional[str] = None
    ) -> AuthResult:
        invalid = await self._validate_password(new_password)
        if invalid:
            return invalid
        password_hash = self.passwords.hash(new_password)

        def apply(user_id: str) -> None:
            user = self.store.get_user(user_id)
            if not user or not user.is_valid_for_authentication():
                raise _SubjectUnavailable(user_id)
            actor = Actor.for_user(user_id)
            self.refresh_tokens.revoke_all_now(user_id, actor=actor)
            self.credentials.write_hash(user_id, password_hash, actor=actor)
            self.store.set_requires_password_change(user_id, False, actor=actor)

        try:
            consumed = await self.password_reset_tokens.consume(token, apply=apply, actor=SYSTEM_ACTOR)
        except _SubjectUnavailable:
            return AuthResult.failed(AuthErrorCode.TOKEN_INVALID)
        if not consumed.success:
            return AuthResult.failed(public_error_code(consumed.error_code))
        user = self.store.get_user(consumed.subject)
        self.logger.info("password_reset_completed", user_id=user.id)
        return await self._issue_session(user, client_ip, remember_me=False)

    # registration
    async def initiate_registration(self, email: str) -> None:
        """Email a registration link; silent when the address already has an account."""
        normalized = email.strip().lower()
        user = self.store.get_user_by_email(normalized)
        if not user:
            try:
                user = self.store.create_user(
                    normalized,
                    roles=[],
                    is_active=False,
                    pending_registration=True,
                    now=self.clock.now(),
                    actor=SYSTEM_ACTOR,
                )
            except ConstraintViolation:
                # Concurrent initiation created it first
                user = self.store.get_user_by_email(normalized)
                if not user:
                    raise
        if not user.pending_registration:
            # Active or administratively disabled accounts never re-register
            self.logger.info("registration_requested_existing", email=redact_email(normalized))
            return None
        raw = await self.registration_tokens.issue(user.id, actor=SYSTEM_ACTOR)
        self._notify(self.notifier.send_registration_link, user.email, raw)
        self.logger.info("registration_initiated", user_id=user.id)
        return None

    async def complete_registration(
        self,
        token: str,
        username: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> AuthResult:
        invalid = await self._validate_password(password)
        if invalid:
            return invalid
        password_hash = self.passwords.hash(password)

        def apply(user_id: str) -> None:
            actor = Actor.for_user(user_id)
            activated = self.store.activate_user(
                user_id, username=username, roles=_DEFAULT_ROLES, actor=actor
            )
            if not activated:
                raise _SubjectUnavailable(user_id)
            self.credentials.write_hash(user_id, password_hash, actor=actor)
            self.refresh_tokens.revoke_all_now(user_id, actor=actor)

        try:
            consumed = await self.registration_tokens.consume(token, apply=apply, actor=SYSTEM_ACTOR)
        except _SubjectUnavailable:
            return AuthResult.failed(AuthErrorCode.TOKEN_INVALID)
        except ConstraintViolation as exc:
            raise ConflictError("username is already taken", detail=exc.detail) from exc
        if not consumed.success:
            return AuthResult.failed(public_error_code(consumed.error_code))
        user = self.store.get_user(consumed.subject)
        self.logger.info("registration_completed", user_id=user.id)
        return await self._issue_session(user, client_ip, remember_me=False)

    # email verification
    async def request_email_verification(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        if not user or user.email_confirmed:
            return False
        raw = await self.email_verification_tokens.issue(user.id, actor=Actor.for_user(user.id))
        self._notify(self.notifier.send_email_verification, user.email, raw)
        return True

    async def confirm_email(self, token: str) -> ConsumeResult:
        def apply(user_id: str) -> None:
            if not self.store.mark_email_confirmed(user_id, actor=Actor.for_user(user_id)):
                raise _SubjectUnavailable(user_id)

        try:
            result = await self.email_verification_tokens.consume(
                token, apply=apply, actor=SYSTEM_ACTOR
            )
        except _SubjectUnavailable:
            return ConsumeResult(success=False, error_code=AuthErrorCode.TOKEN_INVALID)
        if not result.success:
            return ConsumeResult(success=False, error_code=public_error_code(result.error_code))
        self.logger.info("email_confirmed", user_id=result.subject)
        return result

    # account security
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user(user_id)
        if not user or not user.is_valid_for_authentication():
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)
        if not await self.credentials.verify_password(user_id, current_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            return AuthResult.failed(AuthErrorCode.INVALID_CREDENTIALS)
        invalid = await self._validate_password(new_password)
        if invalid:
            return invalid
        password_hash = self.passwords.hash(new_password)
        actor = Actor.for_user(user_id)
        with self.store.transaction():
            self.credentials.write_hash(user_id, password_hash, actor=actor)
            self.store.set_requires_password_change(user_id, False, actor=actor)
            self.refresh_tokens.revoke_all_now(user_id, actor=actor)
        user.requires_password_change = False
        self.logger.info("password_changed", user_id=user_id)
        return await self._issue_session(user, client_ip, remember_me=False)

    def _has_other_auth_method(self, user_id: str, *, excluding_provider: Optional[str]) -> bool:
        if self.credentials.has_password(user_id):
            return True
        return any(
            login.provider != excluding_provider
            for login in self.store.list_external_logins(user_id)
        )

    async def link_external_login(self, user_id: str, provider: str, provider_key: str) -> None:
        try:
            self.store.add_external_login(
                ExternalLogin(
                    user_id=user_id,
                    provider=provider,
                    provider_key=provider_key,
                    created_at=self.clock.now(),
                )
            )
        except ConstraintViolation as exc:
            self.logger.warning(
                "external_login_link_conflict", user_id=user_id, provider=provider
            )
            raise ConflictError(
                "external login is linked to another account", detail=exc.detail
            ) from exc
        self.logger.info("external_login_linked", user_id=user_id, provider=provider)

    async def unlink_external_login(self, user_id: str, provider: str) -> AuthResult:
        with self.store.transaction():
            self.store.lock_user(user_id)
            if not self._has_other_auth_method(user_id, excluding_provider=provider):
                self.logger.info("unlink_refused_last_method", user_id=user_id, provider=provider)
                return AuthResult.failed(AuthErrorCode.LAST_AUTH_METHOD)
            removed = self.store.delete_external_login(user_id, provider)
        if removed:
            self.logger.info("external_login_unlinked", user_id=user_id, provider=provider)
        return AuthResult(success=True, user_id=user_id)

    async def enroll_totp(self, user_id: str) -> TotpEnrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise ConflictError("user does not exist", detail={"user_id": user_id})
        return await self.totp.begin_enrollment(user_id, user.email)

    async def confirm_totp(self, user_id: str, code: str) -> Optional[List[str]]:
        """Activate TOTP and return a fresh set of backup codes, or ``None``."""
        if not await self.totp.confirm_enrollment(user_id, code):
            return None
        self.store.set_user_mfa_enabled(user_id, True, actor=Actor.for_user(user_id))
        return await self.backup_codes.generate(user_id)

    async def disable_totp(self, user_id: str, code: str) -> AuthResult:
        if not self.totp.verify(user_id, code):
            return AuthResult.failed(AuthErrorCode.INVALID_CODE)
        if not self._has_other_auth_method(user_id, excluding_provider=None):
            return AuthResult.failed(AuthErrorCode.LAST_AUTH_METHOD)
        await self.totp.disable(user_id)
        await self.backup_codes.revoke_all(user_id)
        await self.trusted_devices.revoke_all(user_id)
        return AuthResult(success=True, user_id=user_id)

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        return await self.backup_codes.generate(user_id)
