from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional, Protocol, Tuple

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.hashing import (
    constant_time_equals,
    generate_numeric_code,
    generate_secure_token,
    hash_token,
)
from warden.service.results import AuthErrorCode, MfaRefreshResult, MfaVerificationResult
from warden.storage.models import Actor, MfaChallenge, MfaChannel
from warden.storage.repositories import MfaChallengeRepository


class MfaChallengeBackend(MfaChallengeRepository, Protocol):
    pass


SecretChecker = Callable[[MfaChallenge], bool]


class MfaChallengeEngine:
    """Second-factor challenges bound to one login attempt.

    A challenge ends Verified, Expired or AttemptsExhausted. Attempts are
    counted with a conditional increment so concurrent guesses can never
    exceed ``mfa_max_attempts`` in total.
    """

    def __init__(self, store: MfaChallengeBackend, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    @property
    def max_attempts(self) -> int:
        return self.settings.mfa_max_attempts

    def _expiry(self):
        return self.clock.now() + timedelta(minutes=self.settings.mfa_code_ttl_minutes)

    async def create_challenge(
        self,
        user_id: str,
        client_ip: Optional[str] = None,
        *,
        channel: MfaChannel = MfaChannel.EMAIL,
        actor: Actor,
    ) -> Tuple[str, Optional[str]]:
        now = self.clock.now()
        code = (
            generate_numeric_code(self.settings.mfa_code_length)
            if channel == MfaChannel.EMAIL
            else None
        )
        challenge = MfaChallenge(
            token=generate_secure_token(),
            user_id=user_id,
            channel=channel,
            code_hash=hash_token(code) if code else None,
            created_at=now,
            last_sent_at=now,
            expires_at=self._expiry(),
            client_ip=client_ip,
        )
        self.store.add_mfa_challenge(challenge)
        self.logger.info(
            "mfa_challenge_created", user_id=user_id, channel=channel.value, actor=str(actor)
        )
        return challenge.token, code

    def _precheck(self, challenge: Optional[MfaChallenge]) -> Optional[AuthErrorCode]:
        if not challenge:
            return AuthErrorCode.INVALID_CHALLENGE
        if challenge.is_used:
            return AuthErrorCode.CHALLENGE_USED
        if challenge.is_expired(self.clock.now()):
            return AuthErrorCode.CODE_EXPIRED
        if challenge.attempts >= self.max_attempts:
            return AuthErrorCode.ATTEMPTS_EXHAUSTED
        return None

    def _count_attempt(self, token: str) -> Tuple[Optional[MfaChallenge], Optional[AuthErrorCode]]:
        updated = self.store.increment_mfa_attempts(token, max_attempts=self.max_attempts)
        if updated is not None:
            return updated, None
        # Lost to a concurrent verifier; report what it left behind
        current = self.store.get_mfa_challenge(token)
        if current and current.is_used:
            return None, AuthErrorCode.CHALLENGE_USED
        return None, AuthErrorCode.ATTEMPTS_EXHAUSTED

    def _complete(self, challenge: MfaChallenge) -> MfaVerificationResult:
        if not self.store.mark_mfa_challenge_used(challenge.token):
            return MfaVerificationResult(success=False, error_code=AuthErrorCode.CHALLENGE_USED)
        self.logger.info(
            "mfa_challenge_verified", user_id=challenge.user_id, attempts=challenge.attempts
        )
        return MfaVerificationResult(
            success=True, user_id=challenge.user_id, client_ip=challenge.client_ip
        )

    def _reject(self, challenge: MfaChallenge) -> MfaVerificationResult:
        remaining = max(0, self.max_attempts - challenge.attempts)
        self.logger.info(
            "mfa_code_rejected", user_id=challenge.user_id, remaining_attempts=remaining
        )
        if remaining == 0:
            self.logger.warning("mfa_attempts_exhausted", user_id=challenge.user_id)
        return MfaVerificationResult(
            success=False,
            user_id=challenge.user_id,
            error_code=AuthErrorCode.INVALID_CODE,
            remaining_attempts=remaining,
        )

    async def verify_code(self, challenge_token: str, code: str) -> MfaVerificationResult:
        challenge = self.store.get_mfa_challenge(challenge_token)
        failure = self._precheck(challenge)
        if failure is None and challenge.code_hash is None:
            failure = AuthErrorCode.INVALID_CHALLENGE
        if failure:
            return MfaVerificationResult(success=False, error_code=failure)

        updated, failure = self._count_attempt(challenge_token)
        if failure:
            return MfaVerificationResult(success=False, error_code=failure)
        if not constant_time_equals(hash_token(code.strip()), updated.code_hash or ""):
            return self._reject(updated)
        return self._complete(updated)

    async def verify_with(
        self, challenge_token: str, checker: SecretChecker
    ) -> MfaVerificationResult:
        """Verify with a caller-supplied secret check (TOTP, backup code)."""
        challenge = self.store.get_mfa_challenge(challenge_token)
        failure = self._precheck(challenge)
        if failure:
            return MfaVerificationResult(success=False, error_code=failure)

        updated, failure = self._count_attempt(challenge_token)
        if failure:
            return MfaVerificationResult(success=False, error_code=failure)
        if not checker(updated):
            return self._reject(updated)
        return self._complete(updated)

    async def get_challenge(self, challenge_token: str) -> Optional[MfaChallenge]:
        return self.store.get_mfa_challenge(challenge_token)

    async def refresh_challenge(self, challenge_token: str) -> MfaRefreshResult:
        challenge = self.store.get_mfa_challenge(challenge_token)
        failure = self._precheck(challenge)
        if failure is None and challenge.channel != MfaChannel.EMAIL:
            failure = AuthErrorCode.INVALID_CHALLENGE
        if failure:
            return MfaRefreshResult(success=False, error_code=failure)

        now = self.clock.now()
        elapsed = (now - challenge.last_sent_at).total_seconds()
        if elapsed < self.settings.mfa_resend_cooldown_seconds:
            return MfaRefreshResult(
                success=False,
                user_id=challenge.user_id,
                error_code=AuthErrorCode.RESEND_COOLDOWN,
            )

        code = generate_numeric_code(self.settings.mfa_code_length)
        reissued = self.store.reissue_mfa_code(
            challenge_token, code_hash=hash_token(code), now=now, expires_at=self._expiry()
        )
        if not reissued:
            return MfaRefreshResult(success=False, error_code=AuthErrorCode.CHALLENGE_USED)
        self.logger.info("mfa_code_resent", user_id=challenge.user_id)
        return MfaRefreshResult(success=True, user_id=challenge.user_id, code=code)
