from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

from warden.clock import Clock
from warden.logging import get_logger
from warden.service.hashing import generate_secure_token, hash_token
from warden.service.results import AuthErrorCode, ConsumeResult
from warden.storage.models import Actor, SingleUseToken, TokenPurpose, new_id
from warden.storage.repositories import SingleUseTokenRepository, Transactional


class SingleUseTokenBackend(SingleUseTokenRepository, Transactional, Protocol):
    pass


class _LostConsumeRace(Exception):
    pass


class SingleUseTokenEngine:
    """Hashed, expiring, consume-once tokens for one purpose.

    Issuing a token for a subject invalidates every outstanding token of the
    same purpose for that subject, so at most one is ever redeemable.
    """

    def __init__(
        self,
        store: SingleUseTokenBackend,
        purpose: TokenPurpose,
        ttl: timedelta,
        clock: Clock,
    ) -> None:
        self.store = store
        self.purpose = purpose
        self.ttl = ttl
        self.clock = clock
        self.logger = get_logger(__name__).bind(purpose=purpose.value)

    async def issue(self, subject: str, *, actor: Actor) -> str:
        now = self.clock.now()
        raw = generate_secure_token()
        token = SingleUseToken(
            id=new_id(),
            purpose=self.purpose,
            subject=subject,
            token_hash=hash_token(raw),
            created_at=now,
            expires_at=now + self.ttl,
            created_by=str(actor),
        )
        with self.store.transaction():
            invalidated = self.store.invalidate_single_use_tokens(self.purpose, subject, now=now)
            self.store.add_single_use_token(token)
        self.logger.info("single_use_token_issued", invalidated=invalidated, actor=str(actor))
        return raw

    def _check(self, token: Optional[SingleUseToken]) -> Optional[AuthErrorCode]:
        if not token or token.purpose != self.purpose:
            return AuthErrorCode.TOKEN_INVALID
        if token.is_used:
            return AuthErrorCode.ALREADY_USED
        if token.expires_at <= self.clock.now():
            return AuthErrorCode.TOKEN_EXPIRED
        return None

    async def peek(self, raw: str) -> ConsumeResult:
        """Report whether ``raw`` would be accepted, without consuming it."""
        token = self.store.get_single_use_token_by_hash(hash_token(raw))
        failure = self._check(token)
        if failure:
            return ConsumeResult(success=False, error_code=failure)
        return ConsumeResult(success=True, subject=token.subject)

    async def consume(
        self,
        raw: str,
        *,
        apply: Optional[Callable[[str], Any]] = None,
        actor: Actor,
    ) -> ConsumeResult:
        """Redeem ``raw`` and run ``apply(subject)`` in the same transaction.

        If ``apply`` raises, nothing is committed and the token stays
        redeemable; the exception propagates to the caller.
        """
        token_hash = hash_token(raw)
        try:
            with self.store.transaction():
                token = self.store.get_single_use_token_by_hash(token_hash, for_update=True)
                failure = self._check(token)
                if failure:
                    self.logger.info("single_use_token_rejected", reason=failure.value)
                    return ConsumeResult(success=False, error_code=failure)
                if apply is not None:
                    apply(token.subject)
                if not self.store.mark_single_use_token_used(token.id, now=self.clock.now()):
                    raise _LostConsumeRace()
        except _LostConsumeRace:
            self.logger.info("single_use_token_rejected", reason="lost_race")
            return ConsumeResult(success=False, error_code=AuthErrorCode.ALREADY_USED)
        self.logger.info("single_use_token_consumed", actor=str(actor))
        return ConsumeResult(success=True, subject=token.subject)
