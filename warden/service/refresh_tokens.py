"""Refresh-token issuance, rotation and revocation.

Every token belongs to a family (one login and all of its rotations). A
rotation revokes the presented token and inserts a successor in the same
family; presenting a token that was already rotated away means it leaked,
so the whole family is revoked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.hashing import generate_secure_token, hash_token
from warden.storage.models import Actor, RefreshToken, User, new_id
from warden.storage.repositories import RefreshTokenRepository, Transactional


class RefreshTokenBackend(RefreshTokenRepository, Transactional, Protocol):
    def lock_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class RotatedRefreshToken:
    user_id: str
    refresh_token: str
    family_id: str
    expires_at: datetime


class RefreshTokenEngine:
    def __init__(self, store: RefreshTokenBackend, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    def _lifetime(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.refresh_token_remember_me_ttl_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    def _session_deadline(self, session_started_at: datetime) -> datetime:
        return session_started_at + timedelta(
            days=self.settings.absolute_session_timeout_days
        )

    async def issue(
        self,
        user_id: str,
        client_ip: Optional[str] = None,
        remember_me: bool = False,
        *,
        actor: Actor,
    ) -> str:
        """Start a new session family and return the raw token."""
        now = self.clock.now()
        raw = generate_secure_token()
        token = RefreshToken(
            id=new_id(),
            user_id=user_id,
            token_hash=hash_token(raw),
            family_id=new_id(),
            issued_at=now,
            expires_at=min(now + self._lifetime(remember_me), self._session_deadline(now)),
            session_started_at=now,
            client_ip=client_ip,
            created_by=str(actor),
        )
        with self.store.transaction():
            # Concurrent logins for one user queue on this row lock
            self.store.lock_user(user_id)
            active = self.store.list_active_refresh_tokens(user_id, now=now)
            if len(active) >= self.settings.max_active_sessions_per_user:
                oldest = active[0]
                if self.store.revoke_refresh_token_if_active(oldest.id, now=now, actor=actor):
                    self.logger.info(
                        "session_limit_evicted_oldest",
                        user_id=user_id,
                        evicted_family_id=oldest.family_id,
                        active_sessions=len(active),
                    )
            self.store.add_refresh_token(token)
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            family_id=token.family_id,
            remember_me=remember_me,
        )
        return raw

    async def validate(self, raw: str) -> Optional[str]:
        """Return the owning user id when ``raw`` is an active token."""
        token = self.store.get_refresh_token_by_hash(hash_token(raw))
        if not token or not token.is_active(self.clock.now()):
            return None
        return token.user_id

    async def rotate(
        self, raw: str, client_ip: Optional[str] = None, *, actor: Actor
    ) -> Optional[RotatedRefreshToken]:
        now = self.clock.now()
        token = self.store.get_refresh_token_by_hash(hash_token(raw))
        if not token:
            self.logger.info("refresh_rotation_rejected", reason="not_found")
            return None
        if token.expires_at <= now:
            self.logger.info(
                "refresh_rotation_rejected", reason="expired", user_id=token.user_id
            )
            return None
        deadline = self._session_deadline(token.session_started_at)
        if deadline <= now:
            self.store.revoke_refresh_token_if_active(token.id, now=now, actor=actor)
            self.logger.info(
                "refresh_rotation_rejected",
                reason="absolute_session_timeout",
                user_id=token.user_id,
                family_id=token.family_id,
            )
            return None
        if token.is_revoked:
            self._revoke_family_on_reuse(token, now, actor)
            return None

        successor_raw = generate_secure_token()
        lifetime = token.expires_at - token.issued_at
        successor = RefreshToken(
            id=new_id(),
            user_id=token.user_id,
            token_hash=hash_token(successor_raw),
            family_id=token.family_id,
            issued_at=now,
            expires_at=min(now + lifetime, deadline),
            session_started_at=token.session_started_at,
            client_ip=client_ip,
            created_by=str(actor),
        )
        with self.store.transaction():
            won = self.store.revoke_refresh_token_if_active(token.id, now=now, actor=actor)
            if won:
                self.store.add_refresh_token(successor)
        if not won:
            # Someone else rotated this token between our read and our write
            self._revoke_family_on_reuse(token, now, actor)
            return None
        self.logger.info(
            "refresh_token_rotated", user_id=token.user_id, family_id=token.family_id
        )
        return RotatedRefreshToken(
            user_id=token.user_id,
            refresh_token=successor_raw,
            family_id=token.family_id,
            expires_at=successor.expires_at,
        )

    def _revoke_family_on_reuse(self, token: RefreshToken, now: datetime, actor: Actor) -> None:
        revoked = self.store.revoke_refresh_family(token.family_id, now=now, actor=actor)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.user_id,
            family_id=token.family_id,
            revoked_count=revoked,
        )

    async def revoke_all(
        self, user_id: str, *, actor: Actor, keep_family_id: Optional[str] = None
    ) -> int:
        return self.revoke_all_now(user_id, actor=actor, keep_family_id=keep_family_id)

    def revoke_all_now(
        self, user_id: str, *, actor: Actor, keep_family_id: Optional[str] = None
    ) -> int:
        """Blocking form of ``revoke_all`` for use inside an open transaction."""
        count = self.store.revoke_refresh_tokens_for_user(
            user_id, now=self.clock.now(), actor=actor, keep_family_id=keep_family_id
        )
        self.logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    async def revoke_family(self, family_id: str, *, actor: Actor) -> int:
        return self.store.revoke_refresh_family(family_id, now=self.clock.now(), actor=actor)

    async def revoke_by_raw_token(self, raw: str, *, actor: Actor) -> bool:
        """Revoke one token (logout). Returns False if unknown or already revoked."""
        token = self.store.get_refresh_token_by_hash(hash_token(raw))
        if not token:
            return False
        return self.store.revoke_refresh_token_if_active(
            token.id, now=self.clock.now(), actor=actor
        )

    async def active_session_count(self, user_id: str) -> int:
        return len(self.store.list_active_refresh_tokens(user_id, now=self.clock.now()))
