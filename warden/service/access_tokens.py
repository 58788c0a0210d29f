from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)


@dataclass
class IssuedAccessToken:
    token: str
    jti: str
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenIssuer:
    """Short-lived HS256 JWTs. Claims carry ids and roles only, never PII."""

    def __init__(self, settings: Settings, clock: Clock) -> None:
        self.settings = settings
        self.clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def issue(self, user_id: str, roles: Sequence[str]) -> IssuedAccessToken:
        now = self.clock.now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "roles": list(roles),
            "token_type": "access",
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return IssuedAccessToken(
            token=f"{signing_input}.{self._sign(signing_input)}",
            jti=jti,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "alg": "none" cannot slip through
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.clock.now().timestamp() - self.settings.clock_skew_seconds:
            return None
        return payload
