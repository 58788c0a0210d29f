"""Breached-password lookup against the HIBP k-anonymity range API.

Only the first five hex characters of the password's SHA-1 leave the
process; the suffix match happens locally. Network failures fail open so a
third-party outage never blocks registration or password changes.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

import httpx

from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BreachCheckResult:
    is_breached: bool
    count: int = 0
    checked: bool = True


class BreachedPasswordChecker:
    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self.settings.breached_password_enabled

    async def check(self, password: str) -> BreachCheckResult:
        if not self.enabled or (self.settings.test_mode and self._transport is None):
            return BreachCheckResult(is_breached=False, checked=False)

        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        timeout = httpx.Timeout(self.settings.breached_password_timeout_ms / 1000.0)
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.settings.breached_password_api_url}{prefix}",
                    headers={"Add-Padding": "true", "User-Agent": "warden-identity"},
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("breach_check_timeout", error=str(exc))
            return BreachCheckResult(is_breached=False, checked=False)
        except httpx.HTTPError as exc:
            logger.warning("breach_check_failed", error=str(exc))
            return BreachCheckResult(is_breached=False, checked=False)

        count = 0
        for line in response.text.splitlines():
            candidate, _, raw_count = line.strip().partition(":")
            if candidate.upper() == suffix:
                try:
                    count = int(raw_count)
                except ValueError:
                    count = 0
                break
        breached = count >= self.settings.breached_password_min_count
        if breached:
            logger.info("breached_password_detected", occurrences=count)
        return BreachCheckResult(is_breached=breached, count=count)
