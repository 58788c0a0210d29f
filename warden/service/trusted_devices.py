from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Protocol

from warden.clock import Clock
from warden.config import Settings
from warden.logging import get_logger
from warden.service.hashing import constant_time_equals, generate_secure_token, hash_token
from warden.storage.models import TrustedDevice, new_id
from warden.storage.repositories import TrustedDeviceRepository, Transactional

_DEVICE_NAMES = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("android", "Android Device"),
    ("windows", "Windows PC"),
    ("mac os", "Mac"),
    ("linux", "Linux PC"),
)


class TrustedDeviceBackend(TrustedDeviceRepository, Transactional, Protocol):
    pass


def ip_prefix(ip_address: Optional[str]) -> str:
    """Network part of an address, so a DHCP renewal does not untrust a device."""
    if not ip_address:
        return ""
    parts = ip_address.split(".")
    if len(parts) == 4:
        return ".".join(parts[:3])
    if ":" in ip_address:
        return ip_address[: ip_address.rindex(":")]
    return ip_address


def device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    return hash_token(f"{user_agent or ''}|{ip_prefix(ip_address)}")


def device_name(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    lowered = user_agent.lower()
    for needle, name in _DEVICE_NAMES:
        if needle in lowered:
            return name
    return "Unknown Device"


class TrustedDeviceService:
    """Remembered browsers that may skip the second factor."""

    def __init__(self, store: TrustedDeviceBackend, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    async def trust(
        self, user_id: str, user_agent: Optional[str], client_ip: Optional[str]
    ) -> str:
        now = self.clock.now()
        raw = generate_secure_token()
        device = TrustedDevice(
            id=new_id(),
            user_id=user_id,
            token_hash=hash_token(raw),
            fingerprint=device_fingerprint(user_agent, client_ip),
            device_name=device_name(user_agent),
            created_at=now,
            expires_at=now + timedelta(days=self.settings.trusted_device_ttl_days),
        )
        with self.store.transaction():
            existing = sorted(
                self.store.list_trusted_devices(user_id),
                key=lambda d: d.last_used_at or d.created_at,
            )
            overflow = len(existing) - self.settings.max_trusted_devices_per_user + 1
            for stale in existing[: max(0, overflow)]:
                self.store.delete_trusted_device(stale.id)
                self.logger.info("trusted_device_evicted", user_id=user_id, device_id=stale.id)
            self.store.add_trusted_device(device)
        self.logger.info("trusted_device_added", user_id=user_id, device_name=device.device_name)
        return raw

    async def validate(
        self,
        user_id: str,
        raw: Optional[str],
        user_agent: Optional[str],
        client_ip: Optional[str],
    ) -> bool:
        if not raw:
            return False
        now = self.clock.now()
        device = self.store.get_trusted_device_by_hash(hash_token(raw))
        if not device or device.user_id != user_id or device.expires_at <= now:
            return False
        if not constant_time_equals(device.fingerprint, device_fingerprint(user_agent, client_ip)):
            self.logger.info("trusted_device_fingerprint_mismatch", user_id=user_id)
            return False
        self.store.touch_trusted_device(device.id, now=now)
        return True

    async def list_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id)

    async def revoke(self, user_id: str, device_id: str) -> bool:
        owned = {d.id for d in self.store.list_trusted_devices(user_id)}
        if device_id not in owned:
            return False
        return self.store.delete_trusted_device(device_id)

    async def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_trusted_devices_for_user(user_id)
        if count:
            self.logger.info("trusted_devices_revoked", user_id=user_id, count=count)
        return count
