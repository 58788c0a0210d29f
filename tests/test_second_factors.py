"""TOTP enrollment, backup codes and trusted devices."""

from datetime import timedelta

import pytest

from warden.service.backup_codes import BackupCodeService, normalize_backup_code
from warden.service.passwords import PasswordService
from warden.service.totp import TotpService, generate_totp
from warden.service.trusted_devices import (
    TrustedDeviceService,
    device_fingerprint,
    device_name,
    ip_prefix,
)
from warden.storage.models import SYSTEM_ACTOR

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"
LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0"


@pytest.fixture
def user_id(store, clock):
    return store.create_user("frank@example.com", now=clock.now(), actor=SYSTEM_ACTOR).id


class TestTotp:
    def test_rfc6238_reference_vector(self):
        # RFC 6238 appendix B, SHA1 seed "12345678901234567890" at T=59s
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59 // 30, digits=8) == "94287082"

    async def test_enrollment_requires_confirmation(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")
        assert f"secret={enrollment.secret}" in enrollment.otpauth_uri
        assert not totp.is_enrolled(user_id)

        assert await totp.confirm_enrollment(user_id, totp.code_at(enrollment.secret, clock.now()))
        assert totp.is_enrolled(user_id)

    async def test_secret_is_encrypted_at_rest(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        assert store.get_totp_secret(user_id).secret != enrollment.secret

    async def test_wrong_code_does_not_confirm(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        good = totp.code_at(enrollment.secret, clock.now())
        bad = "000000" if good != "000000" else "111111"
        assert not await totp.confirm_enrollment(user_id, bad)
        assert not totp.is_enrolled(user_id)

    async def test_code_cannot_be_replayed(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        await totp.confirm_enrollment(user_id, totp.code_at(enrollment.secret, clock.now()))

        clock.advance(seconds=settings.totp_step_seconds)
        code = totp.code_at(enrollment.secret, clock.now())
        assert totp.verify(user_id, code)
        assert not totp.verify(user_id, code)

    async def test_adjacent_step_is_accepted(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        await totp.confirm_enrollment(user_id, totp.code_at(enrollment.secret, clock.now()))

        clock.advance(seconds=settings.totp_step_seconds * 3)
        late = clock.now() + timedelta(seconds=settings.totp_step_seconds)
        assert totp.verify(user_id, totp.code_at(enrollment.secret, late))

    async def test_disable_removes_secret(self, store, settings, clock, user_id):
        totp = TotpService(store, settings, clock)
        enrollment = await totp.begin_enrollment(user_id, "frank@example.com")
        await totp.confirm_enrollment(user_id, totp.code_at(enrollment.secret, clock.now()))
        assert await totp.disable(user_id)
        assert not totp.is_enrolled(user_id)


class TestBackupCodes:
    async def test_each_code_works_once(self, store, settings, clock, user_id):
        codes_service = BackupCodeService(store, PasswordService(settings), settings, clock)
        codes = await codes_service.generate(user_id)
        assert len(codes) == settings.backup_code_count
        assert len(set(codes)) == len(codes)

        assert codes_service.consume(user_id, codes[0])
        assert not codes_service.consume(user_id, codes[0])
        assert codes_service.remaining(user_id) == settings.backup_code_count - 1

    async def test_codes_are_hashed_and_normalized(self, store, settings, clock, user_id):
        codes_service = BackupCodeService(store, PasswordService(settings), settings, clock)
        codes = await codes_service.generate(user_id)
        stored = store.list_unused_backup_codes(user_id)
        assert all(record.code_hash not in codes for record in stored)

        typed = f" {codes[1][:4].lower()}-{codes[1][4:].lower()} "
        assert normalize_backup_code(typed) == codes[1]
        assert codes_service.consume(user_id, typed)

    async def test_regenerating_invalidates_old_codes(self, store, settings, clock, user_id):
        codes_service = BackupCodeService(store, PasswordService(settings), settings, clock)
        old = await codes_service.generate(user_id)
        new = await codes_service.generate(user_id)
        assert not codes_service.consume(user_id, old[0])
        assert codes_service.consume(user_id, new[0])

    async def test_empty_code_is_rejected(self, store, settings, clock, user_id):
        codes_service = BackupCodeService(store, PasswordService(settings), settings, clock)
        await codes_service.generate(user_id)
        assert not codes_service.consume(user_id, " - ")


class TestTrustedDevices:
    def test_device_names(self):
        assert device_name(IPHONE_UA) == "iPhone"
        assert device_name(LINUX_UA) == "Linux PC"
        assert device_name("curl/8.0") == "Unknown Device"
        assert device_name(None) is None

    def test_fingerprint_tolerates_last_octet_change(self):
        assert ip_prefix("192.168.1.20") == "192.168.1"
        assert device_fingerprint(LINUX_UA, "192.168.1.20") == device_fingerprint(
            LINUX_UA, "192.168.1.99"
        )
        assert device_fingerprint(LINUX_UA, "192.168.1.20") != device_fingerprint(
            IPHONE_UA, "192.168.1.20"
        )

    async def test_trust_and_validate(self, store, settings, clock, user_id):
        devices = TrustedDeviceService(store, settings, clock)
        raw = await devices.trust(user_id, LINUX_UA, "10.0.0.5")
        assert await devices.validate(user_id, raw, LINUX_UA, "10.0.0.7")
        assert not await devices.validate(user_id, raw, IPHONE_UA, "10.0.0.5")
        assert not await devices.validate("someone-else", raw, LINUX_UA, "10.0.0.5")

    async def test_expired_device_is_rejected(self, store, settings, clock, user_id):
        devices = TrustedDeviceService(store, settings, clock)
        raw = await devices.trust(user_id, LINUX_UA, "10.0.0.5")
        clock.advance(days=settings.trusted_device_ttl_days, seconds=1)
        assert not await devices.validate(user_id, raw, LINUX_UA, "10.0.0.5")

    async def test_oldest_device_is_evicted_at_limit(self, store, settings, clock, user_id):
        devices = TrustedDeviceService(store, settings, clock)
        raws = []
        for _ in range(settings.max_trusted_devices_per_user):
            raws.append(await devices.trust(user_id, LINUX_UA, "10.0.0.5"))
            clock.advance(minutes=1)
        await devices.trust(user_id, LINUX_UA, "10.0.0.5")

        assert len(await devices.list_devices(user_id)) == settings.max_trusted_devices_per_user
        assert not await devices.validate(user_id, raws[0], LINUX_UA, "10.0.0.5")
        assert await devices.validate(user_id, raws[1], LINUX_UA, "10.0.0.5")

    async def test_revoke_only_own_device(self, store, settings, clock, user_id):
        devices = TrustedDeviceService(store, settings, clock)
        await devices.trust(user_id, LINUX_UA, "10.0.0.5")
        device = (await devices.list_devices(user_id))[0]
        assert not await devices.revoke("someone-else", device.id)
        assert await devices.revoke(user_id, device.id)
        assert await devices.list_devices(user_id) == []
