"""End-to-end flows through AuthService over the in-memory store."""

import pytest

from conftest import STRONG_PASSWORD, FakeCache, RecordingNotifier, create_user
from warden.service.auth import AuthService
from warden.service.errors import ConflictError
from warden.service.hashing import hash_token
from warden.service.results import AuthErrorCode
from warden.storage.memory import MemoryStore
from warden.storage.models import SYSTEM_ACTOR, ExternalLogin, MfaChannel

NEW_PASSWORD = "Brand-New-Password-42"
LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0"


class LockOrderStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.events = []

    def lock_user(self, user_id):
        self.events.append(("lock", self._tx_depth))
        return super().lock_user(user_id)

    def list_external_logins(self, user_id):
        self.events.append(("list_logins", self._tx_depth))
        return super().list_external_logins(user_id)


@pytest.fixture
def no_mfa(settings):
    return settings.model_copy(update={"mfa_enabled": False})


@pytest.fixture
def plain_auth(store, no_mfa, clock, notifier):
    return AuthService(store, None, no_mfa, clock=clock, notifier=notifier)


async def _enroll_totp(auth, user):
    enrollment = await auth.enroll_totp(user.id)
    codes = await auth.confirm_totp(user.id, auth.totp.code_at(enrollment.secret, auth.clock.now()))
    auth.clock.advance(seconds=auth.settings.totp_step_seconds)
    return enrollment.secret, codes


class TestLogin:
    async def test_login_by_email_or_username(self, plain_auth):
        user = create_user(plain_auth)
        by_email = await plain_auth.login("ALICE@example.com", STRONG_PASSWORD, client_ip="10.0.0.1")
        by_name = await plain_auth.login("alice", STRONG_PASSWORD)
        assert by_email.success and by_name.success
        assert by_email.user_id == user.id
        assert by_email.access_token and by_email.refresh_token
        assert plain_auth.store.get_user(user.id).last_login_ip == "10.0.0.1"

    async def test_unknown_user_and_wrong_password_look_the_same(self, plain_auth):
        create_user(plain_auth)
        unknown = await plain_auth.login("nobody@example.com", STRONG_PASSWORD)
        wrong = await plain_auth.login("alice", "Wrong-Password-000")
        assert unknown.error_code == wrong.error_code == AuthErrorCode.INVALID_CREDENTIALS
        assert unknown.errors == wrong.errors == []

    async def test_inactive_user_cannot_log_in(self, plain_auth):
        user = create_user(plain_auth)
        plain_auth.store.users[user.id].is_active = False
        result = await plain_auth.login("alice", STRONG_PASSWORD)
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS

    async def test_lockout_after_repeated_failures(self, plain_auth, no_mfa, clock):
        create_user(plain_auth)
        for _ in range(no_mfa.lockout_max_failed_attempts):
            result = await plain_auth.login("alice", "Wrong-Password-000")
            assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS

        locked = await plain_auth.login("alice", STRONG_PASSWORD)
        assert locked.error_code == AuthErrorCode.ACCOUNT_LOCKED

        clock.advance(minutes=no_mfa.lockout_duration_minutes, seconds=1)
        assert (await plain_auth.login("alice", STRONG_PASSWORD)).success

    async def test_success_resets_failure_count(self, plain_auth, no_mfa):
        user = create_user(plain_auth)
        for _ in range(no_mfa.lockout_max_failed_attempts - 1):
            await plain_auth.login("alice", "Wrong-Password-000")
        assert (await plain_auth.login("alice", STRONG_PASSWORD)).success
        assert plain_auth.store.get_user(user.id).failed_login_count == 0

    async def test_rate_limited_login(self, store, no_mfa, clock, notifier):
        auth = AuthService(store, FakeCache(allow=False), no_mfa, clock=clock, notifier=notifier)
        create_user(auth)
        result = await auth.login("alice", STRONG_PASSWORD, client_ip="10.0.0.1")
        assert result.error_code == AuthErrorCode.RATE_LIMITED

    async def test_access_token_authenticates(self, plain_auth):
        user = create_user(plain_auth)
        result = await plain_auth.login("alice", STRONG_PASSWORD)
        context = await plain_auth.authenticate(result.access_token)
        assert context.user_id == user.id
        assert context.roles == ["user"]
        assert await plain_auth.authenticate("garbage") is None
        head, payload, _ = result.access_token.split(".")
        assert await plain_auth.authenticate(f"{head}.{payload}.sigé") is None


class TestEmailMfa:
    async def test_policy_can_require_mfa_for_every_user(self, store, settings, clock, notifier):
        policy = settings.model_copy(update={"mfa_required_for_all_users": True})
        auth = AuthService(store, None, policy, clock=clock, notifier=notifier)
        user = create_user(auth)
        assert not user.mfa_enabled
        pending = await auth.login("alice", STRONG_PASSWORD)
        assert pending.requires_mfa
        assert pending.mfa_channel == MfaChannel.EMAIL
        await auth.wait_for_notifications()
        assert notifier.last("mfa_code")

    async def test_user_without_mfa_skips_challenge_by_default(self, auth):
        create_user(auth)
        result = await auth.login("alice", STRONG_PASSWORD)
        assert result.success and not result.requires_mfa

    async def test_login_requires_emailed_code(self, auth, notifier):
        user = create_user(auth)
        auth.store.set_user_mfa_enabled(user.id, True, actor=SYSTEM_ACTOR)
        pending = await auth.login("alice", STRONG_PASSWORD, client_ip="10.0.0.1")
        assert pending.requires_mfa
        assert pending.mfa_channel == MfaChannel.EMAIL
        assert pending.access_token is None

        await auth.wait_for_notifications()
        code = notifier.last("mfa_code")
        result = await auth.verify_mfa(pending.mfa_challenge_token, code)
        assert result.success
        assert result.user_id == user.id

    async def test_wrong_code_then_exhaustion(self, auth, notifier, settings):
        user = create_user(auth)
        auth.store.set_user_mfa_enabled(user.id, True, actor=SYSTEM_ACTOR)
        pending = await auth.login("alice", STRONG_PASSWORD)
        await auth.wait_for_notifications()
        code = notifier.last("mfa_code")
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(settings.mfa_max_attempts):
            result = await auth.verify_mfa(pending.mfa_challenge_token, wrong)
            assert result.error_code == AuthErrorCode.INVALID_CODE
        result = await auth.verify_mfa(pending.mfa_challenge_token, code)
        assert result.error_code == AuthErrorCode.ATTEMPTS_EXHAUSTED

    async def test_resend_delivers_new_code_only_by_email(self, auth, notifier, settings, clock):
        user = create_user(auth)
        auth.store.set_user_mfa_enabled(user.id, True, actor=SYSTEM_ACTOR)
        pending = await auth.login("alice", STRONG_PASSWORD)
        cooldown = await auth.resend_mfa_code(pending.mfa_challenge_token)
        assert cooldown.error_code == AuthErrorCode.RESEND_COOLDOWN

        clock.advance(seconds=settings.mfa_resend_cooldown_seconds)
        resent = await auth.resend_mfa_code(pending.mfa_challenge_token)
        assert resent.success
        assert resent.code is None
        await auth.wait_for_notifications()
        assert len([s for s in notifier.sent if s[0] == "mfa_code"]) == 2
        assert (await auth.verify_mfa(pending.mfa_challenge_token, notifier.last("mfa_code"))).success

    async def test_notifier_failure_does_not_break_login(self, store, settings, clock):
        auth = AuthService(store, None, settings, clock=clock, notifier=RecordingNotifier(fail=True))
        user = create_user(auth)
        auth.store.set_user_mfa_enabled(user.id, True, actor=SYSTEM_ACTOR)
        pending = await auth.login("alice", STRONG_PASSWORD)
        await auth.wait_for_notifications()
        assert pending.requires_mfa

    async def test_trusted_device_skips_mfa(self, auth, notifier):
        user = create_user(auth)
        auth.store.set_user_mfa_enabled(user.id, True, actor=SYSTEM_ACTOR)
        pending = await auth.login("alice", STRONG_PASSWORD, client_ip="10.0.0.1", user_agent=LINUX_UA)
        await auth.wait_for_notifications()
        verified = await auth.verify_mfa(
            pending.mfa_challenge_token,
            notifier.last("mfa_code"),
            client_ip="10.0.0.1",
            trust_device=True,
            user_agent=LINUX_UA,
        )
        assert verified.trusted_device_token

        again = await auth.login(
            "alice",
            STRONG_PASSWORD,
            client_ip="10.0.0.2",
            user_agent=LINUX_UA,
            trusted_device_token=verified.trusted_device_token,
        )
        assert again.success
        assert not again.requires_mfa

        elsewhere = await auth.login(
            "alice",
            STRONG_PASSWORD,
            client_ip="172.16.0.1",
            user_agent=LINUX_UA,
            trusted_device_token=verified.trusted_device_token,
        )
        assert elsewhere.requires_mfa


class TestTotpMfa:
    async def test_enrolled_user_gets_totp_challenge(self, auth, notifier):
        user = create_user(auth)
        secret, codes = await _enroll_totp(auth, user)
        assert len(codes) == auth.settings.backup_code_count

        pending = await auth.login("alice", STRONG_PASSWORD)
        assert pending.mfa_channel == MfaChannel.TOTP
        await auth.wait_for_notifications()
        assert notifier.last("mfa_code") is None

        code = auth.totp.code_at(secret, auth.clock.now())
        assert (await auth.verify_totp(pending.mfa_challenge_token, code)).success

    async def test_backup_code_completes_challenge_once(self, auth):
        user = create_user(auth)
        _, codes = await _enroll_totp(auth, user)

        first = await auth.login("alice", STRONG_PASSWORD)
        assert (await auth.verify_backup_code(first.mfa_challenge_token, codes[0])).success

        second = await auth.login("alice", STRONG_PASSWORD)
        reused = await auth.verify_backup_code(second.mfa_challenge_token, codes[0])
        assert reused.error_code == AuthErrorCode.INVALID_CODE

    async def test_disable_totp_requires_valid_code(self, auth):
        user = create_user(auth)
        secret, _ = await _enroll_totp(auth, user)
        current = auth.totp.code_at(secret, auth.clock.now())
        wrong = str((int(current) + 500000) % 1000000).zfill(6)
        refused = await auth.disable_totp(user.id, wrong)
        assert refused.error_code == AuthErrorCode.INVALID_CODE

        auth.clock.advance(seconds=auth.settings.totp_step_seconds)
        result = await auth.disable_totp(user.id, auth.totp.code_at(secret, auth.clock.now()))
        assert result.success
        assert not auth.totp.is_enrolled(user.id)
        assert auth.backup_codes.remaining(user.id) == 0

    async def test_disable_totp_refused_without_other_method(self, auth, clock):
        user = auth.store.create_user("sso@example.com", now=clock.now(), actor=SYSTEM_ACTOR)
        secret, _ = await _enroll_totp(auth, user)
        result = await auth.disable_totp(user.id, auth.totp.code_at(secret, clock.now()))
        assert result.error_code == AuthErrorCode.LAST_AUTH_METHOD
        assert auth.totp.is_enrolled(user.id)


class TestSessions:
    async def test_refresh_rotates(self, plain_auth):
        create_user(plain_auth)
        login = await plain_auth.login("alice", STRONG_PASSWORD)
        refreshed = await plain_auth.refresh(login.refresh_token)
        assert refreshed.success
        assert refreshed.refresh_token != login.refresh_token

        replay = await plain_auth.refresh(login.refresh_token)
        assert replay.error_code == AuthErrorCode.INVALID_CREDENTIALS
        # Replay burned the whole family
        assert (await plain_auth.refresh(refreshed.refresh_token)).error_code == (
            AuthErrorCode.INVALID_CREDENTIALS
        )

    async def test_refresh_for_deactivated_user_fails(self, plain_auth):
        user = create_user(plain_auth)
        login = await plain_auth.login("alice", STRONG_PASSWORD)
        plain_auth.store.users[user.id].is_active = False
        result = await plain_auth.refresh(login.refresh_token)
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS

    async def test_logout_revokes_and_denylists(self, store, no_mfa, clock, notifier):
        cache = FakeCache()
        auth = AuthService(store, cache, no_mfa, clock=clock, notifier=notifier)
        create_user(auth)
        login = await auth.login("alice", STRONG_PASSWORD)
        assert await auth.logout(login.refresh_token, login.access_token)
        assert not await auth.logout(login.refresh_token)

        assert await auth.authenticate(login.access_token) is None
        ttl = next(iter(cache.denylisted.values()))
        assert 0 < ttl <= no_mfa.access_token_ttl_minutes * 60
        assert (await auth.refresh(login.refresh_token)).error_code == AuthErrorCode.INVALID_CREDENTIALS

    async def test_logout_everywhere(self, plain_auth):
        user = create_user(plain_auth)
        first = await plain_auth.login("alice", STRONG_PASSWORD)
        second = await plain_auth.login("alice", STRONG_PASSWORD)
        assert await plain_auth.logout_everywhere(user.id) == 2
        assert not (await plain_auth.refresh(first.refresh_token)).success
        assert not (await plain_auth.refresh(second.refresh_token)).success


class TestPasswordReset:
    async def test_reset_replaces_password_and_revokes_sessions(self, plain_auth, notifier):
        create_user(plain_auth)
        old_session = await plain_auth.login("alice", STRONG_PASSWORD)

        assert await plain_auth.request_password_reset("alice@example.com") is None
        await plain_auth.wait_for_notifications()
        token = notifier.last("password_reset")
        stored = plain_auth.store.get_single_use_token_by_hash(hash_token(token))
        assert stored.token_hash != token

        result = await plain_auth.complete_password_reset(token, NEW_PASSWORD)
        assert result.success
        assert result.refresh_token
        assert not (await plain_auth.refresh(old_session.refresh_token)).success
        assert (await plain_auth.login("alice", NEW_PASSWORD)).success
        assert not (await plain_auth.login("alice", STRONG_PASSWORD)).success

    async def test_reset_token_works_once(self, plain_auth, notifier):
        create_user(plain_auth)
        await plain_auth.request_password_reset("alice@example.com")
        await plain_auth.wait_for_notifications()
        token = notifier.last("password_reset")
        assert (await plain_auth.complete_password_reset(token, NEW_PASSWORD)).success

        again = await plain_auth.complete_password_reset(token, "Yet-Another-Password-1")
        assert again.error_code == AuthErrorCode.TOKEN_INVALID
        assert (await plain_auth.login("alice", NEW_PASSWORD)).success

    async def test_unknown_email_is_silent(self, plain_auth, notifier):
        assert await plain_auth.request_password_reset("ghost@example.com") is None
        await plain_auth.wait_for_notifications()
        assert notifier.sent == []

    async def test_weak_password_keeps_token_usable(self, plain_auth, notifier):
        create_user(plain_auth)
        await plain_auth.request_password_reset("alice@example.com")
        await plain_auth.wait_for_notifications()
        token = notifier.last("password_reset")

        weak = await plain_auth.complete_password_reset(token, "weak")
        assert weak.error_code == AuthErrorCode.WEAK_PASSWORD
        assert weak.errors
        assert (await plain_auth.complete_password_reset(token, NEW_PASSWORD)).success

    async def test_expired_token_looks_invalid(self, plain_auth, notifier, clock, no_mfa):
        create_user(plain_auth)
        await plain_auth.request_password_reset("alice@example.com")
        await plain_auth.wait_for_notifications()
        clock.advance(hours=no_mfa.password_reset_ttl_hours, seconds=1)
        result = await plain_auth.complete_password_reset(notifier.last("password_reset"), NEW_PASSWORD)
        assert result.error_code == AuthErrorCode.TOKEN_INVALID

    async def test_second_request_invalidates_first_link(self, plain_auth, notifier):
        create_user(plain_auth)
        await plain_auth.request_password_reset("alice@example.com")
        await plain_auth.wait_for_notifications()
        first = notifier.last("password_reset")
        await plain_auth.request_password_reset("alice@example.com")
        await plain_auth.wait_for_notifications()
        assert not (await plain_auth.complete_password_reset(first, NEW_PASSWORD)).success
        assert (
            await plain_auth.complete_password_reset(notifier.last("password_reset"), NEW_PASSWORD)
        ).success


class TestRegistration:
    async def test_registration_flow(self, plain_auth, notifier):
        assert await plain_auth.initiate_registration("New.User@Example.com") is None
        await plain_auth.wait_for_notifications()
        token = notifier.last("registration")
        placeholder = plain_auth.store.get_user_by_email("new.user@example.com")
        assert not placeholder.is_active
        assert placeholder.pending_registration

        result = await plain_auth.complete_registration(token, "newuser", STRONG_PASSWORD)
        assert result.success
        user = plain_auth.store.get_user(result.user_id)
        assert user.is_active and user.email_confirmed
        assert not user.pending_registration
        assert user.username == "newuser"
        assert user.roles == ["user"]
        assert (await plain_auth.login("newuser", STRONG_PASSWORD)).success

    async def test_placeholder_cannot_log_in(self, plain_auth):
        await plain_auth.initiate_registration("pending@example.com")
        result = await plain_auth.login("pending@example.com", STRONG_PASSWORD)
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS

    async def test_existing_account_gets_no_link(self, plain_auth, notifier):
        create_user(plain_auth)
        await plain_auth.initiate_registration("alice@example.com")
        await plain_auth.wait_for_notifications()
        assert notifier.last("registration") is None

    async def test_deactivated_account_cannot_reregister(self, plain_auth, notifier):
        user = create_user(plain_auth)
        plain_auth.store.users[user.id].is_active = False
        assert await plain_auth.initiate_registration("alice@example.com") is None
        await plain_auth.wait_for_notifications()
        assert notifier.last("registration") is None

        # Even a registration token minted for the account cannot revive it
        token = await plain_auth.registration_tokens.issue(user.id, actor=SYSTEM_ACTOR)
        result = await plain_auth.complete_registration(token, "alice2", NEW_PASSWORD)
        assert result.error_code == AuthErrorCode.TOKEN_INVALID
        stored = plain_auth.store.get_user(user.id)
        assert not stored.is_active
        assert stored.username == "alice"
        assert not (await plain_auth.login("alice", NEW_PASSWORD)).success

    async def test_taken_username_is_a_conflict_and_token_survives(self, plain_auth, notifier):
        create_user(plain_auth)
        await plain_auth.initiate_registration("second@example.com")
        await plain_auth.wait_for_notifications()
        token = notifier.last("registration")

        with pytest.raises(ConflictError):
            await plain_auth.complete_registration(token, "ALICE", STRONG_PASSWORD)
        user = plain_auth.store.get_user_by_email("second@example.com")
        assert not user.is_active
        assert not plain_auth.credentials.has_password(user.id)
        assert (await plain_auth.complete_registration(token, "second", STRONG_PASSWORD)).success


class TestEmailVerification:
    async def test_confirm_email(self, plain_auth, notifier):
        user = create_user(plain_auth)
        assert await plain_auth.request_email_verification(user.id)
        await plain_auth.wait_for_notifications()
        token = notifier.last("email_verification")
        assert (await plain_auth.confirm_email(token)).success
        assert plain_auth.store.get_user(user.id).email_confirmed
        assert (await plain_auth.confirm_email(token)).error_code == AuthErrorCode.TOKEN_INVALID
        assert not await plain_auth.request_email_verification(user.id)


class TestAccountSecurity:
    async def test_change_password_revokes_other_sessions(self, plain_auth):
        user = create_user(plain_auth)
        old = await plain_auth.login("alice", STRONG_PASSWORD)
        plain_auth.store.set_requires_password_change(user.id, True, actor=SYSTEM_ACTOR)

        wrong = await plain_auth.change_password(user.id, "Not-The-Password-1", NEW_PASSWORD)
        assert wrong.error_code == AuthErrorCode.INVALID_CREDENTIALS

        result = await plain_auth.change_password(user.id, STRONG_PASSWORD, NEW_PASSWORD)
        assert result.success
        assert not result.requires_password_change
        assert not plain_auth.store.get_user(user.id).requires_password_change
        assert not (await plain_auth.refresh(old.refresh_token)).success
        assert (await plain_auth.refresh(result.refresh_token)).success

    async def test_unlink_last_method_is_refused(self, plain_auth, clock):
        user = plain_auth.store.create_user("oauth@example.com", now=clock.now(), actor=SYSTEM_ACTOR)
        await plain_auth.link_external_login(user.id, "github", "gh-1")
        refused = await plain_auth.unlink_external_login(user.id, "github")
        assert refused.error_code == AuthErrorCode.LAST_AUTH_METHOD

        await plain_auth.link_external_login(user.id, "google", "g-1")
        assert (await plain_auth.unlink_external_login(user.id, "github")).success
        assert [login.provider for login in plain_auth.store.list_external_logins(user.id)] == ["google"]

    async def test_unlink_with_password_is_allowed(self, plain_auth):
        user = create_user(plain_auth)
        plain_auth.store.add_external_login(
            ExternalLogin(user_id=user.id, provider="github", provider_key="1", created_at=plain_auth.clock.now())
        )
        assert (await plain_auth.unlink_external_login(user.id, "github")).success
        assert (await plain_auth.unlink_external_login(user.id, "github")).success

    async def test_external_key_cannot_move_between_accounts(self, plain_auth, clock):
        owner = create_user(plain_auth)
        other = create_user(plain_auth, email="bob@example.com", username="bob")
        await plain_auth.link_external_login(owner.id, "github", "gh-7")
        await plain_auth.link_external_login(owner.id, "github", "gh-7")

        with pytest.raises(ConflictError):
            await plain_auth.link_external_login(other.id, "github", "gh-7")
        assert plain_auth.store.list_external_logins(other.id) == []
        assert len(plain_auth.store.list_external_logins(owner.id)) == 1

    async def test_unlink_checks_methods_under_user_lock(self, no_mfa, clock, notifier):
        store = LockOrderStore()
        auth = AuthService(store, None, no_mfa, clock=clock, notifier=notifier)
        user = store.create_user("sso@example.com", now=clock.now(), actor=SYSTEM_ACTOR)
        await auth.link_external_login(user.id, "github", "gh-1")
        await auth.link_external_login(user.id, "google", "g-1")
        store.events.clear()

        assert (await auth.unlink_external_login(user.id, "github")).success
        assert store.events[:2] == [("lock", 1), ("list_logins", 1)]
