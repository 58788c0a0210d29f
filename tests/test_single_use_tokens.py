"""Consume-once tokens for password reset, verification and registration."""

from datetime import timedelta

import pytest

from warden.service.results import AuthErrorCode
from warden.service.single_use import SingleUseTokenEngine
from warden.storage.memory import MemoryStore
from warden.storage.models import SYSTEM_ACTOR, TokenPurpose


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def resets(store, clock):
    return SingleUseTokenEngine(store, TokenPurpose.PASSWORD_RESET, timedelta(hours=1), clock)


async def test_consume_returns_subject_once(resets):
    raw = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    first = await resets.consume(raw, actor=SYSTEM_ACTOR)
    assert first.success
    assert first.subject == "user-1"

    second = await resets.consume(raw, actor=SYSTEM_ACTOR)
    assert not second.success
    assert second.error_code == AuthErrorCode.ALREADY_USED


async def test_apply_runs_with_subject(resets):
    raw = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    applied = []
    result = await resets.consume(raw, apply=applied.append, actor=SYSTEM_ACTOR)
    assert result.success
    assert applied == ["user-1"]


async def test_failed_apply_rolls_back_and_leaves_token_usable(resets, store):
    raw = await resets.issue("user-1", actor=SYSTEM_ACTOR)

    def explode(subject):
        raise RuntimeError("downstream write failed")

    with pytest.raises(RuntimeError):
        await resets.consume(raw, apply=explode, actor=SYSTEM_ACTOR)

    peeked = await resets.peek(raw)
    assert peeked.success
    assert (await resets.consume(raw, actor=SYSTEM_ACTOR)).success


async def test_apply_writes_are_rolled_back_with_the_token(resets, store, clock):
    user = store.create_user("erin@example.com", now=clock.now(), actor=SYSTEM_ACTOR)
    raw = await resets.issue(user.id, actor=SYSTEM_ACTOR)

    def confirm_then_fail(subject):
        store.mark_email_confirmed(subject, actor=SYSTEM_ACTOR)
        raise RuntimeError("second write failed")

    with pytest.raises(RuntimeError):
        await resets.consume(raw, apply=confirm_then_fail, actor=SYSTEM_ACTOR)
    assert not store.get_user(user.id).email_confirmed


async def test_reissue_invalidates_previous_token(resets):
    old = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    new = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    assert (await resets.consume(old, actor=SYSTEM_ACTOR)).error_code == AuthErrorCode.ALREADY_USED
    assert (await resets.consume(new, actor=SYSTEM_ACTOR)).success


async def test_reissue_for_other_subject_keeps_token(resets):
    mine = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    await resets.issue("user-2", actor=SYSTEM_ACTOR)
    assert (await resets.consume(mine, actor=SYSTEM_ACTOR)).success


async def test_expired_token(resets, clock):
    raw = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    clock.advance(hours=1)
    result = await resets.consume(raw, actor=SYSTEM_ACTOR)
    assert result.error_code == AuthErrorCode.TOKEN_EXPIRED


async def test_unknown_token(resets):
    result = await resets.consume("never-issued", actor=SYSTEM_ACTOR)
    assert result.error_code == AuthErrorCode.TOKEN_INVALID


async def test_token_for_other_purpose_is_invalid(resets, store, clock):
    verifications = SingleUseTokenEngine(
        store, TokenPurpose.EMAIL_VERIFICATION, timedelta(hours=24), clock
    )
    raw = await verifications.issue("user-1", actor=SYSTEM_ACTOR)
    result = await resets.consume(raw, actor=SYSTEM_ACTOR)
    assert result.error_code == AuthErrorCode.TOKEN_INVALID
    assert (await verifications.consume(raw, actor=SYSTEM_ACTOR)).success


async def test_peek_does_not_consume(resets):
    raw = await resets.issue("user-1", actor=SYSTEM_ACTOR)
    assert (await resets.peek(raw)).success
    assert (await resets.peek(raw)).success
    assert (await resets.consume(raw, actor=SYSTEM_ACTOR)).success
