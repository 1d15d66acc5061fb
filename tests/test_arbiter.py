"""Tests for the submission arbiter pipeline."""
from __future__ import annotations

import asyncio

import pytest

from conftest import make_message
from main import BusyGuard, Identity, Model, Settings, Store, SubmissionArbiter, Verdict

NOW = 1_700_000_000_000


def make_arbiter(settings, cell, relay, guard=None):
    return SubmissionArbiter(
        settings, cell, guard or BusyGuard(), relay, clock=lambda: NOW
    )


@pytest.mark.asyncio
async def test_correct_submission_is_accepted(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7, previous_timestamp=0)
    arbiter = make_arbiter(settings, cell, relay)

    verdict = await arbiter.handle(make_message(8, "42 yay"))

    assert verdict is Verdict.ACCEPTED
    state = cell.read()
    assert (state.previous_value, state.previous_user, state.previous_timestamp) == (
        42,
        8,
        NOW,
    )
    relay.send_count.assert_awaited_once_with(
        Identity(8, "user8", None), 42, "yay", strikethrough=False
    )
    relay.send_break_notice.assert_not_awaited()
    relay.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_wrong_submission_breaks_sequence(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7, previous_timestamp=0)
    arbiter = make_arbiter(settings, cell, relay)

    verdict = await arbiter.handle(make_message(8, "50"))

    assert verdict is Verdict.BROKEN
    state = cell.read()
    assert state.previous_value == -1
    assert state.previous_user == 8
    assert state.previous_timestamp == NOW
    relay.send_count.assert_awaited_once_with(
        Identity(8, "user8", None), 50, "", strikethrough=True
    )
    relay.send_break_notice.assert_awaited_once_with(8, 42, 50, 41)
    relay.send_private_notice.assert_not_awaited()


@pytest.mark.asyncio
async def test_wrong_submission_with_resume_on_error(settings, make_cell, relay):
    resume = settings.model_copy(update={"resume_on_error": True})
    cell = make_cell(previous_value=41, previous_user=7, previous_timestamp=0)
    arbiter = make_arbiter(resume, cell, relay)

    verdict = await arbiter.handle(make_message(8, "50"))

    assert verdict is Verdict.BROKEN
    state = cell.read()
    assert state.previous_value == 41
    assert state.previous_user == 8
    assert state.previous_timestamp == NOW
    relay.send_break_notice.assert_not_awaited()
    relay.send_private_notice.assert_awaited_once()
    assert relay.send_private_notice.await_args.args[0] == 8


@pytest.mark.asyncio
async def test_next_expected_after_break_is_zero(settings, make_cell, relay):
    cell = make_cell(previous_value=-1, previous_user=7)
    arbiter = make_arbiter(settings, cell, relay)

    assert await arbiter.handle(make_message(8, "0")) is Verdict.ACCEPTED
    assert cell.read().previous_value == 0


@pytest.mark.asyncio
async def test_first_submission_is_always_correct(settings, make_cell, relay):
    cell = make_cell()
    arbiter = make_arbiter(settings, cell, relay)

    assert await arbiter.handle(make_message(8, "17")) is Verdict.ACCEPTED
    assert cell.read().previous_value == 17


@pytest.mark.asyncio
async def test_repeat_sender_is_rejected(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7, previous_timestamp=0)
    arbiter = make_arbiter(settings, cell, relay)

    verdict = await arbiter.handle(make_message(7, "42"))

    assert verdict is Verdict.REPEAT_SENDER
    assert cell.read() == Store(previous_value=41, previous_user=7, previous_timestamp=0)
    relay.send_notice.assert_awaited_once()
    relay.send_count.assert_not_awaited()
    relay.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_message_without_number_is_rejected(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7)
    arbiter = make_arbiter(settings, cell, relay)

    verdict = await arbiter.handle(make_message(8, "hello there"))

    assert verdict is Verdict.NO_NUMBER
    assert cell.read().previous_value == 41
    assert cell.read().previous_user == 7
    relay.send_notice.assert_awaited_once()
    relay.delete.assert_awaited_once()


@pytest.mark.parametrize(
    "kwargs",
    [{"channel_id": 1}, {"bot": True}, {"system": True}],
)
@pytest.mark.asyncio
async def test_foreign_messages_are_ignored(settings, make_cell, relay, kwargs):
    cell = make_cell(previous_value=41)
    arbiter = make_arbiter(settings, cell, relay)

    verdict = await arbiter.handle(make_message(8, "42", **kwargs))

    assert verdict is Verdict.IGNORED
    assert cell.read().previous_value == 41
    relay.delete.assert_not_awaited()
    relay.send_notice.assert_not_awaited()


@pytest.mark.asyncio
async def test_overlapping_submission_is_rejected_busy(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7)
    guard = BusyGuard()
    arbiter = make_arbiter(settings, cell, relay, guard)
    release = asyncio.Event()

    async def slow_identity(user):
        await release.wait()
        return Identity(int(user.id), "slow", None)

    relay.identity.side_effect = slow_identity

    first = asyncio.create_task(arbiter.handle(make_message(8, "42")))
    while not guard.busy:
        await asyncio.sleep(0)

    second = await arbiter.handle(make_message(9, "42"))
    assert second is Verdict.BUSY
    assert cell.read().previous_value == 41

    release.set()
    assert await first is Verdict.ACCEPTED
    assert cell.read().previous_value == 42
    assert cell.read().previous_user == 8
    assert guard.depth == 0
    assert relay.delete.await_count == 2


@pytest.mark.asyncio
async def test_guard_is_released_when_processing_fails(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7)
    guard = BusyGuard()
    arbiter = make_arbiter(settings, cell, relay, guard)
    relay.identity.side_effect = RuntimeError("gateway hiccup")

    verdict = await arbiter.handle(make_message(8, "42"))

    assert verdict is Verdict.FAILED
    assert guard.depth == 0
    assert cell.read().previous_value == 41
    relay.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_accepted_state_is_persisted(tmp_path, settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7)
    arbiter = make_arbiter(settings, cell, relay)

    await arbiter.handle(make_message(8, "42"))

    reloaded = await Model(base_path=tmp_path).load_data("store.json", Store)
    assert reloaded.previous_value == 42
    assert reloaded.previous_user == 8


@pytest.mark.asyncio
async def test_hex_submission_uses_configured_radix(make_cell, relay):
    settings = Settings(token="t", radix=16, channel=1111, guild=2222, timezone="UTC")
    cell = make_cell(previous_value=0xFE, previous_user=7)
    arbiter = make_arbiter(settings, cell, relay)

    assert await arbiter.handle(make_message(8, "ff is next")) is Verdict.ACCEPTED
    assert cell.read().previous_value == 0xFF
    relay.send_count.assert_awaited_once_with(
        Identity(8, "user8", None), 0xFF, "is next", strikethrough=False
    )


@pytest.mark.asyncio
async def test_uncached_channel_is_matched_by_id(settings, make_cell, relay):
    cell = make_cell(previous_value=41, previous_user=7)
    arbiter = make_arbiter(settings, cell, relay)
    message = make_message(8, "42")
    message.channel = None

    assert await arbiter.handle(message) is Verdict.ACCEPTED
    assert cell.read().previous_value == 42
