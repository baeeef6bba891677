"""Tests for DealBoardSync: activity and notification feeds, notes saves."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.dealflow.client.guard import FieldState
from src.dealflow.client.session import DealBoardSync
from src.dealflow.sync.messages import BroadcastMessage


class IdleListener:
    is_live = False

    def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


def _session(**kwargs) -> DealBoardSync:
    api = MagicMock()
    api.list_deals = AsyncMock(return_value=[])
    api.list_activities = AsyncMock(return_value=[{"id": 1, "text": "Deal created"}])
    api.list_notifications = AsyncMock(return_value=[])
    return DealBoardSync(api, "ws://test/ws", debounce=0, listener=IdleListener(), **kwargs)


def _frame(msg_type: str, **data) -> BroadcastMessage:
    return BroadcastMessage.model_validate({"type": msg_type, "data": data})


# ── Activity feed ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_open_deal_loads_activities():
    session = _session()

    await session.open_deal(7)

    session.api.list_activities.assert_awaited_once_with(7)
    assert session.activities == [{"id": 1, "text": "Deal created"}]


@pytest.mark.asyncio
async def test_activity_poll_disabled_without_open_deal():
    session = _session()

    assert await session.activity_poll.tick_once() is False
    session.api.list_activities.assert_not_awaited()


@pytest.mark.asyncio
async def test_close_deal_clears_feed():
    session = _session()
    await session.open_deal(7)

    session.close_deal()

    assert session.open_deal_id is None
    assert session.activities == []


@pytest.mark.asyncio
async def test_recorded_activity_on_open_deal_refetches():
    session = _session()
    await session.open_deal(7)
    session.api.list_activities.reset_mock()

    await session.handle_broadcast(_frame("deal:updated", dealId=7, activityRecorded=True))
    await session.handle_broadcast(_frame("activities:updated", dealId=7))

    assert session.api.list_activities.await_count == 2


@pytest.mark.asyncio
async def test_other_deal_changes_do_not_refetch_activities():
    session = _session()
    await session.open_deal(7)
    session.api.list_activities.reset_mock()

    await session.handle_broadcast(_frame("deal:updated", dealId=8, activityRecorded=True))
    await session.handle_broadcast(_frame("notes:updated", dealId=7, activityRecorded=False))

    session.api.list_activities.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_activity_response_dropped_after_switching_deals():
    session = _session()

    async def slow_fetch(deal_id):
        session.open_deal_id = 9
        return [{"id": 1}]

    session.api.list_activities = AsyncMock(side_effect=slow_fetch)
    session.open_deal_id = 7

    await session.activity_poll.tick_once()

    assert session.activities == []


# ── Notification feed ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_notification_frames_are_deduplicated():
    seen = []
    session = _session(user_id=1, on_notification=seen.append)

    await session.handle_broadcast(_frame("notification", id=3, message="Deal moved"))
    await session.handle_broadcast(_frame("notification", id=3, message="Deal moved"))

    assert list(session.notifications) == [3]
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_notification_poll_requires_user():
    session = _session()

    assert await session.notification_poll.tick_once() is False
    session.api.list_notifications.assert_not_awaited()


# ── Saving notes ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_keystrokes_during_in_flight_save_are_kept():
    session = _session()
    session.reconciler.apply("deal", {"id": 7, "notes": "", "updatedAt": "2024-01-01T00:00:01Z"})
    release = asyncio.Event()

    async def gated_update(deal_id, fields):
        await release.wait()
        return {"id": deal_id, "notes": fields["notes"], "updatedAt": "2024-01-01T00:00:02Z"}

    session.api.update_deal = AsyncMock(side_effect=gated_update)

    session.type_notes(7, "abc")
    save = asyncio.create_task(session.save_notes(7))
    await asyncio.sleep(0)
    session.type_notes(7, "abcd")
    assert session.deal(7)["notes"] == "abcd"

    release.set()
    await save

    assert session.api.update_deal.await_args.args == (7, {"notes": "abc"})
    assert session.deal(7)["notes"] == "abcd"
    assert session.reconciler.guard("deal", 7, "notes").last_known_server_value == "abc"
    assert session.notes_state(7) != FieldState.IDLE


# ── Board poll ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_board_refresh_counts_as_poll_failure():
    session = _session()
    session.api.list_deals = AsyncMock(side_effect=ConnectionError("down"))

    assert await session.board_poll.tick_once() is False

    assert session.board_poll.failures == 1
    assert session.sink.failed == 1
