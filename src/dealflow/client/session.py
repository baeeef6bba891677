"""Deal board sync session: client-side wiring of all sync pieces.

    PollScheduler (board, 3s) ────┐
                                  ├──> RefreshSink ──> Reconciler
    BroadcastListener (hints) ────┘      (debounced, serialized)

    PollScheduler (activities, 3s, open deal only) ──> activity feed
    PollScheduler (notifications, 5s) ──> notification feed
    BroadcastListener (notification frames) ──> notification feed

Board polling pauses while a refresh is already running or a local
mutation is pending. Saves are optimistic: the view shows the new values
immediately, the server response replaces them on success, and a failure
rolls the view back and re-raises the MutationError to the caller.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog

from src.dealflow.client.api import DealSyncApi
from src.dealflow.client.channel import BroadcastListener
from src.dealflow.client.guard import FieldState
from src.dealflow.client.poller import PollScheduler
from src.dealflow.client.reconciler import ApplyResult, Reconciler
from src.dealflow.client.refresh import RefreshSink
from src.dealflow.errors import MutationError
from src.dealflow.sync.messages import CHANGE_TOPICS, BroadcastMessage, Topic

logger = structlog.get_logger(__name__)

DEAL = "deal"


class DealBoardSync:
    """Keeps one client's view of the deal board in sync with the server.

    Args:
        api: REST client.
        ws_url: Broadcast channel URL.
        user_id: Registers the channel for targeted notifications; None
            disables the notification feed.
        pipeline_id: Restrict the board to one pipeline.
        board_interval / notification_interval: Poll cadence in seconds.
        idle_timeout: Editing guard idle window.
        debounce: Refresh sink coalescing window.
        reconnect_delay: Broadcast reconnect delay.
        on_board_change: Called with the ApplyResults of every refresh.
        on_notification: Called with each new notification payload.
        clock: Monotonic clock for editing guards.
        listener: Prebuilt BroadcastListener (tests); built from ws_url otherwise.
    """

    def __init__(
        self,
        api: DealSyncApi,
        ws_url: str,
        user_id: int | None = None,
        pipeline_id: int | None = None,
        board_interval: float = 3.0,
        notification_interval: float = 5.0,
        idle_timeout: float = 10.0,
        debounce: float = 0.25,
        reconnect_delay: float = 3.0,
        on_board_change: Callable[[list[ApplyResult]], None] | None = None,
        on_notification: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        listener: BroadcastListener | None = None,
    ) -> None:
        self.api = api
        self.user_id = user_id
        self.pipeline_id = pipeline_id
        self._on_board_change = on_board_change
        self._on_notification = on_notification
        self._pending_mutations = 0
        self.notifications: dict[int, dict[str, Any]] = {}
        self.open_deal_id: int | None = None
        self.activities: list[dict[str, Any]] = []

        self.reconciler = Reconciler(guarded_fields=("notes",), idle_timeout=idle_timeout, clock=clock)
        self.sink = RefreshSink(fetch=self._fetch_board, deliver=self._deliver_board, debounce=debounce)
        self.board_poll = PollScheduler(
            "board", board_interval, tick=self.sink.flush, enabled=self._board_poll_enabled
        )
        self.activity_poll = PollScheduler(
            "activities",
            board_interval,
            tick=self._poll_activities,
            enabled=lambda: self.open_deal_id is not None,
        )
        self.notification_poll = PollScheduler(
            "notifications",
            notification_interval,
            tick=self._poll_notifications,
            enabled=lambda: self.user_id is not None,
        )
        self.listener = listener or BroadcastListener(
            ws_url,
            on_message=self.handle_broadcast,
            user_id=user_id,
            reconnect_delay=reconnect_delay,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        self.listener.start()
        self.board_poll.start()
        self.activity_poll.start()
        self.notification_poll.start()
        logger.info("session.started", user_id=self.user_id, pipeline_id=self.pipeline_id)

    async def stop(self) -> None:
        await self.listener.stop()
        await self.board_poll.stop()
        await self.activity_poll.stop()
        await self.notification_poll.stop()
        await self.sink.stop()
        logger.info("session.stopped", user_id=self.user_id)

    @property
    def is_live(self) -> bool:
        return self.listener.is_live

    # ── Refresh path ────────────────────────────────────────────────────

    def _board_poll_enabled(self) -> bool:
        return not self.sink.in_flight and self._pending_mutations == 0

    async def _fetch_board(self) -> list[dict[str, Any]]:
        return await self.api.list_deals(pipeline_id=self.pipeline_id)

    def _deliver_board(self, deals: list[dict[str, Any]]) -> None:
        self.reconciler.expire_idle()
        results = self.reconciler.apply_snapshot(DEAL, deals)
        diverged = [r for r in results if r.diverged_fields]
        if diverged:
            logger.info(
                "session.divergence_detected",
                deals=[r.key[1] for r in diverged],
            )
        if self._on_board_change is not None:
            self._on_board_change(results)

    async def handle_broadcast(self, message: BroadcastMessage) -> None:
        """Route one broadcast frame: board changes become refresh hints."""
        topic = message.topic
        if topic == Topic.NOTIFICATION:
            self._add_notification(message.data)
        elif topic in CHANGE_TOPICS:
            self.sink.request(message.type)
            if self._touches_open_activities(topic, message.data):
                await self.activity_poll.tick_once()

    def _touches_open_activities(self, topic: Topic, data: dict[str, Any]) -> bool:
        if self.open_deal_id is None or data.get("dealId") != self.open_deal_id:
            return False
        return topic == Topic.ACTIVITIES_UPDATED or bool(data.get("activityRecorded"))

    async def _poll_activities(self) -> None:
        deal_id = self.open_deal_id
        if deal_id is None:
            return
        activities = await self.api.list_activities(deal_id)
        if deal_id == self.open_deal_id:
            self.activities = activities

    async def open_deal(self, deal_id: int) -> None:
        """Show one deal's detail: its activity log is polled until closed."""
        self.open_deal_id = deal_id
        self.activities = []
        await self.activity_poll.tick_once()

    def close_deal(self) -> None:
        self.open_deal_id = None
        self.activities = []

    async def _poll_notifications(self) -> None:
        for notification in await self.api.list_notifications():
            self._add_notification(notification)

    def _add_notification(self, payload: dict[str, Any]) -> None:
        notification_id = payload.get("id")
        if not isinstance(notification_id, int):
            return
        is_new = notification_id not in self.notifications
        self.notifications[notification_id] = payload
        if is_new and self._on_notification is not None:
            self._on_notification(payload)

    # ── Editing ─────────────────────────────────────────────────────────

    def deal(self, deal_id: int) -> dict[str, Any] | None:
        return self.reconciler.view(DEAL, deal_id)

    def deals(self) -> list[dict[str, Any]]:
        return self.reconciler.views(DEAL)

    def type_notes(self, deal_id: int, value: str) -> None:
        self.reconciler.user_input(DEAL, deal_id, "notes", value)

    def notes_state(self, deal_id: int) -> FieldState:
        return self.reconciler.guard(DEAL, deal_id, "notes").state

    def refresh_notes_from_server(self, deal_id: int) -> Any:
        return self.reconciler.refresh_from_server(DEAL, deal_id, "notes")

    # ── Mutations ───────────────────────────────────────────────────────

    async def save(self, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        """Optimistically apply ``fields`` (camelCase keys) and persist them.

        Raises:
            MutationError: The server rejected or failed the update; the
                view has been rolled back.
        """
        self.reconciler.begin_optimistic(DEAL, deal_id, fields)
        self._pending_mutations += 1
        try:
            response = await self.api.update_deal(deal_id, fields)
        except MutationError as exc:
            self.reconciler.rollback(DEAL, deal_id)
            logger.warning("session.save_failed", deal_id=deal_id, kind=exc.kind.value)
            raise
        finally:
            self._pending_mutations -= 1

        self.reconciler.commit_mutation(DEAL, response, saved=fields)
        return response

    async def save_notes(self, deal_id: int) -> dict[str, Any]:
        """Save the locally edited notes value."""
        notes = self.reconciler.guard(DEAL, deal_id, "notes").local_value
        return await self.save(deal_id, {"notes": notes})

    async def move(self, deal_id: int, stage_id: int, order: int = 0) -> dict[str, Any]:
        """Board drag-and-drop. On failure the move is reverted and a refresh requested."""
        self.reconciler.begin_optimistic(DEAL, deal_id, {"stageId": stage_id, "order": order})
        self._pending_mutations += 1
        try:
            response = await self.api.move_deal(deal_id, stage_id, order)
        except MutationError as exc:
            self.reconciler.rollback(DEAL, deal_id)
            self.sink.request("move_failed")
            logger.warning("session.move_failed", deal_id=deal_id, kind=exc.kind.value)
            raise
        finally:
            self._pending_mutations -= 1

        self.reconciler.commit_mutation(DEAL, response)
        return response
