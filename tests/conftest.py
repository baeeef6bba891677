"""Shared fixtures for deal board tests.

Provides:
- InMemoryDealRepository: DealRepository test double (no database)
- FakeConnection: WebSocket stand-in recording send_json payloads
- A seeded board: one "Sales" pipeline (Lead, Proposal, Won, Lost), one
  "Renewals" pipeline (Open), two users
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from src.dealflow.deals.repository import DEAL_MUTABLE_FIELDS
from src.dealflow.deals.schemas import (
    ActivityRead,
    DealCreate,
    DealFilter,
    DealOrderItem,
    DealRead,
    NotificationCreate,
    NotificationRead,
    PipelineRead,
    QuoteItemCreate,
    QuoteItemRead,
    StageRead,
    StageType,
    UserRead,
)


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database.

    Timestamps come from a counter so every write gets a strictly later
    updated_at than the one before it.
    """

    def __init__(self) -> None:
        self.users: dict[int, UserRead] = {}
        self.pipelines: dict[int, PipelineRead] = {}
        self.stages: dict[int, StageRead] = {}
        self.deals: dict[int, DealRead] = {}
        self.activities: dict[int, ActivityRead] = {}
        self.quote_items: dict[int, QuoteItemRead] = {}
        self.notifications: dict[int, NotificationRead] = {}
        self._next_id = 0
        self._ticks = 0
        self.fail_activity_writes = False
        self.fail_with: Exception | None = None

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def now(self) -> datetime:
        self._ticks += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._ticks)

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    # Seeding

    def add_user(self, email: str) -> UserRead:
        user = UserRead(id=self._id(), email=email)
        self.users[user.id] = user
        return user

    def add_pipeline(self, name: str) -> PipelineRead:
        pipeline = PipelineRead(id=self._id(), name=name)
        self.pipelines[pipeline.id] = pipeline
        return pipeline

    def add_stage(
        self, pipeline_id: int, name: str, order: int, stage_type: StageType = StageType.NORMAL
    ) -> StageRead:
        stage = StageRead(
            id=self._id(), pipeline_id=pipeline_id, name=name, order=order, stage_type=stage_type
        )
        self.stages[stage.id] = stage
        return stage

    # Users

    async def get_user(self, user_id: int) -> UserRead | None:
        return self.users.get(user_id)

    async def list_user_ids(self) -> list[int]:
        return sorted(self.users)

    # Pipelines & stages

    async def list_pipelines(self) -> list[PipelineRead]:
        return list(self.pipelines.values())

    async def get_pipeline(self, pipeline_id: int) -> PipelineRead | None:
        return self.pipelines.get(pipeline_id)

    async def list_stages(self, pipeline_id: int | None = None) -> list[StageRead]:
        stages = [s for s in self.stages.values() if pipeline_id is None or s.pipeline_id == pipeline_id]
        return sorted(stages, key=lambda s: (s.pipeline_id, s.order))

    async def get_stage(self, stage_id: int) -> StageRead | None:
        return self.stages.get(stage_id)

    # Deals

    async def get_deal(self, deal_id: int) -> DealRead | None:
        return self.deals.get(deal_id)

    async def list_deals(self, filters: DealFilter | None = None) -> list[DealRead]:
        result = list(self.deals.values())
        if filters:
            if filters.pipeline_id is not None:
                result = [d for d in result if d.pipeline_id == filters.pipeline_id]
            if filters.stage_id is not None:
                result = [d for d in result if d.stage_id == filters.stage_id]
        return sorted(result, key=lambda d: (d.stage_id, d.order, d.id))

    async def create_deal(self, data: DealCreate, pipeline_id: int) -> DealRead:
        self._maybe_fail()
        now = self.now()
        deal = DealRead(
            id=self._id(),
            name=data.name,
            pipeline_id=pipeline_id,
            stage_id=data.stage_id,
            order=data.order,
            value=data.value,
            notes=data.notes,
            user_id=data.user_id,
            created_at=now,
            updated_at=now,
        )
        self.deals[deal.id] = deal
        return deal

    async def update_deal(self, deal_id: int, changes: dict[str, Any]) -> DealRead | None:
        self._maybe_fail()
        deal = self.deals.get(deal_id)
        if deal is None:
            return None
        values = {k: v for k, v in changes.items() if k in DEAL_MUTABLE_FIELDS}
        values["updated_at"] = self.now()
        updated = deal.model_copy(update=values)
        self.deals[deal_id] = updated
        return updated

    async def delete_deal(self, deal_id: int) -> DealRead | None:
        self._maybe_fail()
        return self.deals.pop(deal_id, None)

    async def reorder_deals(self, orders: list[DealOrderItem]) -> list[DealRead]:
        self._maybe_fail()
        now = self.now()
        updated = []
        for item in orders:
            deal = self.deals.get(item.id)
            if deal is None:
                continue
            self.deals[item.id] = deal.model_copy(update={"order": item.order, "updated_at": now})
            updated.append(self.deals[item.id])
        return updated

    # Activities

    async def create_activity(
        self, deal_id: int, activity_type: str, description: str, created_by: str
    ) -> ActivityRead:
        if self.fail_activity_writes:
            raise RuntimeError("activity table unavailable")
        activity = ActivityRead(
            id=self._id(),
            deal_id=deal_id,
            activity_type=activity_type,
            description=description,
            created_by=created_by,
            created_at=self.now(),
        )
        self.activities[activity.id] = activity
        return activity

    async def list_activities(self, deal_id: int) -> list[ActivityRead]:
        rows = [a for a in self.activities.values() if a.deal_id == deal_id]
        return sorted(rows, key=lambda a: (a.created_at, a.id), reverse=True)

    async def delete_activity(self, activity_id: int) -> ActivityRead | None:
        return self.activities.pop(activity_id, None)

    # Quote items

    async def list_quote_items(self, deal_id: int) -> list[QuoteItemRead]:
        return [q for q in self.quote_items.values() if q.deal_id == deal_id]

    async def create_quote_item(self, data: QuoteItemCreate) -> QuoteItemRead:
        self._maybe_fail()
        item = QuoteItemRead(
            id=self._id(),
            deal_id=data.deal_id,
            description=data.description,
            quantity=data.quantity,
            unit_price=data.unit_price,
            created_at=self.now(),
        )
        self.quote_items[item.id] = item
        return item

    async def delete_quote_item(self, item_id: int) -> QuoteItemRead | None:
        return self.quote_items.pop(item_id, None)

    # Notifications

    async def create_notification(self, data: NotificationCreate) -> NotificationRead:
        notification = NotificationRead(
            id=self._id(),
            user_id=data.user_id,
            deal_id=data.deal_id,
            pipeline_id=data.pipeline_id,
            type=data.type,
            title=data.title,
            message=data.message,
            created_at=self.now(),
        )
        self.notifications[notification.id] = notification
        return notification

    async def list_notifications(self, user_id: int, limit: int = 50) -> list[NotificationRead]:
        rows = [n for n in self.notifications.values() if n.user_id == user_id]
        return sorted(rows, key=lambda n: n.id, reverse=True)[:limit]

    async def mark_notification_read(
        self, notification_id: int, user_id: int
    ) -> NotificationRead | None:
        notification = self.notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return None
        notification = notification.model_copy(update={"is_read": True})
        self.notifications[notification_id] = notification
        return notification

    async def mark_all_notifications_read(self, user_id: int) -> int:
        count = 0
        for nid, n in list(self.notifications.items()):
            if n.user_id == user_id and not n.is_read:
                self.notifications[nid] = n.model_copy(update={"is_read": True})
                count += 1
        return count


# ── Fake WebSocket ───────────────────────────────────────────────────────────


class FakeConnection:
    """Records every send_json payload; can be told to fail or hang."""

    def __init__(self, name: str = "conn", fail: bool = False, hang: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.hang = hang
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError(f"{self.name} is gone")
        if self.hang:
            await asyncio.sleep(3600)
        self.sent.append(data)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __repr__(self) -> str:
        return f"FakeConnection({self.name})"


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def board(repo: InMemoryDealRepository) -> dict[str, Any]:
    """Seed two pipelines and two users; returns the seeded objects by name."""
    sales = repo.add_pipeline("Sales")
    renewals = repo.add_pipeline("Renewals")
    return {
        "sales": sales,
        "renewals": renewals,
        "lead": repo.add_stage(sales.id, "Lead", 0),
        "proposal": repo.add_stage(sales.id, "Proposal", 1),
        "won": repo.add_stage(sales.id, "Won", 2, StageType.COMPLETED),
        "lost": repo.add_stage(sales.id, "Lost", 3, StageType.LOST),
        "open": repo.add_stage(renewals.id, "Open", 0),
        "alice": repo.add_user("alice@example.com"),
        "bob": repo.add_user("bob@example.com"),
    }


@pytest.fixture
def make_connection():
    def _make(name: str = "conn", fail: bool = False, hang: bool = False) -> FakeConnection:
        return FakeConnection(name, fail=fail, hang=hang)

    return _make


@pytest_asyncio.fixture
async def seeded_deal(repo: InMemoryDealRepository, board: dict[str, Any]) -> DealRead:
    """One negotiation-stage deal in Sales/Lead owned by alice."""
    return await repo.create_deal(
        DealCreate(name="Acme renewal", stage_id=board["lead"].id, notes="initial", user_id=board["alice"].id),
        board["sales"].id,
    )
