"""Deal board repository -- async CRUD for every pipeline table.

Provides DealRepository with the session_factory callable pattern: each
method opens its own session, commits, and converts SQLAlchemy models into
Pydantic read schemas before returning. Nothing outside this module sees a
model instance.

Deal writes always stamp updated_at from the application clock; that value
is the ordering token clients use to discard stale responses.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.deals.models import (
    DealModel,
    LeadActivityModel,
    NotificationModel,
    PipelineModel,
    PipelineStageModel,
    QuoteItemModel,
    UserModel,
)
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
    SaleStatus,
    StageRead,
    StageType,
    UserRead,
)

logger = structlog.get_logger(__name__)

# Columns a partial deal update may touch.
DEAL_MUTABLE_FIELDS = frozenset({
    "name",
    "value",
    "notes",
    "stage_id",
    "pipeline_id",
    "order",
    "sale_status",
    "sale_reason",
    "loss_reason",
    "user_id",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_user(model: UserModel) -> UserRead:
    return UserRead(id=model.id, email=model.email, name=model.name, role=model.role)


def _model_to_pipeline(model: PipelineModel) -> PipelineRead:
    return PipelineRead(id=model.id, name=model.name, is_default=bool(model.is_default))


def _model_to_stage(model: PipelineStageModel) -> StageRead:
    """Convert PipelineStageModel to StageRead, treating unknown types as normal."""
    try:
        stage_type = StageType(model.stage_type)
    except ValueError:
        stage_type = StageType.NORMAL
    return StageRead(
        id=model.id,
        pipeline_id=model.pipeline_id,
        name=model.name,
        order=model.order or 0,
        stage_type=stage_type,
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    try:
        sale_status = SaleStatus(model.sale_status)
    except ValueError:
        sale_status = SaleStatus.NEGOTIATION
    return DealRead(
        id=model.id,
        name=model.name,
        pipeline_id=model.pipeline_id,
        stage_id=model.stage_id,
        order=model.order or 0,
        value=model.value,
        notes=model.notes,
        sale_status=sale_status,
        sale_reason=model.sale_reason,
        loss_reason=model.loss_reason,
        user_id=model.user_id,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: LeadActivityModel) -> ActivityRead:
    return ActivityRead(
        id=model.id,
        deal_id=model.deal_id,
        activity_type=model.activity_type,
        description=model.description,
        created_by=model.created_by,
        created_at=model.created_at,
    )


def _model_to_quote_item(model: QuoteItemModel) -> QuoteItemRead:
    return QuoteItemRead(
        id=model.id,
        deal_id=model.deal_id,
        description=model.description,
        quantity=model.quantity,
        unit_price=model.unit_price,
        created_at=model.created_at,
    )


def _model_to_notification(model: NotificationModel) -> NotificationRead:
    return NotificationRead(
        id=model.id,
        user_id=model.user_id,
        deal_id=model.deal_id,
        pipeline_id=model.pipeline_id,
        type=model.type,
        title=model.title,
        message=model.message,
        is_read=bool(model.is_read),
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async CRUD operations for deals, board layout, and side records.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Users ───────────────────────────────────────────────────────────────

    async def get_user(self, user_id: int) -> UserRead | None:
        async for session in self._session_factory():
            model = await session.get(UserModel, user_id)
            return _model_to_user(model) if model else None

    async def list_user_ids(self) -> list[int]:
        """Return ids of every user (notification fan-out targets)."""
        async for session in self._session_factory():
            result = await session.execute(select(UserModel.id).order_by(UserModel.id))
            return list(result.scalars().all())

    # ── Pipelines & Stages ──────────────────────────────────────────────────

    async def list_pipelines(self) -> list[PipelineRead]:
        async for session in self._session_factory():
            result = await session.execute(select(PipelineModel).order_by(PipelineModel.id))
            return [_model_to_pipeline(m) for m in result.scalars().all()]

    async def get_pipeline(self, pipeline_id: int) -> PipelineRead | None:
        async for session in self._session_factory():
            model = await session.get(PipelineModel, pipeline_id)
            return _model_to_pipeline(model) if model else None

    async def list_stages(self, pipeline_id: int | None = None) -> list[StageRead]:
        """List stages ordered by pipeline then board position.

        Args:
            pipeline_id: Restrict to one pipeline; None returns every stage.
        """
        async for session in self._session_factory():
            stmt = select(PipelineStageModel).order_by(
                PipelineStageModel.pipeline_id, PipelineStageModel.order
            )
            if pipeline_id is not None:
                stmt = stmt.where(PipelineStageModel.pipeline_id == pipeline_id)
            result = await session.execute(stmt)
            return [_model_to_stage(m) for m in result.scalars().all()]

    async def get_stage(self, stage_id: int) -> StageRead | None:
        async for session in self._session_factory():
            model = await session.get(PipelineStageModel, stage_id)
            return _model_to_stage(model) if model else None

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: int) -> DealRead | None:
        async for session in self._session_factory():
            model = await session.get(DealModel, deal_id)
            return _model_to_deal(model) if model else None

    async def list_deals(self, filters: DealFilter | None = None) -> list[DealRead]:
        """List deals ordered by stage and board position.

        Args:
            filters: Optional pipeline/stage restriction.

        Returns:
            List of DealRead objects.
        """
        async for session in self._session_factory():
            stmt = select(DealModel).order_by(DealModel.stage_id, DealModel.order, DealModel.id)
            if filters:
                if filters.pipeline_id is not None:
                    stmt = stmt.where(DealModel.pipeline_id == filters.pipeline_id)
                if filters.stage_id is not None:
                    stmt = stmt.where(DealModel.stage_id == filters.stage_id)
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def create_deal(self, data: DealCreate, pipeline_id: int) -> DealRead:
        """Insert a deal in ``pipeline_id`` (resolved by the caller from the stage)."""
        async for session in self._session_factory():
            now = _utcnow()
            model = DealModel(
                name=data.name,
                pipeline_id=pipeline_id,
                stage_id=data.stage_id,
                order=data.order,
                value=data.value,
                notes=data.notes,
                sale_status=SaleStatus.NEGOTIATION.value,
                user_id=data.user_id,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def update_deal(self, deal_id: int, changes: dict[str, Any]) -> DealRead | None:
        """Apply ``changes`` to a deal and stamp updated_at.

        Args:
            deal_id: Deal primary key.
            changes: Column name -> new value; keys outside the mutable set
                are ignored.

        Returns:
            The post-update DealRead, or None if the deal does not exist.
        """
        values = {k: v for k, v in changes.items() if k in DEAL_MUTABLE_FIELDS}
        if isinstance(values.get("sale_status"), SaleStatus):
            values["sale_status"] = values["sale_status"].value
        values["updated_at"] = _utcnow()

        async for session in self._session_factory():
            model = await session.get(DealModel, deal_id)
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def delete_deal(self, deal_id: int) -> DealRead | None:
        """Delete a deal, returning its last state (None if absent)."""
        async for session in self._session_factory():
            model = await session.get(DealModel, deal_id)
            if model is None:
                return None
            snapshot = _model_to_deal(model)
            await session.delete(model)
            await session.commit()
            return snapshot

    async def reorder_deals(self, orders: list[DealOrderItem]) -> list[DealRead]:
        """Persist new board positions in one transaction.

        Unknown ids are skipped; the returned list holds only deals that
        were actually updated.
        """
        async for session in self._session_factory():
            now = _utcnow()
            ids = [item.id for item in orders]
            for item in orders:
                await session.execute(
                    update(DealModel)
                    .where(DealModel.id == item.id)
                    .values(order=item.order, updated_at=now)
                )
            await session.commit()
            result = await session.execute(select(DealModel).where(DealModel.id.in_(ids)))
            return [_model_to_deal(m) for m in result.scalars().all()]

    # ── Lead Activities ─────────────────────────────────────────────────────

    async def create_activity(
        self, deal_id: int, activity_type: str, description: str, created_by: str
    ) -> ActivityRead:
        async for session in self._session_factory():
            model = LeadActivityModel(
                deal_id=deal_id,
                activity_type=activity_type,
                description=description,
                created_by=created_by,
                created_at=_utcnow(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_activity(model)

    async def list_activities(self, deal_id: int) -> list[ActivityRead]:
        """List a deal's activities, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(LeadActivityModel)
                .where(LeadActivityModel.deal_id == deal_id)
                .order_by(LeadActivityModel.created_at.desc(), LeadActivityModel.id.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def delete_activity(self, activity_id: int) -> ActivityRead | None:
        async for session in self._session_factory():
            model = await session.get(LeadActivityModel, activity_id)
            if model is None:
                return None
            snapshot = _model_to_activity(model)
            await session.delete(model)
            await session.commit()
            return snapshot

    # ── Quote Items ─────────────────────────────────────────────────────────

    async def list_quote_items(self, deal_id: int) -> list[QuoteItemRead]:
        async for session in self._session_factory():
            stmt = (
                select(QuoteItemModel)
                .where(QuoteItemModel.deal_id == deal_id)
                .order_by(QuoteItemModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_quote_item(m) for m in result.scalars().all()]

    async def create_quote_item(self, data: QuoteItemCreate) -> QuoteItemRead:
        async for session in self._session_factory():
            model = QuoteItemModel(
                deal_id=data.deal_id,
                description=data.description,
                quantity=data.quantity,
                unit_price=data.unit_price,
                created_at=_utcnow(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_quote_item(model)

    async def delete_quote_item(self, item_id: int) -> QuoteItemRead | None:
        async for session in self._session_factory():
            model = await session.get(QuoteItemModel, item_id)
            if model is None:
                return None
            snapshot = _model_to_quote_item(model)
            await session.delete(model)
            await session.commit()
            return snapshot

    # ── Notifications ───────────────────────────────────────────────────────

    async def create_notification(self, data: NotificationCreate) -> NotificationRead:
        async for session in self._session_factory():
            model = NotificationModel(
                user_id=data.user_id,
                deal_id=data.deal_id,
                pipeline_id=data.pipeline_id,
                type=data.type,
                title=data.title,
                message=data.message,
                is_read=False,
                created_at=_utcnow(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_notification(model)

    async def list_notifications(self, user_id: int, limit: int = 50) -> list[NotificationRead]:
        async for session in self._session_factory():
            stmt = (
                select(NotificationModel)
                .where(NotificationModel.user_id == user_id)
                .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_notification(m) for m in result.scalars().all()]

    async def mark_notification_read(
        self, notification_id: int, user_id: int
    ) -> NotificationRead | None:
        """Mark one of ``user_id``'s notifications read; None if not theirs."""
        async for session in self._session_factory():
            model = await session.get(NotificationModel, notification_id)
            if model is None or model.user_id != user_id:
                return None
            model.is_read = True
            await session.commit()
            await session.refresh(model)
            return _model_to_notification(model)

    async def mark_all_notifications_read(self, user_id: int) -> int:
        """Mark every unread notification for ``user_id`` read. Returns count."""
        async for session in self._session_factory():
            result = await session.execute(
                update(NotificationModel)
                .where(
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_read == False,  # noqa: E712
                )
                .values(is_read=True)
            )
            await session.commit()
            return result.rowcount or 0

