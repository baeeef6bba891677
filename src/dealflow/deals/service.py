"""Deal mutation service -- validation, board rules, persistence, notification.

Every write to the board goes through DealService so the same sequence runs
for all of them:
1. Load the current state (NotFound if missing)
2. Validate and apply board rules (stage/pipeline consistency, outcome stages)
3. Persist through the repository (SQLAlchemy failures -> PersistenceFailed)
4. Hand before/after snapshots to the ChangeNotifier
5. Return the authoritative post-mutation resource

Board rules:
- A stage determines its pipeline; moving to a stage in another pipeline
  moves the deal to that pipeline.
- Recording an outcome (won/lost) without choosing a stage moves the deal
  to the pipeline's completed/lost stage when one exists.
- Moving a won/lost deal back into a normal stage resets it to negotiation.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.dealflow.deals.schemas import (
    ActivityCreate,
    ActivityRead,
    DealCreate,
    DealFilter,
    DealMove,
    DealRead,
    DealReorder,
    DealUpdate,
    QuoteItemCreate,
    QuoteItemRead,
    SaleStatus,
    StageRead,
    StageType,
)
from src.dealflow.errors import (
    PersistenceFailedError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from src.dealflow.sync.messages import ChangeAction
from src.dealflow.sync.notifier import SYSTEM_ACTOR, ChangeNotifier

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_OUTCOME_STAGE_TYPES = {
    SaleStatus.WON: StageType.COMPLETED,
    SaleStatus.LOST: StageType.LOST,
}


class DealService:
    """Board mutations with validation and post-commit notification.

    Args:
        repository: DealRepository (or an in-memory double).
        notifier: ChangeNotifier; None skips activity logging and broadcast.
    """

    def __init__(self, repository: Any, notifier: ChangeNotifier | None = None) -> None:
        self._repo = repository
        self._notifier = notifier

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: int) -> DealRead:
        deal = await self._repo.get_deal(deal_id)
        if deal is None:
            raise ResourceNotFoundError(
                f"Deal not found: {deal_id}", resource_type="deal", resource_id=deal_id
            )
        return deal

    async def list_deals(self, filters: DealFilter | None = None) -> list[DealRead]:
        return await self._repo.list_deals(filters)

    # ── Deal mutations ──────────────────────────────────────────────────

    async def create_deal(self, data: DealCreate, actor_id: int | None = None) -> DealRead:
        stage = await self._require_stage(data.stage_id)
        if data.user_id is None and actor_id is not None:
            data = data.model_copy(update={"user_id": actor_id})

        deal = await self._write("create_deal", self._repo.create_deal(data, stage.pipeline_id))
        logger.info("deal_service.deal_created", deal_id=deal.id, pipeline_id=deal.pipeline_id)

        if self._notifier is not None:
            await self._notifier.deal_created(deal, actor_id)
        return deal

    async def update_deal(
        self, deal_id: int, data: DealUpdate, actor_id: int | None = None
    ) -> DealRead:
        """Apply a partial update and return the authoritative deal.

        Raises:
            ResourceNotFoundError: The deal does not exist.
            ValidationFailedError: The update is empty or breaks a board rule.
            PersistenceFailedError: The database write failed.
        """
        before = await self.get_deal(deal_id)
        requested = data.model_dump(exclude_unset=True)
        if not requested:
            raise ValidationFailedError("No fields to update", resource_type="deal", resource_id=deal_id)
        for required in ("name", "sale_status"):
            if required in requested and requested[required] is None:
                raise ValidationFailedError(
                    f"{required} cannot be null", resource_type="deal", resource_id=deal_id
                )

        changes = await self._apply_board_rules(before, requested)

        after = await self._write("update_deal", self._repo.update_deal(deal_id, changes))
        if after is None:
            raise ResourceNotFoundError(
                f"Deal not found: {deal_id}", resource_type="deal", resource_id=deal_id
            )
        logger.info(
            "deal_service.deal_updated",
            deal_id=deal_id,
            fields=sorted(changes),
            actor_id=actor_id,
        )

        if self._notifier is not None:
            await self._notifier.deal_updated(before, after, actor_id)
        return after

    async def move_deal(
        self, deal_id: int, move: DealMove, actor_id: int | None = None
    ) -> DealRead:
        """Board drag-and-drop: new stage and position."""
        return await self.update_deal(
            deal_id, DealUpdate(stage_id=move.stage_id, order=move.order), actor_id
        )

    async def delete_deal(self, deal_id: int, actor_id: int | None = None) -> DealRead:
        await self.get_deal(deal_id)
        deleted = await self._write("delete_deal", self._repo.delete_deal(deal_id))
        if deleted is None:
            raise ResourceNotFoundError(
                f"Deal not found: {deal_id}", resource_type="deal", resource_id=deal_id
            )
        logger.info("deal_service.deal_deleted", deal_id=deal_id, actor_id=actor_id)

        if self._notifier is not None:
            await self._notifier.deal_deleted(deleted, actor_id)
        return deleted

    async def reorder_deals(
        self, reorder: DealReorder, actor_id: int | None = None
    ) -> list[DealRead]:
        deals = await self._write("reorder_deals", self._repo.reorder_deals(reorder.orders))
        logger.info("deal_service.deals_reordered", count=len(deals), actor_id=actor_id)

        if self._notifier is not None:
            await self._notifier.deals_reordered(deals, actor_id)
        return deals

    # ── Quote items ─────────────────────────────────────────────────────

    async def list_quote_items(self, deal_id: int) -> list[QuoteItemRead]:
        await self.get_deal(deal_id)
        return await self._repo.list_quote_items(deal_id)

    async def add_quote_item(
        self, data: QuoteItemCreate, actor_id: int | None = None
    ) -> QuoteItemRead:
        await self._require_deal_reference(data.deal_id)
        item = await self._write("add_quote_item", self._repo.create_quote_item(data))

        if self._notifier is not None:
            await self._notifier.quote_item_added(item, actor_id)
        return item

    async def delete_quote_item(self, item_id: int, actor_id: int | None = None) -> QuoteItemRead:
        item = await self._write("delete_quote_item", self._repo.delete_quote_item(item_id))
        if item is None:
            raise ResourceNotFoundError(
                f"Quote item not found: {item_id}", resource_type="quote_item", resource_id=item_id
            )

        if self._notifier is not None:
            await self._notifier.quote_item_removed(item, actor_id)
        return item

    # ── Lead activities ─────────────────────────────────────────────────

    async def list_activities(self, deal_id: int) -> list[ActivityRead]:
        await self.get_deal(deal_id)
        return await self._repo.list_activities(deal_id)

    async def create_activity(
        self, data: ActivityCreate, actor_id: int | None = None
    ) -> ActivityRead:
        await self._require_deal_reference(data.deal_id)
        created_by = data.created_by
        if not created_by:
            if self._notifier is not None:
                created_by = await self._notifier.resolve_actor(actor_id)
            else:
                created_by = SYSTEM_ACTOR

        activity = await self._write(
            "create_activity",
            self._repo.create_activity(data.deal_id, data.activity_type, data.description, created_by),
        )
        if self._notifier is not None:
            await self._notifier.activity_changed(activity, ChangeAction.CREATED)
        return activity

    async def delete_activity(self, activity_id: int) -> ActivityRead:
        activity = await self._write("delete_activity", self._repo.delete_activity(activity_id))
        if activity is None:
            raise ResourceNotFoundError(
                f"Activity not found: {activity_id}",
                resource_type="lead_activity",
                resource_id=activity_id,
            )
        if self._notifier is not None:
            await self._notifier.activity_changed(activity, ChangeAction.DELETED)
        return activity

    # ── Internals ───────────────────────────────────────────────────────

    async def _apply_board_rules(
        self, before: DealRead, requested: dict[str, Any]
    ) -> dict[str, Any]:
        """Resolve stage, pipeline and outcome fields into a consistent change set."""
        changes = dict(requested)
        stage_requested = "stage_id" in requested

        if stage_requested:
            if requested["stage_id"] is None:
                raise ValidationFailedError("stage_id cannot be null", resource_type="deal", resource_id=before.id)
            stage = await self._require_stage(requested["stage_id"])
            explicit_pipeline = requested.get("pipeline_id")
            if explicit_pipeline is not None and explicit_pipeline != stage.pipeline_id:
                raise ValidationFailedError(
                    f"Stage {stage.id} does not belong to pipeline {explicit_pipeline}",
                    resource_type="deal",
                    resource_id=before.id,
                )
            changes["pipeline_id"] = stage.pipeline_id
            if (
                stage.stage_type == StageType.NORMAL
                and before.sale_status != SaleStatus.NEGOTIATION
                and "sale_status" not in requested
            ):
                changes["sale_status"] = SaleStatus.NEGOTIATION
        elif requested.get("pipeline_id") is not None and requested["pipeline_id"] != before.pipeline_id:
            entry = await self._entry_stage(requested["pipeline_id"])
            changes["stage_id"] = entry.id
        elif "pipeline_id" in requested and requested["pipeline_id"] is None:
            raise ValidationFailedError("pipeline_id cannot be null", resource_type="deal", resource_id=before.id)

        status = requested.get("sale_status")
        if status in _OUTCOME_STAGE_TYPES and not stage_requested:
            pipeline_id = changes.get("pipeline_id", before.pipeline_id)
            outcome_stage = await self._find_stage_of_type(pipeline_id, _OUTCOME_STAGE_TYPES[status])
            if outcome_stage is not None:
                changes["stage_id"] = outcome_stage.id
            else:
                logger.info(
                    "deal_service.outcome_stage_missing",
                    deal_id=before.id,
                    pipeline_id=pipeline_id,
                    sale_status=status.value,
                )
        return changes

    async def _require_stage(self, stage_id: int) -> StageRead:
        stage = await self._repo.get_stage(stage_id)
        if stage is None:
            raise ValidationFailedError(f"Unknown stage: {stage_id}", resource_type="stage", resource_id=stage_id)
        return stage

    async def _require_deal_reference(self, deal_id: int) -> None:
        if await self._repo.get_deal(deal_id) is None:
            raise ValidationFailedError(f"Unknown deal: {deal_id}", resource_type="deal", resource_id=deal_id)

    async def _find_stage_of_type(self, pipeline_id: int, stage_type: StageType) -> StageRead | None:
        for stage in await self._repo.list_stages(pipeline_id):
            if stage.stage_type == stage_type:
                return stage
        return None

    async def _entry_stage(self, pipeline_id: int) -> StageRead:
        """First normal stage of a pipeline, used when only the pipeline changes."""
        stages = [s for s in await self._repo.list_stages(pipeline_id) if s.stage_type == StageType.NORMAL]
        if not stages:
            raise ValidationFailedError(
                f"Pipeline {pipeline_id} has no open stage", resource_type="pipeline", resource_id=pipeline_id
            )
        return min(stages, key=lambda s: s.order)

    async def _write(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except IntegrityError as exc:
            logger.warning("deal_service.integrity_error", operation=operation, exc_info=True)
            raise ValidationFailedError(f"{operation} rejected by database constraint") from exc
        except SQLAlchemyError as exc:
            logger.error("deal_service.write_failed", operation=operation, exc_info=True)
            raise PersistenceFailedError(f"{operation} failed") from exc
