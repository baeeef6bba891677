"""Post-mutation notifier: activity log, broadcast event, personal notifications.

Runs after every committed mutation. For each one it:
1. Derives at most one activity record from the before/after snapshots and
   writes it (best-effort: a failed write is logged, never raised).
2. Builds exactly one ChangeEvent and pushes it to every connected observer
   (best-effort: delivery failures never reach the mutating request).
3. For deals created in, or moved into, a pipeline, writes a notification
   row per user and pushes each row to its owner on the targeted channel.

Nothing here raises into the caller. The mutation already succeeded; the
notifier only reports it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.dealflow.deals.schemas import (
    ActivityRead,
    ActivityType,
    DealRead,
    NotificationCreate,
    PipelineRead,
    QuoteItemRead,
    SaleStatus,
    StageRead,
)
from src.dealflow.sync.messages import BroadcastMessage, ChangeAction, ChangeEvent, Topic
from src.dealflow.sync.registry import BroadcastRegistry

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"

# Deal attributes compared when deciding what a mutation changed.
TRACKED_DEAL_FIELDS = (
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
)


@dataclass(frozen=True)
class DerivedActivity:
    activity_type: ActivityType
    description: str


# ── Pure derivation ─────────────────────────────────────────────────────────


def changed_fields(before: DealRead | None, after: DealRead) -> list[str]:
    """Names of tracked deal fields whose value differs between snapshots."""
    if before is None:
        return []
    return [f for f in TRACKED_DEAL_FIELDS if getattr(before, f) != getattr(after, f)]


def _stage_name(stages: dict[int, StageRead], stage_id: int) -> str:
    stage = stages.get(stage_id)
    return stage.name if stage else f"Stage ID {stage_id}"


def _pipeline_name(pipelines: dict[int, PipelineRead], pipeline_id: int) -> str:
    pipeline = pipelines.get(pipeline_id)
    return pipeline.name if pipeline else "Unknown"


def derive_activity(
    before: DealRead,
    after: DealRead,
    stages: dict[int, StageRead],
    pipelines: dict[int, PipelineRead],
) -> DerivedActivity | None:
    """Pick the single most significant activity for a deal update.

    Priority: outcome recorded (won/lost) > pipeline change > stage change.
    A mutation that changes none of those yields no activity.
    """
    if after.sale_status != before.sale_status and after.sale_status in (
        SaleStatus.WON,
        SaleStatus.LOST,
    ):
        if after.sale_status == SaleStatus.WON:
            reason = f" ({after.sale_reason})" if after.sale_reason else ""
            return DerivedActivity(ActivityType.SALE_WON, f"Deal marked as won{reason}")
        reason = f" ({after.loss_reason})" if after.loss_reason else ""
        return DerivedActivity(ActivityType.SALE_LOST, f"Deal marked as lost{reason}")

    if after.pipeline_id != before.pipeline_id:
        return DerivedActivity(
            ActivityType.PIPELINE_CHANGE,
            f'Deal moved from pipeline "{_pipeline_name(pipelines, before.pipeline_id)}" '
            f'to "{_pipeline_name(pipelines, after.pipeline_id)}"',
        )

    if after.stage_id != before.stage_id:
        return DerivedActivity(
            ActivityType.STAGE_CHANGE,
            f'Deal moved from stage "{_stage_name(stages, before.stage_id)}" '
            f'to "{_stage_name(stages, after.stage_id)}"',
        )

    return None


def select_topic(before: DealRead | None, after: DealRead) -> tuple[Topic, ChangeAction]:
    """Map a deal mutation to its broadcast topic and action."""
    if before is None:
        return Topic.DEAL_CREATED, ChangeAction.CREATED
    fields = changed_fields(before, after)
    if fields == ["notes"]:
        return Topic.NOTES_UPDATED, ChangeAction.UPDATED
    if after.pipeline_id != before.pipeline_id:
        return Topic.PIPELINE_CHANGED, ChangeAction.MOVED
    if after.stage_id != before.stage_id:
        return Topic.DEAL_UPDATED, ChangeAction.MOVED
    return Topic.DEAL_UPDATED, ChangeAction.UPDATED


# ── Notifier ────────────────────────────────────────────────────────────────


class ChangeNotifier:
    """Records activities and fans out change events after mutations.

    Args:
        repository: DealRepository (or a test double with the same methods).
        registry: Broadcast registry; None disables pushing entirely.
    """

    def __init__(self, repository: Any, registry: BroadcastRegistry | None = None) -> None:
        self._repo = repository
        self._registry = registry

    # ── Deal mutations ──────────────────────────────────────────────────

    async def deal_created(self, deal: DealRead, actor_id: int | None = None) -> ChangeEvent:
        event = ChangeEvent(
            topic=Topic.DEAL_CREATED,
            resource_type="deal",
            resource_id=deal.id,
            action=ChangeAction.CREATED,
            deal_id=deal.id,
        )
        await self._emit(event)
        await self.notify_pipeline_activity(deal, "created")
        return event

    async def deal_updated(
        self, before: DealRead, after: DealRead, actor_id: int | None = None
    ) -> ChangeEvent:
        """Report a committed deal update (form edit or board move)."""
        activity_recorded = False
        derived = None
        if (
            after.sale_status != before.sale_status
            or after.pipeline_id != before.pipeline_id
            or after.stage_id != before.stage_id
        ):
            stages, pipelines = await self._layout()
            derived = derive_activity(before, after, stages, pipelines)
        if derived is not None:
            activity_recorded = await self.record_activity(
                after.id, derived.activity_type.value, derived.description, actor_id
            )

        topic, action = select_topic(before, after)
        event = ChangeEvent(
            topic=topic,
            resource_type="deal",
            resource_id=after.id,
            action=action,
            deal_id=after.id,
            changed_fields=changed_fields(before, after),
            activity_recorded=activity_recorded,
        )
        await self._emit(event)

        if after.pipeline_id != before.pipeline_id:
            await self.notify_pipeline_activity(after, "moved")
        return event

    async def deal_deleted(self, deal: DealRead, actor_id: int | None = None) -> ChangeEvent:
        event = ChangeEvent(
            topic=Topic.DEAL_DELETED,
            resource_type="deal",
            resource_id=deal.id,
            action=ChangeAction.DELETED,
            deal_id=deal.id,
        )
        await self._emit(event)
        return event

    async def deals_reordered(
        self, deals: list[DealRead], actor_id: int | None = None
    ) -> ChangeEvent:
        """One event for a whole bulk reorder; related_ids lists every deal."""
        event = ChangeEvent(
            topic=Topic.DEALS_REORDERED,
            resource_type="deal",
            resource_id=None,
            action=ChangeAction.MOVED,
            related_ids=[d.id for d in deals],
            changed_fields=["order"],
        )
        await self._emit(event)
        return event

    # ── Side records ────────────────────────────────────────────────────

    async def quote_item_added(
        self, item: QuoteItemRead, actor_id: int | None = None
    ) -> ChangeEvent:
        recorded = await self.record_activity(
            item.deal_id,
            ActivityType.QUOTE_ITEM_ADDED.value,
            f"Quote item added: {item.description} "
            f"(Qty: {item.quantity}, Unit price: {item.unit_price:.2f})",
            actor_id,
        )
        event = ChangeEvent(
            topic=Topic.QUOTE_UPDATED,
            resource_type="quote_item",
            resource_id=item.id,
            action=ChangeAction.CREATED,
            deal_id=item.deal_id,
            activity_recorded=recorded,
        )
        await self._emit(event)
        return event

    async def quote_item_removed(
        self, item: QuoteItemRead, actor_id: int | None = None
    ) -> ChangeEvent:
        recorded = await self.record_activity(
            item.deal_id,
            ActivityType.QUOTE_ITEM_REMOVED.value,
            f"Quote item removed: {item.description}",
            actor_id,
        )
        event = ChangeEvent(
            topic=Topic.QUOTE_UPDATED,
            resource_type="quote_item",
            resource_id=item.id,
            action=ChangeAction.DELETED,
            deal_id=item.deal_id,
            activity_recorded=recorded,
        )
        await self._emit(event)
        return event

    async def activity_changed(
        self, activity: ActivityRead, action: ChangeAction
    ) -> ChangeEvent:
        """Report a manually created or deleted activity row."""
        event = ChangeEvent(
            topic=Topic.ACTIVITIES_UPDATED,
            resource_type="lead_activity",
            resource_id=activity.id,
            action=action,
            deal_id=activity.deal_id,
        )
        await self._emit(event)
        return event

    # ── Best-effort helpers ─────────────────────────────────────────────

    async def resolve_actor(self, actor_id: int | None) -> str:
        """Attribution string: user email, ``User ID n``, or ``system``."""
        if actor_id is None:
            return SYSTEM_ACTOR
        try:
            user = await self._repo.get_user(actor_id)
        except Exception:
            logger.warning("notifier.actor_lookup_failed", actor_id=actor_id, exc_info=True)
            user = None
        return user.email if user else f"User ID {actor_id}"

    async def record_activity(
        self, deal_id: int, activity_type: str, description: str, actor_id: int | None
    ) -> bool:
        """Write one activity row. Returns False (and logs) on failure."""
        try:
            created_by = await self.resolve_actor(actor_id)
            await self._repo.create_activity(deal_id, activity_type, description, created_by)
        except Exception:
            logger.warning(
                "notifier.activity_failed",
                deal_id=deal_id,
                activity_type=activity_type,
                exc_info=True,
            )
            return False
        logger.info("notifier.activity_recorded", deal_id=deal_id, activity_type=activity_type)
        return True

    async def notify_pipeline_activity(self, deal: DealRead, kind: str) -> int:
        """Create and push a notification for every user.

        Args:
            deal: The deal that was created in, or moved into, a pipeline.
            kind: "created" or "moved".

        Returns:
            Number of notification rows written.
        """
        if kind == "created":
            title = "New deal created"
            message = f'New deal "{deal.name}" was created in the pipeline'
        else:
            title = "Deal moved"
            message = f'Deal "{deal.name}" was moved to this pipeline'

        try:
            user_ids = await self._repo.list_user_ids()
        except Exception:
            logger.warning("notifier.user_lookup_failed", deal_id=deal.id, exc_info=True)
            return 0

        written = 0
        for user_id in user_ids:
            try:
                notification = await self._repo.create_notification(
                    NotificationCreate(
                        user_id=user_id,
                        deal_id=deal.id,
                        pipeline_id=deal.pipeline_id,
                        type=f"deal_{kind}",
                        title=title,
                        message=message,
                    )
                )
            except Exception:
                logger.warning(
                    "notifier.notification_failed",
                    deal_id=deal.id,
                    user_id=user_id,
                    exc_info=True,
                )
                continue
            written += 1
            await self._push_to_subject(
                user_id,
                BroadcastMessage(
                    type=Topic.NOTIFICATION.value,
                    data=notification.model_dump(mode="json", by_alias=True),
                ),
            )
        return written

    async def _layout(self) -> tuple[dict[int, StageRead], dict[int, PipelineRead]]:
        try:
            stages = {s.id: s for s in await self._repo.list_stages()}
            pipelines = {p.id: p for p in await self._repo.list_pipelines()}
        except Exception:
            logger.warning("notifier.layout_lookup_failed", exc_info=True)
            return {}, {}
        return stages, pipelines

    async def _emit(self, event: ChangeEvent) -> None:
        if self._registry is None:
            return
        try:
            delivered = await self._registry.broadcast_all(event.to_message())
        except Exception:
            logger.warning(
                "notifier.broadcast_failed",
                topic=event.topic.value,
                resource_id=event.resource_id,
                exc_info=True,
            )
            return
        logger.debug(
            "notifier.broadcast_sent",
            topic=event.topic.value,
            resource_id=event.resource_id,
            delivered=delivered,
        )

    async def _push_to_subject(self, user_id: int, message: BroadcastMessage) -> None:
        if self._registry is None:
            return
        try:
            await self._registry.send_to_subject(user_id, message)
        except Exception:
            logger.warning("notifier.targeted_send_failed", user_id=user_id, exc_info=True)
