"""Tests for DealService board rules and error mapping.

Uses the InMemoryDealRepository double from conftest and a real
ConnectionRegistry so broadcast side effects can be asserted directly.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from src.dealflow.deals.schemas import (
    ActivityCreate,
    DealCreate,
    DealMove,
    DealOrderItem,
    DealReorder,
    DealUpdate,
    QuoteItemCreate,
    SaleStatus,
)
from src.dealflow.deals.service import DealService
from src.dealflow.errors import (
    MutationErrorKind,
    PersistenceFailedError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from src.dealflow.sync.notifier import ChangeNotifier
from src.dealflow.sync.registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def service(repo, registry):
    return DealService(repo, ChangeNotifier(repo, registry))


# ── Create / read ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_takes_pipeline_from_stage(service, board):
    deal = await service.create_deal(DealCreate(name="New", stage_id=board["open"].id), actor_id=board["bob"].id)

    assert deal.pipeline_id == board["renewals"].id
    assert deal.user_id == board["bob"].id
    assert deal.sale_status == SaleStatus.NEGOTIATION


@pytest.mark.asyncio
async def test_create_with_unknown_stage_fails_validation(service, board):
    with pytest.raises(ValidationFailedError):
        await service.create_deal(DealCreate(name="New", stage_id=999))


@pytest.mark.asyncio
async def test_get_missing_deal(service, board):
    with pytest.raises(ResourceNotFoundError) as info:
        await service.get_deal(12345)
    assert info.value.kind == MutationErrorKind.NOT_FOUND
    assert info.value.resource_id == 12345


# ── Update rules ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_update_returns_authoritative_state(service, seeded_deal):
    updated = await service.update_deal(seeded_deal.id, DealUpdate(notes="new notes", value=99.0))

    assert updated.notes == "new notes"
    assert updated.value == 99.0
    assert updated.updated_at > seeded_deal.updated_at


@pytest.mark.asyncio
async def test_explicit_null_clears_notes(service, seeded_deal):
    updated = await service.update_deal(seeded_deal.id, DealUpdate.model_validate({"notes": None}))
    assert updated.notes is None


@pytest.mark.asyncio
async def test_empty_update_is_rejected(service, seeded_deal):
    with pytest.raises(ValidationFailedError):
        await service.update_deal(seeded_deal.id, DealUpdate())


@pytest.mark.asyncio
async def test_null_name_is_rejected(service, seeded_deal):
    with pytest.raises(ValidationFailedError):
        await service.update_deal(seeded_deal.id, DealUpdate.model_validate({"name": None}))


@pytest.mark.asyncio
async def test_update_missing_deal(service, board):
    with pytest.raises(ResourceNotFoundError):
        await service.update_deal(777, DealUpdate(notes="x"))


@pytest.mark.asyncio
async def test_stage_in_other_pipeline_moves_pipeline(service, board, seeded_deal):
    updated = await service.move_deal(seeded_deal.id, DealMove(stage_id=board["open"].id))

    assert updated.stage_id == board["open"].id
    assert updated.pipeline_id == board["renewals"].id


@pytest.mark.asyncio
async def test_conflicting_stage_and_pipeline_rejected(service, board, seeded_deal):
    with pytest.raises(ValidationFailedError):
        await service.update_deal(
            seeded_deal.id,
            DealUpdate(stage_id=board["proposal"].id, pipeline_id=board["renewals"].id),
        )


@pytest.mark.asyncio
async def test_pipeline_only_change_uses_entry_stage(service, board, seeded_deal):
    updated = await service.update_deal(seeded_deal.id, DealUpdate(pipeline_id=board["renewals"].id))

    assert updated.pipeline_id == board["renewals"].id
    assert updated.stage_id == board["open"].id


@pytest.mark.asyncio
async def test_won_moves_to_completed_stage(service, board, seeded_deal):
    updated = await service.update_deal(
        seeded_deal.id, DealUpdate(sale_status=SaleStatus.WON, sale_reason="Budget approved")
    )

    assert updated.sale_status == SaleStatus.WON
    assert updated.stage_id == board["won"].id


@pytest.mark.asyncio
async def test_lost_moves_to_lost_stage(service, board, seeded_deal):
    updated = await service.update_deal(seeded_deal.id, DealUpdate(sale_status=SaleStatus.LOST))
    assert updated.stage_id == board["lost"].id


@pytest.mark.asyncio
async def test_outcome_without_outcome_stage_only_sets_status(service, repo, board):
    deal = await service.create_deal(DealCreate(name="R", stage_id=board["open"].id))

    updated = await service.update_deal(deal.id, DealUpdate(sale_status=SaleStatus.WON))

    assert updated.sale_status == SaleStatus.WON
    assert updated.stage_id == board["open"].id


@pytest.mark.asyncio
async def test_back_to_normal_stage_resets_outcome(service, board, seeded_deal):
    await service.update_deal(seeded_deal.id, DealUpdate(sale_status=SaleStatus.LOST))

    updated = await service.move_deal(seeded_deal.id, DealMove(stage_id=board["proposal"].id))

    assert updated.sale_status == SaleStatus.NEGOTIATION


@pytest.mark.asyncio
async def test_outcome_records_single_activity(service, repo, board, seeded_deal):
    """Won + stage move in one mutation yields exactly one activity."""
    await service.update_deal(
        seeded_deal.id, DealUpdate(sale_status=SaleStatus.WON, sale_reason="Signed"), actor_id=board["alice"].id
    )

    activities = await repo.list_activities(seeded_deal.id)
    assert [a.activity_type for a in activities] == ["sale_won"]
    assert activities[0].description == "Deal marked as won (Signed)"


@pytest.mark.asyncio
async def test_update_broadcasts_exactly_one_event(service, registry, board, seeded_deal, make_connection):
    observer = make_connection()
    await registry.connect(observer)

    await service.move_deal(seeded_deal.id, DealMove(stage_id=board["proposal"].id))

    assert observer.types() == ["deal:updated"]
    assert observer.sent[0]["data"]["resourceId"] == seeded_deal.id


# ── Persistence failures ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_database_error_maps_to_persistence_failed(service, repo, seeded_deal, make_connection, registry):
    observer = make_connection()
    await registry.connect(observer)
    repo.fail_with = OperationalError("UPDATE deals", {}, Exception("connection lost"))

    with pytest.raises(PersistenceFailedError):
        await service.update_deal(seeded_deal.id, DealUpdate(notes="x"))

    # A failed mutation reports nothing to observers.
    assert observer.sent == []


@pytest.mark.asyncio
async def test_integrity_error_maps_to_validation_failed(service, repo, seeded_deal):
    repo.fail_with = IntegrityError("UPDATE deals", {}, Exception("fk violation"))

    with pytest.raises(ValidationFailedError):
        await service.update_deal(seeded_deal.id, DealUpdate(user_id=999))


# ── Delete / reorder ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delete_then_get_is_not_found(service, registry, seeded_deal, make_connection):
    observer = make_connection()
    await registry.connect(observer)

    deleted = await service.delete_deal(seeded_deal.id)

    assert deleted.id == seeded_deal.id
    assert observer.types() == ["deal:deleted"]
    with pytest.raises(ResourceNotFoundError):
        await service.get_deal(seeded_deal.id)


@pytest.mark.asyncio
async def test_reorder_returns_updated_deals(service, board, seeded_deal):
    other = await service.create_deal(DealCreate(name="Second", stage_id=board["lead"].id, order=1))

    deals = await service.reorder_deals(
        DealReorder(orders=[DealOrderItem(id=seeded_deal.id, order=1), DealOrderItem(id=other.id, order=0)])
    )

    assert {d.id: d.order for d in deals} == {seeded_deal.id: 1, other.id: 0}


# ── Side records ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_quote_item_for_unknown_deal(service, board):
    with pytest.raises(ValidationFailedError):
        await service.add_quote_item(QuoteItemCreate(deal_id=404, description="X"))


@pytest.mark.asyncio
async def test_quote_item_lifecycle(service, repo, seeded_deal):
    item = await service.add_quote_item(QuoteItemCreate(deal_id=seeded_deal.id, description="Seat", quantity=2, unit_price=5))

    assert await service.list_quote_items(seeded_deal.id) == [item]
    await service.delete_quote_item(item.id)
    assert await service.list_quote_items(seeded_deal.id) == []
    types = [a.activity_type for a in await repo.list_activities(seeded_deal.id)]
    assert types == ["quote_item_removed", "quote_item_added"]


@pytest.mark.asyncio
async def test_delete_missing_quote_item(service, board):
    with pytest.raises(ResourceNotFoundError):
        await service.delete_quote_item(31337)


@pytest.mark.asyncio
async def test_manual_activity_attributed_to_actor(service, board, seeded_deal):
    activity = await service.create_activity(
        ActivityCreate(deal_id=seeded_deal.id, activity_type="call", description="Intro call"),
        actor_id=board["bob"].id,
    )
    assert activity.created_by == "bob@example.com"


@pytest.mark.asyncio
async def test_manual_activity_without_notifier_is_system(repo, seeded_deal):
    service = DealService(repo)
    activity = await service.create_activity(
        ActivityCreate(deal_id=seeded_deal.id, activity_type="email", description="Sent deck")
    )
    assert activity.created_by == "system"
