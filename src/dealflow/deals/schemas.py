"""Pydantic schemas for the deal board -- reads, writes and enums.

Defines all structured types crossing the repository and HTTP boundary:
- Enums: SaleStatus, StageType, ActivityType
- Board layout: UserRead, PipelineRead, StageRead
- Deals: DealCreate, DealUpdate, DealMove, DealReorder, DealFilter, DealRead
- Side records: ActivityCreate/Read, QuoteItemCreate/Read, NotificationCreate/Read

JSON field names are camelCase (``stageId``, ``updatedAt``) to match the
browser client; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enums ───────────────────────────────────────────────────────────────────


class SaleStatus(str, Enum):
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


class StageType(str, Enum):
    """Stage role on the board; completed and lost are terminal."""

    NORMAL = "normal"
    COMPLETED = "completed"
    LOST = "lost"


class ActivityType(str, Enum):
    """Activity types the server records on its own.

    Manually logged activities may carry any type string (call, email, ...).
    """

    STAGE_CHANGE = "stage_change"
    PIPELINE_CHANGE = "pipeline_change"
    SALE_WON = "sale_won"
    SALE_LOST = "sale_lost"
    QUOTE_ITEM_ADDED = "quote_item_added"
    QUOTE_ITEM_REMOVED = "quote_item_removed"


# ── Board Layout ────────────────────────────────────────────────────────────


class UserRead(CamelModel):
    id: int
    email: str
    name: str | None = None
    role: str = "user"


class PipelineRead(CamelModel):
    id: int
    name: str
    is_default: bool = False


class StageRead(CamelModel):
    id: int
    pipeline_id: int
    name: str
    order: int = 0
    stage_type: StageType = StageType.NORMAL


# ── Deals ───────────────────────────────────────────────────────────────────


class DealCreate(CamelModel):
    """Schema for creating a deal; the pipeline is taken from the stage."""

    name: str = Field(min_length=1, max_length=300)
    stage_id: int
    value: float | None = Field(default=None, ge=0)
    notes: str | None = None
    order: int = 0
    user_id: int | None = None


class DealUpdate(CamelModel):
    """Partial update; only fields present in the request are applied.

    Callers read ``model_dump(exclude_unset=True)`` so an explicit null
    (e.g. clearing notes) is distinguishable from an absent field.
    """

    name: str | None = Field(default=None, min_length=1, max_length=300)
    value: float | None = Field(default=None, ge=0)
    notes: str | None = None
    stage_id: int | None = None
    pipeline_id: int | None = None
    order: int | None = None
    sale_status: SaleStatus | None = None
    sale_reason: str | None = None
    loss_reason: str | None = None
    user_id: int | None = None


class DealMove(CamelModel):
    """Drag-and-drop move on the board."""

    stage_id: int
    order: int = 0


class DealOrderItem(CamelModel):
    id: int
    order: int


class DealReorder(CamelModel):
    orders: list[DealOrderItem] = Field(min_length=1)


class DealFilter(CamelModel):
    pipeline_id: int | None = None
    stage_id: int | None = None


class DealRead(CamelModel):
    id: int
    name: str
    pipeline_id: int
    stage_id: int
    order: int = 0
    value: float | None = None
    notes: str | None = None
    sale_status: SaleStatus = SaleStatus.NEGOTIATION
    sale_reason: str | None = None
    loss_reason: str | None = None
    user_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime


# ── Activities ──────────────────────────────────────────────────────────────


class ActivityCreate(CamelModel):
    deal_id: int
    activity_type: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1)
    created_by: str | None = None


class ActivityRead(CamelModel):
    id: int
    deal_id: int
    activity_type: str
    description: str
    created_by: str = "system"
    created_at: datetime | None = None


# ── Quote Items ─────────────────────────────────────────────────────────────


class QuoteItemCreate(CamelModel):
    deal_id: int
    description: str = Field(min_length=1, max_length=500)
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(default=0.0, ge=0)


class QuoteItemRead(CamelModel):
    id: int
    deal_id: int
    description: str
    quantity: int
    unit_price: float
    created_at: datetime | None = None


# ── Notifications ───────────────────────────────────────────────────────────


class NotificationCreate(CamelModel):
    user_id: int
    deal_id: int | None = None
    pipeline_id: int | None = None
    type: str
    title: str
    message: str


class NotificationRead(CamelModel):
    id: int
    user_id: int
    deal_id: int | None = None
    pipeline_id: int | None = None
    type: str
    title: str
    message: str
    is_read: bool = False
    created_at: datetime | None = None
