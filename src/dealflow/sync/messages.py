"""Broadcast wire format for the deal board push channel.

Every server-to-client frame is ``{"type": <topic>, "data": {...}}``. The
topic vocabulary is fixed (Topic); receivers ignore frames whose type they
do not recognise. Client-to-server frames are ``register`` (bind the
connection to a user id) and ``ping``.

ChangeEvent is the in-process description of one committed mutation. It is
never persisted; to_message() turns it into the frame that goes on the wire.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class Topic(str, Enum):
    """Frame types pushed by the server."""

    DEAL_CREATED = "deal:created"
    DEAL_UPDATED = "deal:updated"
    DEAL_DELETED = "deal:deleted"
    DEALS_REORDERED = "deals:reordered"
    NOTES_UPDATED = "notes:updated"
    PIPELINE_CHANGED = "pipeline:changed"
    QUOTE_UPDATED = "quote:updated"
    ACTIVITIES_UPDATED = "activities:updated"
    NOTIFICATION = "notification"
    REGISTERED = "registered"
    PONG = "pong"


# Topics that describe a change to shared board state.
CHANGE_TOPICS = frozenset({
    Topic.DEAL_CREATED,
    Topic.DEAL_UPDATED,
    Topic.DEAL_DELETED,
    Topic.DEALS_REORDERED,
    Topic.NOTES_UPDATED,
    Topic.PIPELINE_CHANGED,
    Topic.QUOTE_UPDATED,
    Topic.ACTIVITIES_UPDATED,
})


class ChangeAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MOVED = "moved"


class ChangeEvent(BaseModel):
    """One committed mutation, ready to fan out to observers.

    Attributes:
        topic: Broadcast topic chosen for the mutation.
        resource_type: "deal", "quote_item", "lead_activity", ...
        resource_id: Primary key of the mutated row (None for bulk changes).
        action: created / updated / deleted / moved.
        timestamp: UTC time the event was built (after commit).
        deal_id: Owning deal, so clients can scope refetches.
        related_ids: Every deal touched by a bulk change.
        changed_fields: Deal columns whose value actually changed.
        activity_recorded: Whether a derived activity row was written.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    topic: Topic
    resource_type: str
    resource_id: int | None = None
    action: ChangeAction
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deal_id: int | None = None
    related_ids: list[int] = Field(default_factory=list)
    changed_fields: list[str] = Field(default_factory=list)
    activity_recorded: bool = False

    def to_message(self) -> BroadcastMessage:
        data = self.model_dump(mode="json", by_alias=True, exclude={"topic"})
        return BroadcastMessage(type=self.topic.value, data=data)


class BroadcastMessage(BaseModel):
    """A ``{type, data}`` frame."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to dict for JSON WebSocket transmission."""
        return self.model_dump(mode="json")

    @property
    def topic(self) -> Topic | None:
        try:
            return Topic(self.type)
        except ValueError:
            return None

    @classmethod
    def parse(cls, raw: str | bytes) -> BroadcastMessage | None:
        """Parse an incoming frame; None for malformed JSON or unknown topics."""
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None
        try:
            message = cls.model_validate(payload)
        except ValidationError:
            return None
        if message.topic is None:
            return None
        return message


# ── Client → Server ─────────────────────────────────────────────────────────


class RegisterMessage(BaseModel):
    """Registration handshake binding a connection to a user id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["register"] = "register"
    user_id: int

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"


def parse_client_message(raw: str) -> RegisterMessage | PingMessage | None:
    """Parse a client frame. A bare ``ping`` string counts as a ping."""
    if raw.strip() == "ping":
        return PingMessage()
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    msg_type = payload.get("type")
    try:
        if msg_type == "register":
            return RegisterMessage.model_validate(payload)
        if msg_type == "ping":
            return PingMessage()
    except ValidationError:
        return None
    return None


def registered_message(user_id: int) -> BroadcastMessage:
    return BroadcastMessage(type=Topic.REGISTERED.value, data={"userId": user_id})


def pong_message() -> BroadcastMessage:
    return BroadcastMessage(type=Topic.PONG.value, data={})
