"""Tests for the broadcast wire format.

Covers BroadcastMessage parsing (unknown types and malformed frames are
dropped), ChangeEvent -> frame conversion with camelCase keys, and client
frame parsing for register/ping.
"""

from __future__ import annotations

import json

from src.dealflow.sync.messages import (
    CHANGE_TOPICS,
    BroadcastMessage,
    ChangeAction,
    ChangeEvent,
    PingMessage,
    RegisterMessage,
    Topic,
    parse_client_message,
    pong_message,
    registered_message,
)


# ── BroadcastMessage ─────────────────────────────────────────────────────────


def test_parse_known_topic():
    raw = json.dumps({"type": "deal:updated", "data": {"resourceId": 7}})

    message = BroadcastMessage.parse(raw)

    assert message is not None
    assert message.topic == Topic.DEAL_UPDATED
    assert message.data == {"resourceId": 7}


def test_parse_unknown_topic_is_ignored():
    """Frames with an unrecognised type are dropped, not raised."""
    assert BroadcastMessage.parse(json.dumps({"type": "board:exploded", "data": {}})) is None


def test_parse_malformed_frames():
    assert BroadcastMessage.parse("not json") is None
    assert BroadcastMessage.parse("[1, 2, 3]") is None
    assert BroadcastMessage.parse(json.dumps({"data": {}})) is None
    assert BroadcastMessage.parse(json.dumps({"type": "deal:created", "data": "oops"})) is None


def test_parse_missing_data_defaults_to_empty():
    message = BroadcastMessage.parse(json.dumps({"type": "pong"}))
    assert message is not None
    assert message.data == {}


def test_change_topics_exclude_control_frames():
    assert Topic.NOTIFICATION not in CHANGE_TOPICS
    assert Topic.REGISTERED not in CHANGE_TOPICS
    assert Topic.PONG not in CHANGE_TOPICS
    assert Topic.NOTES_UPDATED in CHANGE_TOPICS


# ── ChangeEvent ──────────────────────────────────────────────────────────────


def test_change_event_to_message_uses_camel_case():
    event = ChangeEvent(
        topic=Topic.PIPELINE_CHANGED,
        resource_type="deal",
        resource_id=12,
        action=ChangeAction.MOVED,
        deal_id=12,
        changed_fields=["pipeline_id", "stage_id"],
        activity_recorded=True,
    )

    wire = event.to_message().to_wire()

    assert wire["type"] == "pipeline:changed"
    data = wire["data"]
    assert "topic" not in data
    assert data["resourceType"] == "deal"
    assert data["resourceId"] == 12
    assert data["action"] == "moved"
    assert data["dealId"] == 12
    assert data["changedFields"] == ["pipeline_id", "stage_id"]
    assert data["activityRecorded"] is True
    assert isinstance(data["timestamp"], str)


def test_change_event_bulk_has_no_resource_id():
    event = ChangeEvent(
        topic=Topic.DEALS_REORDERED,
        resource_type="deal",
        action=ChangeAction.MOVED,
        related_ids=[1, 2, 3],
    )
    data = event.to_message().data
    assert data["resourceId"] is None
    assert data["relatedIds"] == [1, 2, 3]


def test_wire_frame_round_trips_through_parse():
    event = ChangeEvent(topic=Topic.DEAL_DELETED, resource_type="deal", resource_id=4, action=ChangeAction.DELETED)
    raw = json.dumps(event.to_message().to_wire())

    parsed = BroadcastMessage.parse(raw)

    assert parsed is not None
    assert parsed.topic == Topic.DEAL_DELETED
    assert parsed.data["resourceId"] == 4


# ── Client frames ────────────────────────────────────────────────────────────


def test_parse_register_message():
    message = parse_client_message(json.dumps({"type": "register", "userId": 42}))
    assert isinstance(message, RegisterMessage)
    assert message.user_id == 42


def test_register_requires_user_id():
    assert parse_client_message(json.dumps({"type": "register"})) is None
    assert parse_client_message(json.dumps({"type": "register", "userId": "abc"})) is None


def test_parse_ping_variants():
    assert isinstance(parse_client_message("ping"), PingMessage)
    assert isinstance(parse_client_message(json.dumps({"type": "ping"})), PingMessage)


def test_unknown_client_frames_ignored():
    assert parse_client_message(json.dumps({"type": "subscribe"})) is None
    assert parse_client_message("hello") is None
    assert parse_client_message("42") is None


def test_register_to_wire():
    assert RegisterMessage(user_id=5).to_wire() == {"type": "register", "userId": 5}


def test_control_frames():
    assert registered_message(9).to_wire() == {"type": "registered", "data": {"userId": 9}}
    assert pong_message().to_wire() == {"type": "pong", "data": {}}
