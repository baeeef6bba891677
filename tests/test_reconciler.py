"""Tests for the client Reconciler.

Covers stale-response rejection, idempotent apply, snapshot removal,
guarded notes and optimistic mutations with commit/rollback.
"""

from __future__ import annotations

import pytest

from src.dealflow.client.reconciler import ApplyOutcome, Reconciler, parse_updated_at

DEAL = "deal"


def _payload(deal_id: int = 1, second: int = 0, **fields) -> dict:
    data = {
        "id": deal_id,
        "name": "Acme",
        "stageId": 10,
        "notes": "server notes",
        "updatedAt": f"2024-01-01T00:00:{second:02d}Z",
    }
    data.update(fields)
    return data


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def reconciler(clock):
    return Reconciler(guarded_fields=("notes",), idle_timeout=10.0, clock=clock)


def test_first_apply_creates_record(reconciler):
    result = reconciler.apply(DEAL, _payload())

    assert result.outcome == ApplyOutcome.APPLIED
    assert result.created is True
    assert reconciler.view(DEAL, 1)["notes"] == "server notes"


def test_older_response_is_rejected(reconciler):
    reconciler.apply(DEAL, _payload(second=5, stageId=11))

    result = reconciler.apply(DEAL, _payload(second=3, stageId=10))

    assert result.outcome == ApplyOutcome.STALE
    assert reconciler.view(DEAL, 1)["stageId"] == 11


def test_apply_is_idempotent(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    view = reconciler.view(DEAL, 1)

    result = reconciler.apply(DEAL, _payload(second=1))

    assert result.outcome == ApplyOutcome.APPLIED
    assert result.changed_fields == []
    assert reconciler.view(DEAL, 1) == view


def test_changed_fields_reported(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    result = reconciler.apply(DEAL, _payload(second=2, name="Acme Corp"))
    assert result.changed_fields == ["name", "updatedAt"]


def test_snapshot_removes_missing_records(reconciler):
    reconciler.apply_snapshot(DEAL, [_payload(1), _payload(2)])

    reconciler.apply_snapshot(DEAL, [_payload(2, second=1)])

    assert reconciler.view(DEAL, 1) is None
    assert [v["id"] for v in reconciler.views(DEAL)] == [2]


def test_snapshot_keeps_pending_records(reconciler):
    reconciler.apply_snapshot(DEAL, [_payload(1)])
    reconciler.begin_optimistic(DEAL, 1, {"stageId": 12})

    reconciler.apply_snapshot(DEAL, [])

    assert reconciler.view(DEAL, 1)["stageId"] == 12


def test_guarded_notes_survive_refresh_while_editing(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.user_input(DEAL, 1, "notes", "my draft")

    result = reconciler.apply(DEAL, _payload(second=2, notes="someone else"))

    assert reconciler.view(DEAL, 1)["notes"] == "my draft"
    assert result.diverged_fields == ["notes"]
    assert reconciler.diverged_fields(DEAL, 1) == ["notes"]


def test_unguarded_fields_still_update_while_editing_notes(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.user_input(DEAL, 1, "notes", "my draft")

    reconciler.apply(DEAL, _payload(second=2, name="Renamed"))

    view = reconciler.view(DEAL, 1)
    assert view["name"] == "Renamed"
    assert view["notes"] == "my draft"


def test_notes_update_once_idle(reconciler, clock):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.user_input(DEAL, 1, "notes", "my draft")
    clock.now = 11

    reconciler.apply(DEAL, _payload(second=2, notes="someone else"))

    assert reconciler.view(DEAL, 1)["notes"] == "someone else"


def test_expire_idle_reports_expired_guards(reconciler, clock):
    reconciler.apply(DEAL, _payload())
    reconciler.user_input(DEAL, 1, "notes", "x")
    clock.now = 20

    assert reconciler.expire_idle() == [((DEAL, 1), "notes")]
    assert reconciler.expire_idle() == []


def test_optimistic_then_rollback(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.begin_optimistic(DEAL, 1, {"stageId": 99})
    assert reconciler.view(DEAL, 1)["stageId"] == 99
    assert reconciler.has_pending()

    reconciler.rollback(DEAL, 1)

    assert reconciler.view(DEAL, 1)["stageId"] == 10
    assert not reconciler.has_pending()


def test_commit_replaces_optimistic_state(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.user_input(DEAL, 1, "notes", "typed")
    reconciler.begin_optimistic(DEAL, 1, {"notes": "typed"})

    result = reconciler.commit_mutation(DEAL, _payload(second=2, notes="typed"), saved={"notes": "typed"})

    assert result.outcome == ApplyOutcome.APPLIED
    assert not reconciler.has_pending()
    assert reconciler.view(DEAL, 1)["notes"] == "typed"
    assert reconciler.diverged_fields(DEAL, 1) == []


def test_poll_older_than_commit_is_ignored(reconciler):
    """A poll response fetched before the save lands after it: discarded."""
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.commit_mutation(DEAL, _payload(second=5, stageId=20))

    result = reconciler.apply(DEAL, _payload(second=3, stageId=10))

    assert result.outcome == ApplyOutcome.STALE
    assert reconciler.view(DEAL, 1)["stageId"] == 20


def test_commit_older_than_refetch_does_not_regress_notes(reconciler):
    """Own save answered at T2 arrives after a broadcast refetch applied T3."""
    reconciler.apply(DEAL, _payload(second=1, notes="old"))
    reconciler.begin_optimistic(DEAL, 1, {"notes": "mine"})
    reconciler.apply(DEAL, _payload(second=3, notes="theirs"))

    result = reconciler.commit_mutation(DEAL, _payload(second=2, notes="mine"), saved={"notes": "mine"})

    assert result.outcome == ApplyOutcome.STALE
    assert reconciler.view(DEAL, 1)["notes"] == "theirs"
    assert reconciler.guard(DEAL, 1, "notes").last_known_server_value == "theirs"
    assert not reconciler.has_pending()


def test_typing_during_save_keeps_newer_draft(reconciler):
    reconciler.apply(DEAL, _payload(second=1))
    reconciler.user_input(DEAL, 1, "notes", "abc")
    reconciler.begin_optimistic(DEAL, 1, {"notes": "abc"})
    reconciler.user_input(DEAL, 1, "notes", "abcd")
    assert reconciler.view(DEAL, 1)["notes"] == "abcd"

    reconciler.commit_mutation(DEAL, _payload(second=2, notes="abc"), saved={"notes": "abc"})

    guard = reconciler.guard(DEAL, 1, "notes")
    assert reconciler.view(DEAL, 1)["notes"] == "abcd"
    assert guard.is_editing is True
    assert guard.last_known_server_value == "abc"


def test_optimistic_notes_shown_then_rolled_back(reconciler):
    reconciler.apply(DEAL, _payload(second=1, notes="old"))
    reconciler.begin_optimistic(DEAL, 1, {"notes": "new", "stageId": 12})
    assert reconciler.view(DEAL, 1)["notes"] == "new"

    reconciler.rollback(DEAL, 1)

    view = reconciler.view(DEAL, 1)
    assert view["notes"] == "old"
    assert view["stageId"] == 10


def test_unknown_resource_guard_raises(reconciler):
    with pytest.raises(KeyError):
        reconciler.guard(DEAL, 404, "notes")


def test_parse_updated_at():
    assert parse_updated_at("2024-01-01T00:00:00Z").year == 2024
    assert parse_updated_at("garbage") is None
    assert parse_updated_at(None) is None
