"""Client-side merge of server state into local state.

The Reconciler is the single place fetched or pushed resources enter the
client. For each resource it keeps:
- the last accepted server payload and its updatedAt ordering token
- an EditingGuard per guarded field (notes by default)
- optimistic field values from an in-flight mutation, if any (guarded
  fields are written into their guard instead, so a live draft is never
  covered by the overlay)

The displayed view is server data, overlaid with guarded local values,
overlaid with optimistic values. Responses older than the accepted
updatedAt are discarded whatever order they arrive in, and applying the
same payload twice leaves the view unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from src.dealflow.client.guard import EditingGuard

logger = structlog.get_logger(__name__)

ResourceKey = tuple[str, int]


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"


@dataclass
class ApplyResult:
    key: ResourceKey
    outcome: ApplyOutcome
    changed_fields: list[str] = field(default_factory=list)
    diverged_fields: list[str] = field(default_factory=list)
    created: bool = False


@dataclass
class ResourceRecord:
    resource_type: str
    resource_id: int
    server: dict[str, Any]
    updated_at: datetime | None
    guards: dict[str, EditingGuard] = field(default_factory=dict)
    pending: dict[str, Any] | None = None
    # guarded field -> (value before the save, optimistic value)
    guard_rollback: dict[str, tuple[Any, Any]] = field(default_factory=dict)

    def view(self) -> dict[str, Any]:
        data = dict(self.server)
        for name, guard in self.guards.items():
            data[name] = guard.local_value
        if self.pending:
            data.update(self.pending)
        return data


def parse_updated_at(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class Reconciler:
    """Merges authoritative payloads into per-resource local state.

    Args:
        guarded_fields: Fields protected by an EditingGuard.
        idle_timeout: Guard idle window in seconds.
        clock: Monotonic clock shared by all guards.
        id_field / updated_at_field: Payload keys for identity and ordering.
    """

    def __init__(
        self,
        guarded_fields: Iterable[str] = ("notes",),
        idle_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        id_field: str = "id",
        updated_at_field: str = "updatedAt",
    ) -> None:
        self._guarded_fields = tuple(guarded_fields)
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._id_field = id_field
        self._updated_at_field = updated_at_field
        self._records: dict[ResourceKey, ResourceRecord] = {}

    # ── Incoming server state ───────────────────────────────────────────

    def apply(self, resource_type: str, payload: dict[str, Any]) -> ApplyResult:
        """Merge one authoritative payload.

        A payload whose updatedAt is older than the accepted one is
        rejected as STALE. Equal timestamps are re-applied, which is a
        no-op for the view.
        """
        resource_id = int(payload[self._id_field])
        key = (resource_type, resource_id)
        incoming_at = parse_updated_at(payload.get(self._updated_at_field))
        record = self._records.get(key)

        if record is None:
            record = ResourceRecord(
                resource_type=resource_type,
                resource_id=resource_id,
                server={},
                updated_at=None,
                guards={
                    name: EditingGuard(name, idle_timeout=self._idle_timeout, clock=self._clock)
                    for name in self._guarded_fields
                },
            )
            self._records[key] = record
            created = True
        else:
            created = False
            if self._is_stale(record, incoming_at):
                logger.debug(
                    "reconciler.stale_rejected",
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
                return ApplyResult(key, ApplyOutcome.STALE)

        before = record.view()
        for name, guard in record.guards.items():
            guard.server_value(payload.get(name))
        record.server = dict(payload)
        if incoming_at is not None:
            record.updated_at = incoming_at
        after = record.view()

        changed = sorted(k for k in after.keys() | before.keys() if before.get(k) != after.get(k))
        return ApplyResult(
            key,
            ApplyOutcome.APPLIED,
            changed_fields=[] if created else changed,
            diverged_fields=self._diverged(record),
            created=created,
        )

    def apply_snapshot(
        self, resource_type: str, payloads: Iterable[dict[str, Any]]
    ) -> list[ApplyResult]:
        """Merge a full list fetch; resources missing from it are removed.

        Resources with a pending optimistic mutation are kept even when
        missing, since the mutation's response decides their fate.
        """
        results = [self.apply(resource_type, p) for p in payloads]
        seen = {r.key for r in results}
        for key in [k for k in self._records if k[0] == resource_type and k not in seen]:
            if self._records[key].pending is None:
                del self._records[key]
        return results

    def remove(self, resource_type: str, resource_id: int) -> bool:
        return self._records.pop((resource_type, resource_id), None) is not None

    def expire_idle(self) -> list[tuple[ResourceKey, str]]:
        """Run idle expiry on every guard; returns the (key, field) pairs that expired."""
        expired = []
        for key, record in self._records.items():
            for name, guard in record.guards.items():
                if guard.expire_if_idle():
                    expired.append((key, name))
        return expired

    # ── Local editing ───────────────────────────────────────────────────

    def guard(self, resource_type: str, resource_id: int, field_name: str) -> EditingGuard:
        return self._record(resource_type, resource_id).guards[field_name]

    def user_input(self, resource_type: str, resource_id: int, field_name: str, value: Any) -> None:
        self.guard(resource_type, resource_id, field_name).user_input(value)

    def refresh_from_server(self, resource_type: str, resource_id: int, field_name: str) -> Any:
        """Manual divergence resolution for one field."""
        value = self.guard(resource_type, resource_id, field_name).refresh_from_server()
        logger.info(
            "reconciler.refreshed_from_server",
            resource_type=resource_type,
            resource_id=resource_id,
            field=field_name,
        )
        return value

    # ── Optimistic mutations ────────────────────────────────────────────

    def begin_optimistic(self, resource_type: str, resource_id: int, fields: dict[str, Any]) -> None:
        record = self._record(resource_type, resource_id)
        overlay = {}
        for name, value in fields.items():
            guard = record.guards.get(name)
            if guard is None:
                overlay[name] = value
            elif guard.local_value != value:
                previous = record.guard_rollback.get(name, (guard.local_value, None))[0]
                record.guard_rollback[name] = (previous, value)
                guard.local_value = value
        record.pending = {**(record.pending or {}), **overlay}

    def commit_mutation(
        self,
        resource_type: str,
        response: dict[str, Any],
        saved: dict[str, Any] | None = None,
    ) -> ApplyResult:
        """Replace optimistic state with the mutation response.

        ``saved`` maps each guarded field that was sent to the value sent.
        A response older than what is already shown is dropped like any
        other stale payload and the guards keep their current values.
        """
        key = (resource_type, int(response[self._id_field]))
        record = self._records.get(key)
        if record is None:
            return self.apply(resource_type, response)

        record.pending = None
        record.guard_rollback.clear()
        if self._is_stale(record, parse_updated_at(response.get(self._updated_at_field))):
            logger.debug(
                "reconciler.stale_response_dropped",
                resource_type=resource_type,
                resource_id=key[1],
            )
            return ApplyResult(key, ApplyOutcome.STALE, diverged_fields=self._diverged(record))

        for name, sent in (saved or {}).items():
            if name in record.guards:
                record.guards[name].saved(sent, response.get(name))
        return self.apply(resource_type, response)

    def rollback(self, resource_type: str, resource_id: int) -> None:
        """Drop optimistic values; the view reverts to the last accepted server state."""
        record = self._records.get((resource_type, resource_id))
        if record is not None:
            record.pending = None
            for name, (previous, optimistic) in record.guard_rollback.items():
                guard = record.guards[name]
                if guard.local_value == optimistic:
                    guard.local_value = previous
            record.guard_rollback.clear()
            logger.info(
                "reconciler.rolled_back",
                resource_type=resource_type,
                resource_id=resource_id,
            )

    def has_pending(self) -> bool:
        return any(r.pending is not None for r in self._records.values())

    # ── Views ───────────────────────────────────────────────────────────

    def view(self, resource_type: str, resource_id: int) -> dict[str, Any] | None:
        record = self._records.get((resource_type, resource_id))
        return record.view() if record else None

    def views(self, resource_type: str) -> list[dict[str, Any]]:
        return [r.view() for k, r in self._records.items() if k[0] == resource_type]

    def diverged_fields(self, resource_type: str, resource_id: int) -> list[str]:
        record = self._records.get((resource_type, resource_id))
        return self._diverged(record) if record else []

    def _diverged(self, record: ResourceRecord) -> list[str]:
        return [name for name, guard in record.guards.items() if guard.diverged]

    def _is_stale(self, record: ResourceRecord, incoming_at: datetime | None) -> bool:
        return (
            record.updated_at is not None
            and incoming_at is not None
            and incoming_at < record.updated_at
        )

    def _record(self, resource_type: str, resource_id: int) -> ResourceRecord:
        try:
            return self._records[(resource_type, resource_id)]
        except KeyError:
            raise KeyError(f"{resource_type} {resource_id} is not loaded") from None
