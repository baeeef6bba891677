"""Per-field editing guard.

Keeps an in-progress edit from being silently overwritten by a value pushed
or polled from the server. One guard per (resource, field) per client.

States:
    IDLE      incoming server values replace the local value
    EDITING   user typed within the idle window; incoming values are stored
              as last_known_server_value but never replace local_value
    DIVERGED  EDITING, and the stored server value differs from local_value

Transitions:
    IDLE --user_input--> EDITING
    EDITING --idle timeout--> IDLE (local value retained)
    EDITING --server value != local (non-empty)--> DIVERGED
    DIVERGED --refresh_from_server--> IDLE (local := server value)
    DIVERGED --idle timeout--> IDLE (diverged flag stays until save/next value)
    IDLE --server value--> IDLE (local := server value)
    EDITING --saved, typed since send--> EDITING (draft kept)

Empty or missing server values never count as divergence, and while
editing they are ignored entirely.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FieldState(str, Enum):
    IDLE = "idle"
    EDITING = "editing"
    DIVERGED = "diverged"


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


@dataclass
class EditingGuard:
    """Editing state for one field.

    Attributes:
        field_key: Field name the guard protects (e.g. "notes").
        idle_timeout: Seconds without input after which editing ends.
        clock: Monotonic clock; injectable for tests.
        local_value: What the user sees and will save.
        last_known_server_value: Most recent value received from the server.
        is_editing: True between a keystroke and idle expiry.
        diverged: Server holds a different non-empty value than local.
        guard_expiry: Clock reading at which is_editing clears.
    """

    field_key: str
    idle_timeout: float = 10.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    local_value: Any = None
    last_known_server_value: Any = None
    is_editing: bool = False
    diverged: bool = False
    guard_expiry: float | None = None

    @property
    def state(self) -> FieldState:
        self.expire_if_idle()
        if not self.is_editing:
            return FieldState.IDLE
        return FieldState.DIVERGED if self.diverged else FieldState.EDITING

    def user_input(self, value: Any) -> None:
        """Record a keystroke: update local value and restart the idle timer."""
        self.local_value = value
        self.is_editing = True
        self.guard_expiry = self.clock() + self.idle_timeout
        if self.last_known_server_value == value:
            self.diverged = False

    def expire_if_idle(self) -> bool:
        """Clear is_editing once the idle window has passed. Returns True on expiry."""
        if self.is_editing and self.guard_expiry is not None and self.clock() >= self.guard_expiry:
            self.is_editing = False
            self.guard_expiry = None
            return True
        return False

    def server_value(self, incoming: Any) -> bool:
        """Offer a value from the server.

        Returns:
            True if local_value was replaced, False if the guard kept the
            local edit.
        """
        self.expire_if_idle()

        if self.is_editing:
            if _is_empty(incoming):
                return False
            self.last_known_server_value = incoming
            self.diverged = incoming != self.local_value
            return False

        self.last_known_server_value = incoming
        self.local_value = incoming
        self.diverged = False
        return True

    def refresh_from_server(self) -> Any:
        """Manual resolution: adopt the last known server value."""
        self.local_value = self.last_known_server_value
        self.is_editing = False
        self.diverged = False
        self.guard_expiry = None
        return self.local_value

    def saved(self, sent_value: Any, server_value: Any) -> bool:
        """A save of ``sent_value`` succeeded with ``server_value`` in the response.

        If the user kept typing while the save was in flight, the newer
        draft and its editing window are kept and the response only becomes
        the last known server value.

        Returns:
            True if the response was adopted as the local value.
        """
        self.last_known_server_value = server_value
        if self.local_value != sent_value:
            self.diverged = not _is_empty(server_value) and server_value != self.local_value
            return False

        self.local_value = server_value
        self.is_editing = False
        self.diverged = False
        self.guard_expiry = None
        return True
