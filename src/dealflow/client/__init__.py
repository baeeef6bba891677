"""Client side of realtime board synchronization.

Exports:
    DealSyncApi: httpx REST client mapping failures to MutationError.
    EditingGuard: Per-field state machine protecting in-progress edits.
    Reconciler: Merges server payloads into local state.
    RefreshSink: Debounced single entry point for refreshes.
    PollScheduler: Fixed-interval fetch loop with an enabled predicate.
    BroadcastListener: WebSocket client with fixed-delay reconnect.
    DealBoardSync: Session wiring all of the above for the deal board.
"""

from __future__ import annotations

from src.dealflow.client.api import DealSyncApi
from src.dealflow.client.channel import BroadcastListener
from src.dealflow.client.guard import EditingGuard, FieldState
from src.dealflow.client.poller import PollScheduler
from src.dealflow.client.reconciler import ApplyOutcome, ApplyResult, Reconciler
from src.dealflow.client.refresh import RefreshSink
from src.dealflow.client.session import DealBoardSync

__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "BroadcastListener",
    "DealBoardSync",
    "DealSyncApi",
    "EditingGuard",
    "FieldState",
    "PollScheduler",
    "Reconciler",
    "RefreshSink",
]
