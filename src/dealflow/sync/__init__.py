"""Server side of realtime board synchronization.

Exports:
    Topic: Fixed vocabulary of broadcast frame types.
    ChangeEvent: One committed mutation, ready to push.
    BroadcastMessage: The ``{type, data}`` wire frame.
    BroadcastRegistry: Interface over live observer connections.
    ConnectionRegistry: In-process registry.
    RedisBroadcastRegistry: Registry relayed through Redis pub/sub.
    ChangeNotifier: Activity logging and event fan-out after mutations.
"""

from __future__ import annotations

from src.dealflow.sync.messages import BroadcastMessage, ChangeAction, ChangeEvent, Topic
from src.dealflow.sync.notifier import ChangeNotifier
from src.dealflow.sync.registry import (
    BroadcastRegistry,
    ConnectionRegistry,
    RedisBroadcastRegistry,
)

__all__ = [
    "BroadcastMessage",
    "BroadcastRegistry",
    "ChangeAction",
    "ChangeEvent",
    "ChangeNotifier",
    "ConnectionRegistry",
    "RedisBroadcastRegistry",
    "Topic",
]
