"""Observer connection registry for the broadcast channel.

Tracks live WebSocket connections and which user id, if any, each one has
registered as. Two addressing modes:
- broadcast_all: every live connection, registered or not (board state)
- send_to_subject: every connection registered as one user (notifications)

Delivery is at-most-once. Each send is bounded by a timeout; a connection
whose send fails or times out is dropped from the registry and the rest of
the fan-out continues. Nothing is queued for later.

ConnectionRegistry keeps everything in-process. RedisBroadcastRegistry
publishes through a Redis channel so every worker process delivers to its
own local connections; call sites use the BroadcastRegistry interface and
do not know which one they hold.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog

from src.dealflow.sync.messages import BroadcastMessage

logger = structlog.get_logger(__name__)


class ObserverConnection(Protocol):
    """The part of a WebSocket the registry needs."""

    async def send_json(self, data: Any) -> None: ...


class BroadcastRegistry(ABC):
    """Interface used by the WebSocket endpoint and ChangeNotifier."""

    @abstractmethod
    async def connect(self, connection: ObserverConnection) -> None:
        """Track a freshly accepted connection (global events only)."""

    @abstractmethod
    async def register(self, connection: ObserverConnection, user_id: int) -> None:
        """Bind ``connection`` to ``user_id`` for targeted delivery."""

    @abstractmethod
    async def disconnect(self, connection: ObserverConnection) -> None:
        """Forget ``connection``. Safe to call twice."""

    @abstractmethod
    async def broadcast_all(self, message: BroadcastMessage) -> int:
        """Deliver to every live connection. Returns deliveries attempted or made."""

    @abstractmethod
    async def send_to_subject(self, user_id: int, message: BroadcastMessage) -> int:
        """Deliver to every connection registered as ``user_id``."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Connection counts for health reporting."""

    async def start(self) -> None:
        """Start background work (no-op unless the backend needs it)."""

    async def stop(self) -> None:
        """Stop background work."""


# ── In-process registry ─────────────────────────────────────────────────────


class ConnectionRegistry(BroadcastRegistry):
    """In-process registry of live observer connections.

    Args:
        send_timeout: Seconds one send may take before the connection is
            considered dead.
    """

    def __init__(self, send_timeout: float = 2.0) -> None:
        self._send_timeout = send_timeout
        self._connections: set[ObserverConnection] = set()
        self._by_subject: dict[int, set[ObserverConnection]] = {}
        self._subject_of: dict[ObserverConnection, int] = {}

    async def connect(self, connection: ObserverConnection) -> None:
        self._connections.add(connection)
        logger.info("registry.connected", total_connections=len(self._connections))

    async def register(self, connection: ObserverConnection, user_id: int) -> None:
        """Bind a connection to a user id, replacing any earlier binding.

        A connection that registers without having been connected is
        tracked as well, so ordering between accept and register never
        loses it.
        """
        self._connections.add(connection)
        previous = self._subject_of.get(connection)
        if previous is not None and previous != user_id:
            self._unbind(connection, previous)
        self._subject_of[connection] = user_id
        self._by_subject.setdefault(user_id, set()).add(connection)
        logger.info(
            "registry.registered",
            user_id=user_id,
            user_connections=len(self._by_subject[user_id]),
        )

    async def disconnect(self, connection: ObserverConnection) -> None:
        self._drop(connection)
        logger.info("registry.disconnected", total_connections=len(self._connections))

    def _unbind(self, connection: ObserverConnection, user_id: int) -> None:
        connections = self._by_subject.get(user_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._by_subject[user_id]

    def _drop(self, connection: ObserverConnection) -> None:
        self._connections.discard(connection)
        user_id = self._subject_of.pop(connection, None)
        if user_id is not None:
            self._unbind(connection, user_id)

    def is_connected(self, user_id: int) -> bool:
        return bool(self._by_subject.get(user_id))

    def stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "registered_users": len(self._by_subject),
            "anonymous_connections": len(self._connections) - len(self._subject_of),
        }

    async def broadcast_all(self, message: BroadcastMessage) -> int:
        return await self.deliver_local(list(self._connections), message)

    async def send_to_subject(self, user_id: int, message: BroadcastMessage) -> int:
        return await self.deliver_local(list(self._by_subject.get(user_id, ())), message)

    # ── Local delivery ──────────────────────────────────────────────────

    async def deliver_local(
        self, targets: list[ObserverConnection], message: BroadcastMessage
    ) -> int:
        """Send ``message`` to ``targets`` concurrently.

        Returns:
            Number of successful sends. Failed connections are dropped.
        """
        if not targets:
            return 0

        data = message.to_wire()
        results = await asyncio.gather(
            *(self._send_one(conn, data) for conn in targets)
        )

        dead = [conn for conn, ok in zip(targets, results) if not ok]
        for conn in dead:
            self._drop(conn)
        if dead:
            logger.warning(
                "registry.dead_connections_dropped",
                message_type=message.type,
                dropped=len(dead),
            )
        return len(targets) - len(dead)

    async def _send_one(self, connection: ObserverConnection, data: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(data), timeout=self._send_timeout)
            return True
        except Exception:
            logger.debug("registry.send_failed", exc_info=True)
            return False


# ── Redis-relayed registry ──────────────────────────────────────────────────


class RedisBroadcastRegistry(ConnectionRegistry):
    """Registry that relays broadcasts through Redis pub/sub.

    Outgoing messages are published as an envelope on ``channel``; a relay
    task in every process subscribes to the same channel and delivers each
    envelope to that process's local connections. If publishing fails the
    message is delivered locally so the publishing process's observers
    still see it.

    Args:
        redis_client: redis.asyncio client.
        channel: Pub/sub channel name shared by all workers.
        send_timeout: Per-connection send bound.
        poll_timeout: Seconds the relay waits on each get_message call.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        channel: str = "dealflow:broadcast",
        send_timeout: float = 2.0,
        poll_timeout: float = 1.0,
    ) -> None:
        super().__init__(send_timeout=send_timeout)
        self._redis = redis_client
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._relay_task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._relay_task is None:
            self._relay_task = asyncio.create_task(self._relay_loop())
            logger.info("registry.relay_started", channel=self._channel)

    async def stop(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
            logger.info("registry.relay_stopped", channel=self._channel)

    async def broadcast_all(self, message: BroadcastMessage) -> int:
        return await self._publish({"target": "all", "message": message.to_wire()}, message)

    async def send_to_subject(self, user_id: int, message: BroadcastMessage) -> int:
        return await self._publish(
            {"target": "user", "userId": user_id, "message": message.to_wire()},
            message,
            user_id=user_id,
        )

    async def _publish(
        self, envelope: dict[str, Any], message: BroadcastMessage, user_id: int | None = None
    ) -> int:
        try:
            return await self._redis.publish(self._channel, json.dumps(envelope))
        except Exception:
            logger.warning(
                "registry.publish_failed",
                channel=self._channel,
                message_type=message.type,
                exc_info=True,
            )
        if user_id is None:
            return await super().broadcast_all(message)
        return await super().send_to_subject(user_id, message)

    async def handle_envelope(self, raw: str | bytes) -> int:
        """Deliver one relayed envelope to local connections."""
        try:
            envelope = json.loads(raw)
            message = BroadcastMessage.model_validate(envelope["message"])
        except (ValueError, KeyError, TypeError):
            logger.warning("registry.bad_envelope", channel=self._channel)
            return 0

        if envelope.get("target") == "user":
            user_id = envelope.get("userId")
            if not isinstance(user_id, int):
                return 0
            return await super().send_to_subject(user_id, message)
        return await super().broadcast_all(message)

    async def _relay_loop(self) -> None:
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(self._channel)
                while True:
                    item = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self._poll_timeout
                    )
                    if item is None or item.get("type") != "message":
                        continue
                    await self.handle_envelope(item["data"])
            except asyncio.CancelledError:
                await pubsub.aclose()
                raise
            except Exception:
                logger.warning("registry.relay_failed", channel=self._channel, exc_info=True)
                await pubsub.aclose()
                await asyncio.sleep(1.0)
