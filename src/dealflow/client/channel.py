"""Broadcast channel client.

Holds one WebSocket to the server's /ws endpoint, sends the register
handshake on every (re)connect when a user id is known, and hands each
recognised frame to a callback. Frames with unknown types are ignored.

Reconnection uses a fixed delay with unbounded attempts; a clean close by
the server counts as a disconnect like any other. is_live reflects whether
a connection is currently open and is advisory only: correctness comes
from polling, never from this flag.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_never, wait_fixed
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import WebSocketException

from src.dealflow.sync.messages import BroadcastMessage, RegisterMessage

logger = structlog.get_logger(__name__)


class ChannelClosed(Exception):
    """The server ended the connection without an error."""


_RECONNECT_ON = (OSError, WebSocketException, ChannelClosed)


class BroadcastListener:
    """Keeps a broadcast connection open and dispatches incoming frames.

    Args:
        url: ws:// or wss:// URL of the /ws endpoint.
        on_message: Callback (sync or async) for each recognised frame.
        user_id: Sent in the register handshake; None stays anonymous.
        reconnect_delay: Fixed seconds between reconnect attempts.
        on_status: Optional callback receiving the new is_live value.
        connect: websockets connect function; injectable for tests.
        sleep: Sleep used between attempts; injectable for tests.
    """

    def __init__(
        self,
        url: str,
        on_message: Callable[[BroadcastMessage], Any],
        user_id: int | None = None,
        reconnect_delay: float = 3.0,
        on_status: Callable[[bool], None] | None = None,
        connect: Callable[..., Any] = ws_connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._user_id = user_id
        self._reconnect_delay = reconnect_delay
        self._on_status = on_status
        self._connect = connect
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.is_live = False
        self.connections = 0

    def _set_live(self, live: bool) -> None:
        if live == self.is_live:
            return
        self.is_live = live
        if self._on_status is not None:
            self._on_status(live)

    def _before_sleep(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "channel.reconnecting",
            url=self._url,
            attempt=retry_state.attempt_number,
            delay=self._reconnect_delay,
            reason=type(exc).__name__ if exc else None,
        )

    async def run(self) -> None:
        """Connect and listen forever, reconnecting after any disconnect."""
        retrying = AsyncRetrying(
            sleep=self._sleep,
            wait=wait_fixed(self._reconnect_delay),
            stop=stop_never,
            retry=retry_if_exception_type(_RECONNECT_ON),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._listen_once()

    async def _listen_once(self) -> None:
        async with self._connect(self._url) as websocket:
            self.connections += 1
            self._set_live(True)
            logger.info("channel.connected", url=self._url, user_id=self._user_id)
            try:
                if self._user_id is not None:
                    await websocket.send(json.dumps(RegisterMessage(user_id=self._user_id).to_wire()))
                async for raw in websocket:
                    message = BroadcastMessage.parse(raw)
                    if message is None:
                        logger.debug("channel.frame_ignored")
                        continue
                    await self._dispatch(message)
            finally:
                self._set_live(False)
        raise ChannelClosed(f"broadcast channel {self._url} closed")

    async def _dispatch(self, message: BroadcastMessage) -> None:
        try:
            outcome = self._on_message(message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.warning("channel.handler_failed", message_type=message.type, exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_live(False)
