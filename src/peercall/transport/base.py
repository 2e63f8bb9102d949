"""Base websocket channel to the relay service.

Both relay channels (signaling and captions) share the same lifecycle: one
websocket per room, a reader task delivering inbound frames in arrival
order, a writer task draining a non-blocking outbound queue, and a single
closure notification with no reconnection.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection, connect

from src.peercall.errors import InvalidState, TransportClosed

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[ClientConnection]]
CloseHandler = Callable[[], None]
Frame = str | bytes


class ChannelState(Enum):
    """Channel lifecycle states.

    State Transitions:
    - IDLE → CONNECTING (open() called)
    - CONNECTING → OPEN (websocket established)
    - * → CLOSED (local close, remote close, or connect failure)
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class RoomChannel(ABC):
    """One websocket channel to the relay, scoped to a single room.

    Subclasses decode inbound frames in ``_handle_frame`` and may send an
    initial frame in ``_on_open`` before queued outbound frames are flushed.
    """

    channel_name = "channel"

    def __init__(
        self,
        url: str,
        room_id: str,
        *,
        connector: Connector | None = None,
        max_message_size: int = 2**20,
    ) -> None:
        """Initialize channel.

        Args:
            url: Websocket URL to connect to
            room_id: Room this channel is scoped to
            connector: Coroutine factory returning a websocket connection
                (defaults to websockets' asyncio client)
            max_message_size: Maximum inbound message size in bytes
        """
        self._url = url
        self._room_id = room_id
        self._connector: Connector = connector or connect
        self._max_message_size = max_message_size
        self._websocket: Any = None
        self._state = ChannelState.IDLE
        self._closing = False
        self._outbound: asyncio.Queue[Frame] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._close_handler: CloseHandler | None = None

    @property
    def room_id(self) -> str:
        """Room this channel is scoped to."""
        return self._room_id

    @property
    def url(self) -> str:
        """Websocket URL."""
        return self._url

    @property
    def state(self) -> ChannelState:
        """Current channel state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if the channel is open for sending."""
        return self._state == ChannelState.OPEN

    def on_closed(self, handler: CloseHandler) -> None:
        """Register the handler notified once when the relay closes the channel."""
        self._close_handler = handler

    async def open(self) -> None:
        """Connect to the relay and start the reader/writer tasks.

        Raises:
            InvalidState: If the channel was already opened
            ConnectionError: If the websocket cannot be established
        """
        if self._state != ChannelState.IDLE:
            raise InvalidState(f"{self.channel_name} channel already {self._state.value}")

        self._state = ChannelState.CONNECTING
        logger.info(
            "Connecting relay channel",
            extra={"channel": self.channel_name, "room_id": self._room_id, "url": self._url},
        )

        try:
            self._websocket = await self._connector(self._url, max_size=self._max_message_size)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._state = ChannelState.CLOSED
            logger.error(
                "Failed to connect relay channel",
                extra={"channel": self.channel_name, "room_id": self._room_id, "error": str(e)},
            )
            raise ConnectionError(f"{self.channel_name} channel connect failed: {e}") from e

        if self._closing:
            # close() ran while the connection was being established
            await self._websocket.close()
            return

        self._state = ChannelState.OPEN
        logger.info(
            "Relay channel open",
            extra={"channel": self.channel_name, "room_id": self._room_id},
        )

        await self._on_open()

        self._writer_task = asyncio.create_task(self._writer_loop())
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def _on_open(self) -> None:
        """Hook run after connect, before queued frames are flushed."""

    def _enqueue(self, frame: Frame, *, queue_until_open: bool) -> bool:
        """Queue an outbound frame without blocking.

        Args:
            frame: Text or binary frame
            queue_until_open: Keep the frame if the channel has not opened yet

        Returns:
            True if the frame was queued, False if it was dropped
        """
        if self._state == ChannelState.CLOSED:
            logger.debug(
                "Dropping outbound frame, channel is closed",
                extra={
                    "channel": self.channel_name,
                    "room_id": self._room_id,
                    "error_kind": TransportClosed.kind.value,
                },
            )
            return False

        if self._state != ChannelState.OPEN and not queue_until_open:
            logger.debug(
                "Dropping outbound frame before channel open",
                extra={"channel": self.channel_name, "room_id": self._room_id},
            )
            return False

        self._outbound.put_nowait(frame)
        return True

    async def _writer_loop(self) -> None:
        """Drain the outbound queue onto the websocket in order."""
        try:
            while True:
                frame = await self._outbound.get()
                await self._websocket.send(frame)
        except websockets.exceptions.ConnectionClosed:
            logger.debug(
                "Writer stopped, connection closed",
                extra={"channel": self.channel_name, "room_id": self._room_id},
            )
        except asyncio.CancelledError:
            pass

    async def _reader_loop(self) -> None:
        """Deliver inbound frames in arrival order until the relay closes."""
        try:
            async for raw_message in self._websocket:
                self._handle_frame(raw_message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(
                "Relay channel closed with error",
                extra={"channel": self.channel_name, "room_id": self._room_id, "error": str(e)},
            )
        except asyncio.CancelledError:
            return
        self._mark_closed()

    @abstractmethod
    def _handle_frame(self, raw_message: Frame) -> None:
        """Decode one inbound frame and deliver it."""

    def _mark_closed(self) -> None:
        """Record remote closure and notify the close handler once."""
        if self._state == ChannelState.CLOSED:
            return

        self._state = ChannelState.CLOSED
        if self._writer_task is not None:
            self._writer_task.cancel()

        if self._closing:
            return

        logger.info(
            "Relay channel closed by remote",
            extra={"channel": self.channel_name, "room_id": self._room_id},
        )
        if self._close_handler is not None:
            self._close_handler()

    async def close(self) -> None:
        """Close the channel.

        Idempotent. Local closure is not reported to the close handler and
        frames still queued are discarded.
        """
        if self._closing:
            return

        self._closing = True
        was_open = self._state == ChannelState.OPEN
        self._state = ChannelState.CLOSED

        for task in (self._reader_task, self._writer_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if was_open and self._websocket is not None:
            logger.info(
                "Closing relay channel",
                extra={"channel": self.channel_name, "room_id": self._room_id},
            )
            try:
                await self._websocket.close()
            except Exception as e:
                logger.warning(
                    "Error during channel close",
                    extra={"channel": self.channel_name, "room_id": self._room_id, "error": str(e)},
                )

        while not self._outbound.empty():
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
