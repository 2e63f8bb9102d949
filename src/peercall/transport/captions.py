"""Caption channel to the relay service.

Receives CaptionEvent messages for one room and optionally carries raw
audio fragments upstream for server-side transcription.
"""

import json
import logging
from collections.abc import Callable

from pydantic import ValidationError

from src.peercall.errors import MalformedMessage
from src.peercall.transport.base import Connector, Frame, RoomChannel
from src.peercall.transport.protocol import CaptionEvent

logger = logging.getLogger(__name__)

CaptionHandler = Callable[[CaptionEvent], None]


class CaptionTransport(RoomChannel):
    """Caption websocket for a single room.

    Lifecycle is independent of the signaling channel; its closure is not
    terminal for the call.
    """

    channel_name = "captions"

    def __init__(
        self,
        url: str,
        room_id: str,
        *,
        connector: Connector | None = None,
        max_message_size: int = 2**20,
    ) -> None:
        super().__init__(url, room_id, connector=connector, max_message_size=max_message_size)
        self._handler: CaptionHandler | None = None
        self._fragments_sent = 0

    @property
    def fragments_sent(self) -> int:
        """Number of audio fragments handed to the channel."""
        return self._fragments_sent

    def on_caption(self, handler: CaptionHandler) -> None:
        """Register the inbound caption handler."""
        self._handler = handler

    def send_audio(self, fragment: bytes) -> bool:
        """Forward a raw audio fragment, fire-and-forget.

        Fragments are dropped unless the channel is open; stale audio is
        never queued.

        Returns:
            True if queued, False if dropped
        """
        if not fragment:
            return False
        queued = self._enqueue(fragment, queue_until_open=False)
        if queued:
            self._fragments_sent += 1
        return queued

    def _handle_frame(self, raw_message: Frame) -> None:
        try:
            event = decode_caption(raw_message)
        except MalformedMessage as e:
            logger.warning(
                "Dropping malformed caption message",
                extra={"room_id": self._room_id, "error": str(e)},
            )
            return

        if self._handler is not None:
            self._handler(event)


def decode_caption(raw_message: Frame) -> CaptionEvent:
    """Parse and validate one caption frame.

    Raises:
        MalformedMessage: If the frame is not a valid caption event
    """
    if isinstance(raw_message, bytes):
        raise MalformedMessage("Binary caption frame")

    try:
        data = json.loads(raw_message)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage(f"Caption must be an object, got {type(data).__name__}")

    try:
        return CaptionEvent.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid caption: {e.error_count()} validation error(s)") from e
