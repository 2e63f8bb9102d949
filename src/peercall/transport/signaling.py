"""Signaling channel to the relay service.

Carries SignalingEnvelope messages for one room. On establishment the
channel announces itself with a ``join`` envelope; the relay answers with
``peer-joined`` once a second participant is present.
"""

import json
import logging
from collections.abc import Callable

from pydantic import ValidationError

from src.peercall.errors import MalformedMessage
from src.peercall.transport.base import Connector, Frame, RoomChannel
from src.peercall.transport.protocol import SignalingEnvelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[SignalingEnvelope], None]


class SignalingTransport(RoomChannel):
    """Signaling websocket for a single room.

    Inbound envelopes are delivered to one registered handler in arrival
    order, without reordering or deduplication. Outbound sends made before
    the channel opens are queued and flushed right after ``join``.
    """

    channel_name = "signaling"

    def __init__(
        self,
        url: str,
        room_id: str,
        *,
        connector: Connector | None = None,
        max_message_size: int = 2**20,
    ) -> None:
        super().__init__(url, room_id, connector=connector, max_message_size=max_message_size)
        self._handler: EnvelopeHandler | None = None

    def on_envelope(self, handler: EnvelopeHandler) -> None:
        """Register the inbound envelope handler."""
        self._handler = handler

    async def _on_open(self) -> None:
        """Announce the room before anything else goes out."""
        await self._websocket.send(SignalingEnvelope.join(self._room_id).to_json())
        logger.info("Joined room", extra={"room_id": self._room_id})

    def send(self, envelope: SignalingEnvelope) -> bool:
        """Queue an envelope for delivery.

        Never blocks and never raises for a closed channel.

        Args:
            envelope: Envelope to send

        Returns:
            True if queued, False if dropped because the channel is closed
        """
        queued = self._enqueue(envelope.to_json(), queue_until_open=True)
        if queued:
            logger.debug(
                "Signaling envelope queued",
                extra={"room_id": self._room_id, "kind": envelope.kind},
            )
        return queued

    def _handle_frame(self, raw_message: Frame) -> None:
        try:
            envelope = decode_envelope(raw_message)
        except MalformedMessage as e:
            logger.warning(
                "Dropping malformed signaling message",
                extra={"room_id": self._room_id, "error": str(e)},
            )
            return

        logger.debug(
            "Signaling envelope received",
            extra={"room_id": self._room_id, "kind": envelope.kind},
        )
        if self._handler is not None:
            self._handler(envelope)


def decode_envelope(raw_message: Frame) -> SignalingEnvelope:
    """Parse and validate one signaling frame.

    Raises:
        MalformedMessage: If the frame is not a valid envelope
    """
    try:
        data = json.loads(raw_message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage(f"Envelope must be an object, got {type(data).__name__}")

    try:
        return SignalingEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid envelope: {e.error_count()} validation error(s)") from e
