"""Call controller.

Orchestrates one room visit: local media, the peer connection and its
negotiation state machine, the signaling and caption channels, and the
caption timeline. All inbound relay messages and platform notifications
become typed events on a single queue drained by one dispatcher task, so
negotiation steps run strictly one at a time in arrival order.

Routing (inbound signaling):
- peer-joined   → create offer, send ``offer``
- offer         → install remote offer, create answer, send ``answer``
- answer        → install remote answer
- ice-candidate → apply or buffer remote candidate
- peer-left     → mark disconnected (peer connection left to the platform)
"""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from aiortc.mediastreams import MediaStreamError
from pydantic import BaseModel, ValidationError

from src.peercall.captions import CaptionAggregator
from src.peercall.config import CallConfig, IceServerConfig
from src.peercall.errors import ErrorKind, InvalidState, MalformedMessage, PermissionDenied
from src.peercall.events import (
    CallEvent,
    ConnectionStateChanged,
    EventSink,
    LocalCandidateDiscovered,
    RemoteTrackReceived,
    SignalingClosed,
    SignalingReceived,
)
from src.peercall.media import LocalMedia, PcmEncoder
from src.peercall.negotiation import NegotiationState, PeerSession
from src.peercall.peer.aiortc_peer import AiortcPeerConnection
from src.peercall.peer.base import PeerConnectionHandle
from src.peercall.transport.captions import CaptionTransport
from src.peercall.transport.protocol import (
    CaptionEvent,
    IceCandidate,
    SessionDescription,
    SignalingEnvelope,
)
from src.peercall.transport.signaling import SignalingTransport
from src.peercall.utils.logging import log_event

logger = logging.getLogger(__name__)

PeerFactory = Callable[[list[IceServerConfig], EventSink], PeerConnectionHandle]
SignalingFactory = Callable[[str, str], SignalingTransport]
CaptionFactory = Callable[[str, str], CaptionTransport]

ModelT = TypeVar("ModelT", bound=BaseModel)

START_FAILED_MESSAGE = "Failed to initialize call. Please check your connection and try again."


class ConnectionStatus(Enum):
    """Presentation-facing call status."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class CallObserver:
    """Presentation-layer notifications.

    Every method defaults to a no-op; override the ones you render.
    """

    def on_connected(self) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_caption(self, event: CaptionEvent) -> None:
        pass

    def on_remote_track(self, kind: str, track: Any) -> None:
        pass

    def on_error(self, kind: ErrorKind, message: str) -> None:
        pass


class CallController:
    """Owns every resource of a single room visit.

    Lifecycle: start(room_id) once, toggle_audio()/toggle_video() any time,
    end() on every exit path (idempotent).
    """

    def __init__(
        self,
        config: CallConfig | None = None,
        observer: CallObserver | None = None,
        *,
        media: LocalMedia | None = None,
        peer_factory: PeerFactory | None = None,
        signaling_factory: SignalingFactory | None = None,
        caption_factory: CaptionFactory | None = None,
    ) -> None:
        """Initialize call controller.

        Args:
            config: Call configuration (defaults if omitted)
            observer: Presentation-layer notification target
            media: Local media owner (built from config.media if omitted)
            peer_factory: Builds the platform peer connection
            signaling_factory: Builds the signaling channel from (url, room_id)
            caption_factory: Builds the caption channel from (url, room_id)
        """
        self._config = config or CallConfig()
        self._observer = observer or CallObserver()
        self._media = media or LocalMedia(self._config.media)
        self._peer_factory: PeerFactory = peer_factory or AiortcPeerConnection
        self._signaling_factory: SignalingFactory = signaling_factory or self._default_signaling
        self._caption_factory: CaptionFactory = caption_factory or self._default_captions

        self._captions = CaptionAggregator(self_speaker=self._config.captions.self_speaker)
        self._room_id: str | None = None
        self._session: PeerSession | None = None
        self._signaling: SignalingTransport | None = None
        self._caption_channel: CaptionTransport | None = None

        self._events: asyncio.Queue[CallEvent] = asyncio.Queue()
        self._dispatcher: asyncio.Task[None] | None = None
        self._audio_forwarder: asyncio.Task[None] | None = None

        self._status = ConnectionStatus.IDLE
        self._started = False
        self._ended = False
        self._remote_tracks: list[RemoteTrackReceived] = []

    def _default_signaling(self, url: str, room_id: str) -> SignalingTransport:
        return SignalingTransport(
            url, room_id, max_message_size=self._config.relay.max_message_size
        )

    def _default_captions(self, url: str, room_id: str) -> CaptionTransport:
        return CaptionTransport(url, room_id, max_message_size=self._config.relay.max_message_size)

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def session(self) -> PeerSession | None:
        """Negotiation state machine of the current call."""
        return self._session

    @property
    def negotiation_state(self) -> NegotiationState | None:
        return self._session.state if self._session is not None else None

    @property
    def captions(self) -> CaptionAggregator:
        return self._captions

    @property
    def remote_tracks(self) -> list[RemoteTrackReceived]:
        return list(self._remote_tracks)

    @property
    def is_active(self) -> bool:
        """Check if the call is started and not yet torn down."""
        return self._started and not self._ended

    async def start(self, room_id: str) -> None:
        """Join a room and get ready to negotiate.

        Acquires local media, creates the peer connection, starts the
        dispatcher and opens both relay channels. Any failure runs the full
        teardown before the error propagates.

        Raises:
            InvalidState: If the controller was already started
            PermissionDenied: If local media capture is refused
            ConnectionError: If the signaling channel cannot be opened
        """
        if self._started:
            raise InvalidState("Call already started")
        if not room_id:
            raise ValueError("room_id must not be empty")

        self._started = True
        self._room_id = room_id
        self._set_status(ConnectionStatus.CONNECTING)
        relay = self._config.relay

        logger.info("Starting call", extra={"room_id": room_id})

        try:
            tracks = self._media.acquire()

            connection = self._peer_factory(self._config.ice_servers, self.post)
            self._session = PeerSession(connection, session_id=room_id)
            self._session.on_local_candidate(self._send_local_candidate)
            for track in tracks:
                connection.add_track(track)

            self._dispatcher = asyncio.create_task(self._dispatch_loop())

            self._signaling = self._signaling_factory(relay.signaling_url(), room_id)
            self._signaling.on_envelope(lambda envelope: self.post(SignalingReceived(envelope)))
            self._signaling.on_closed(lambda: self.post(SignalingClosed()))

            captions_url = relay.captions_url(room_id, self._config.captions.target_language)
            self._caption_channel = self._caption_factory(captions_url, room_id)
            self._caption_channel.on_caption(self._on_caption)
            self._caption_channel.on_closed(self._on_caption_channel_closed)

            await self._signaling.open()
            await self._open_captions()

        except PermissionDenied as e:
            logger.error("Local media access denied", extra={"room_id": room_id, "error": str(e)})
            self._observer.on_error(e.kind, str(e))
            await self.end()
            raise
        except Exception as e:
            logger.exception("Call start failed", extra={"room_id": room_id, "error": str(e)})
            self._observer.on_error(ErrorKind.START_FAILED, START_FAILED_MESSAGE)
            await self.end()
            raise
        except asyncio.CancelledError:
            logger.warning("Call start cancelled", extra={"room_id": room_id})
            await self.end()
            raise

        logger.info("Call started", extra={"room_id": room_id})
        log_event("call_started", {"room_id": room_id, "tracks": len(tracks)})

    async def _open_captions(self) -> None:
        """Open the caption channel; captions are optional for the call."""
        assert self._caption_channel is not None
        try:
            await self._caption_channel.open()
        except ConnectionError as e:
            logger.warning(
                "Captions unavailable for this call",
                extra={"room_id": self._room_id, "error": str(e)},
            )
            return

        if self._config.captions.forward_audio:
            track = self._media.subscribe_audio()
            if track is not None:
                self._audio_forwarder = asyncio.create_task(self._forward_audio(track))

    def toggle_audio(self, enabled: bool) -> None:
        """Enable or mute the local microphone track."""
        self._media.set_audio_enabled(enabled)

    def toggle_video(self, enabled: bool) -> None:
        """Enable or blank the local camera track."""
        self._media.set_video_enabled(enabled)

    def export_transcript(self) -> str:
        """Caption timeline as a JSON array (see CaptionAggregator.export)."""
        return self._captions.export()

    async def end(self) -> None:
        """Tear the call down. Idempotent.

        Order: stop event processing, close the peer session, close both
        relay channels, release local media. The transcript is cleared last.
        """
        if self._ended:
            return
        self._ended = True

        logger.info("Ending call", extra={"room_id": self._room_id})

        current = asyncio.current_task()
        for task in (self._audio_forwarder, self._dispatcher):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._discard_pending_events()

        if self._session is not None:
            await self._session.close()

        for channel in (self._signaling, self._caption_channel):
            if channel is not None:
                await channel.close()

        self._media.release()

        self._set_status(ConnectionStatus.DISCONNECTED)
        caption_count = len(self._captions)
        self._captions.clear()
        self._remote_tracks.clear()

        logger.info("Call ended", extra={"room_id": self._room_id})
        log_event("call_ended", {"room_id": self._room_id, "captions": caption_count})

    def post(self, event: CallEvent) -> None:
        """Queue an event for the dispatcher. Dropped once the call has ended."""
        if self._ended:
            logger.debug("Dropping event after end", extra={"event": type(event).__name__})
            return
        self._events.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._events.join()

    async def _dispatch_loop(self) -> None:
        """Apply queued events one at a time, in arrival order."""
        while not self._ended:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except MalformedMessage as e:
                logger.warning(
                    "Dropping malformed signaling payload",
                    extra={"room_id": self._room_id, "error": str(e)},
                )
            except InvalidState as e:
                logger.error(
                    "Negotiation operation out of order",
                    exc_info=True,
                    extra={"room_id": self._room_id, "error": str(e)},
                )
                self._observer.on_error(e.kind, str(e))
            except Exception as e:
                # Steady-state negotiation errors never end the call
                logger.exception(
                    "Error handling call event",
                    extra={"room_id": self._room_id, "event": type(event).__name__, "error": str(e)},
                )
            finally:
                self._events.task_done()

    def _discard_pending_events(self) -> None:
        while not self._events.empty():
            try:
                self._events.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._events.task_done()

    async def _handle_event(self, event: CallEvent) -> None:
        if isinstance(event, SignalingReceived):
            await self._route_envelope(event.envelope)

        elif isinstance(event, LocalCandidateDiscovered):
            if self._session is not None:
                self._session.emit_local_candidate(event.candidate)

        elif isinstance(event, RemoteTrackReceived):
            self._remote_tracks.append(event)
            logger.info(
                "Remote media arrived",
                extra={"room_id": self._room_id, "kind": event.kind},
            )
            self._observer.on_remote_track(event.kind, event.track)
            self._set_status(ConnectionStatus.CONNECTED)

        elif isinstance(event, ConnectionStateChanged):
            if event.state in ("failed", "closed"):
                self._set_status(ConnectionStatus.DISCONNECTED)

        elif isinstance(event, SignalingClosed):
            logger.warning("Signaling channel closed, ending call", extra={"room_id": self._room_id})
            self._observer.on_error(ErrorKind.TRANSPORT_CLOSED, "Signaling connection lost")
            await self.end()

    async def _route_envelope(self, envelope: SignalingEnvelope) -> None:
        """Map one inbound envelope onto PeerSession operations."""
        if envelope.room_id != self._room_id:
            logger.warning(
                "Dropping envelope for foreign room",
                extra={"room_id": self._room_id, "envelope_room": envelope.room_id, "kind": envelope.kind},
            )
            return

        session = self._session
        if session is None:
            return

        kind = envelope.kind
        logger.debug("Routing envelope", extra={"room_id": self._room_id, "kind": kind})

        if kind == "peer-joined":
            offer = await session.create_offer()
            self._send(SignalingEnvelope.offer(envelope.room_id, offer))

        elif kind == "offer":
            offer = _decode_payload(envelope, SessionDescription)
            if offer.type != "offer":
                raise MalformedMessage(f"offer envelope carries a '{offer.type}' description")
            await session.handle_remote_offer(offer)
            answer = await session.create_answer()
            self._send(SignalingEnvelope.answer(envelope.room_id, answer))

        elif kind == "answer":
            answer = _decode_payload(envelope, SessionDescription)
            if answer.type != "answer":
                raise MalformedMessage(f"answer envelope carries a '{answer.type}' description")
            await session.handle_remote_answer(answer)

        elif kind == "ice-candidate":
            candidate = _decode_payload(envelope, IceCandidate)
            await session.add_remote_candidate(candidate)

        elif kind == "peer-left":
            logger.info("Peer left the room", extra={"room_id": self._room_id})
            self._set_status(ConnectionStatus.DISCONNECTED)

        else:
            logger.debug("Ignoring envelope", extra={"room_id": self._room_id, "kind": kind})

    def _send(self, envelope: SignalingEnvelope) -> None:
        if self._signaling is None:
            return
        self._signaling.send(envelope)

    def _send_local_candidate(self, candidate: IceCandidate) -> None:
        if self._room_id is None:
            return
        self._send(SignalingEnvelope.ice_candidate(self._room_id, candidate))

    def _on_caption(self, event: CaptionEvent) -> None:
        if self._ended:
            return
        self._captions.record(event)
        self._observer.on_caption(event)

    def _on_caption_channel_closed(self) -> None:
        logger.warning("Caption channel closed", extra={"room_id": self._room_id})

    async def _forward_audio(self, track: Any) -> None:
        """Stream local microphone PCM to the caption channel while unmuted."""
        encoder = PcmEncoder(self._config.captions.audio_sample_rate)
        try:
            while True:
                frame = await track.recv()
                if not self._media.audio_enabled or self._caption_channel is None:
                    continue
                self._caption_channel.send_audio(encoder.encode(frame))
        except MediaStreamError:
            logger.info("Local audio ended, stopping caption forwarding")
        except asyncio.CancelledError:
            pass

    def _set_status(self, status: ConnectionStatus) -> None:
        """Update status and notify the observer on change."""
        if status == self._status:
            return

        old_status = self._status
        self._status = status
        logger.info(
            "Call status changed",
            extra={"room_id": self._room_id, "from_status": old_status.value, "to_status": status.value},
        )

        if status == ConnectionStatus.CONNECTED:
            self._observer.on_connected()
        elif status == ConnectionStatus.DISCONNECTED and old_status != ConnectionStatus.IDLE:
            self._observer.on_disconnected()


def _decode_payload(envelope: SignalingEnvelope, model: type[ModelT]) -> ModelT:
    """Decode an envelope payload into a typed model.

    Raises:
        MalformedMessage: If the payload does not validate
    """
    try:
        return model.model_validate(envelope.payload)
    except ValidationError as e:
        raise MalformedMessage(
            f"Invalid {envelope.kind} payload: {e.error_count()} validation error(s)"
        ) from e
