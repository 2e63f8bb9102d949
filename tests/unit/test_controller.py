"""Unit tests for the call controller.

Tests lifecycle (start/end), envelope routing onto the negotiation state
machine, platform event handling, caption routing, and audio forwarding.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from fractions import Fraction
from typing import Any

import numpy as np
import pytest
import pytest_asyncio
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from src.peercall.config import CallConfig, CaptionConfig
from src.peercall.controller import CallController, ConnectionStatus
from src.peercall.errors import ErrorKind, InvalidState, PermissionDenied
from src.peercall.events import (
    ConnectionStateChanged,
    LocalCandidateDiscovered,
    RemoteTrackReceived,
    SignalingReceived,
)
from src.peercall.negotiation import NegotiationState
from src.peercall.transport.captions import CaptionTransport
from src.peercall.transport.protocol import SignalingEnvelope
from src.peercall.transport.signaling import SignalingTransport
from tests.helpers.fakes import (
    FakeConnector,
    FakeMedia,
    FakePeerConnection,
    FakeWebSocket,
    RecordingObserver,
    candidate,
    wait_until,
)

ROOM = "room-1"
OFFER_PAYLOAD = {"type": "offer", "sdp": "v=0 remote offer"}
ANSWER_PAYLOAD = {"type": "answer", "sdp": "v=0 remote answer"}


class CallHarness:
    """CallController wired to in-memory websockets, peer and media."""

    def __init__(
        self,
        media: FakeMedia | None = None,
        signaling_error: Exception | None = None,
        captions_error: Exception | None = None,
        config: CallConfig | None = None,
    ) -> None:
        self.observer = RecordingObserver()
        self.media = media or FakeMedia()
        self.peers: list[FakePeerConnection] = []
        self.signaling_ws = FakeWebSocket()
        self.captions_ws = FakeWebSocket()
        self.signaling_connector = FakeConnector(self.signaling_ws, error=signaling_error)
        self.captions_connector = FakeConnector(self.captions_ws, error=captions_error)
        self.controller = CallController(
            config or CallConfig(),
            self.observer,
            media=self.media,  # type: ignore[arg-type]
            peer_factory=self._make_peer,
            signaling_factory=lambda url, room: SignalingTransport(
                url, room, connector=self.signaling_connector
            ),
            caption_factory=lambda url, room: CaptionTransport(
                url, room, connector=self.captions_connector
            ),
        )

    def _make_peer(self, ice_servers: Any, emit: Any) -> FakePeerConnection:
        peer = FakePeerConnection(ice_servers, emit, name=f"peer-{len(self.peers)}")
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> FakePeerConnection:
        return self.peers[0]

    async def deliver(self, data: dict[str, Any]) -> None:
        """Route one inbound envelope and wait for it to be processed."""
        self.controller.post(SignalingReceived(SignalingEnvelope.model_validate(data)))
        await self.controller.drain()

    def sent(self) -> list[dict[str, Any]]:
        return self.signaling_ws.sent_json()

    def sent_kinds(self) -> list[str]:
        return [frame["kind"] for frame in self.sent()]


@pytest_asyncio.fixture
async def harness() -> AsyncIterator[CallHarness]:
    harness = CallHarness()
    yield harness
    await harness.controller.end()


@pytest_asyncio.fixture
async def started(harness: CallHarness) -> CallHarness:
    await harness.controller.start(ROOM)
    await wait_until(lambda: harness.sent_kinds() == ["join"])
    return harness


class TestStart:
    """Test call start."""

    @pytest.mark.asyncio
    async def test_start_joins_room(self, started: CallHarness) -> None:
        controller = started.controller

        assert controller.room_id == ROOM
        assert controller.status == ConnectionStatus.CONNECTING
        assert controller.negotiation_state == NegotiationState.IDLE
        assert controller.is_active
        assert started.peer.tracks == ["audio-track", "video-track"]
        assert started.signaling_connector.calls[0][0] == "ws://localhost:8000/ws/signaling"
        assert started.captions_connector.calls[0][0] == "ws://localhost:8000/ws/captions/room-1?lang=en"
        assert started.sent() == [{"kind": "join", "roomId": ROOM}]

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, started: CallHarness) -> None:
        with pytest.raises(InvalidState):
            await started.controller.start(ROOM)

        assert len(started.peers) == 1

    @pytest.mark.asyncio
    async def test_empty_room_rejected(self, harness: CallHarness) -> None:
        with pytest.raises(ValueError):
            await harness.controller.start("")

    @pytest.mark.asyncio
    async def test_permission_denied_tears_down(self) -> None:
        harness = CallHarness(media=FakeMedia(deny=True))

        with pytest.raises(PermissionDenied):
            await harness.controller.start(ROOM)

        assert harness.observer.errors[0][0] == ErrorKind.PERMISSION_DENIED
        assert harness.media.release_count == 1
        assert harness.signaling_connector.calls == []
        assert harness.peers == []
        assert not harness.controller.is_active

    @pytest.mark.asyncio
    async def test_signaling_failure_tears_down(self) -> None:
        harness = CallHarness(signaling_error=OSError("connection refused"))

        with pytest.raises(ConnectionError):
            await harness.controller.start(ROOM)

        assert harness.observer.errors == [
            (ErrorKind.START_FAILED, "Failed to initialize call. Please check your connection and try again.")
        ]
        assert harness.peer.closed
        assert harness.media.release_count == 1
        assert harness.controller.session is not None
        assert harness.controller.session.is_closed
        assert harness.controller.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_cancelled_start_tears_down(self) -> None:
        harness = CallHarness()
        harness.signaling_connector.gate = asyncio.Event()

        task = asyncio.create_task(harness.controller.start(ROOM))
        await wait_until(lambda: len(harness.signaling_connector.calls) == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert harness.media.release_count == 1
        assert harness.peer.closed
        assert harness.controller.session is not None
        assert harness.controller.session.is_closed
        assert harness.controller.status == ConnectionStatus.DISCONNECTED
        assert not harness.controller.is_active
        assert harness.observer.errors == []

    @pytest.mark.asyncio
    async def test_caption_channel_failure_not_fatal(self) -> None:
        harness = CallHarness(captions_error=OSError("no captions"))

        await harness.controller.start(ROOM)

        assert harness.controller.is_active
        assert harness.observer.errors == []

        await harness.controller.end()

    @pytest.mark.asyncio
    async def test_caption_language_sent_to_relay(self) -> None:
        harness = CallHarness(config=CallConfig(captions=CaptionConfig(target_language="fr")))

        await harness.controller.start(ROOM)

        assert harness.captions_connector.calls[0][0] == "ws://localhost:8000/ws/captions/room-1?lang=fr"

        await harness.controller.end()


class TestRouting:
    """Test inbound envelope routing."""

    @pytest.mark.asyncio
    async def test_peer_joined_sends_offer(self, started: CallHarness) -> None:
        await started.deliver({"kind": "peer-joined", "roomId": ROOM})
        await wait_until(lambda: len(started.sent()) == 2)

        offer = started.sent()[1]
        assert offer == {
            "kind": "offer",
            "roomId": ROOM,
            "payload": {"type": "offer", "sdp": "v=0 offer from peer-0"},
        }
        assert started.controller.negotiation_state == NegotiationState.HAVE_LOCAL_OFFER

    @pytest.mark.asyncio
    async def test_offer_sends_answer(self, started: CallHarness) -> None:
        await started.deliver({"kind": "offer", "roomId": ROOM, "payload": OFFER_PAYLOAD})
        await wait_until(lambda: len(started.sent()) == 2)

        assert started.sent()[1]["kind"] == "answer"
        assert started.sent()[1]["payload"]["type"] == "answer"
        assert started.controller.negotiation_state == NegotiationState.STABLE
        assert started.peer.calls[:3] == [
            "set_remote_description:offer",
            "create_answer",
            "set_local_description:answer",
        ]

    @pytest.mark.asyncio
    async def test_answer_completes_offer(self, started: CallHarness) -> None:
        await started.deliver({"kind": "peer-joined", "roomId": ROOM})
        await started.deliver({"kind": "answer", "roomId": ROOM, "payload": ANSWER_PAYLOAD})

        assert started.controller.negotiation_state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_early_candidates_applied_after_answer(self, started: CallHarness) -> None:
        for n in (1, 2):
            await started.deliver(
                {"kind": "ice-candidate", "roomId": ROOM, "payload": candidate(n).model_dump()}
            )

        assert started.peer.applied == []
        assert started.controller.session is not None
        assert len(started.controller.session.pending_candidates) == 2

        await started.deliver({"kind": "offer", "roomId": ROOM, "payload": OFFER_PAYLOAD})

        assert started.peer.applied == [candidate(1), candidate(2)]
        assert started.controller.session.pending_candidates == ()

    @pytest.mark.asyncio
    async def test_foreign_room_dropped(self, started: CallHarness) -> None:
        await started.deliver({"kind": "peer-joined", "roomId": "other-room"})
        await started.deliver({"kind": "offer", "roomId": "other-room", "payload": OFFER_PAYLOAD})

        assert started.controller.negotiation_state == NegotiationState.IDLE
        assert started.peer.calls == []
        assert started.observer.errors == []

    @pytest.mark.asyncio
    async def test_malformed_payload_dropped(self, started: CallHarness) -> None:
        await started.deliver({"kind": "offer", "roomId": ROOM, "payload": {"sdp": "v=0"}})
        await started.deliver({"kind": "ice-candidate", "roomId": ROOM, "payload": {"sdpMid": "0"}})

        assert started.controller.negotiation_state == NegotiationState.IDLE
        assert started.controller.session is not None
        assert started.controller.session.pending_candidates == ()
        assert started.observer.errors == []
        assert started.controller.is_active

    @pytest.mark.asyncio
    async def test_description_type_mismatch_dropped(self, started: CallHarness) -> None:
        await started.deliver({"kind": "offer", "roomId": ROOM, "payload": ANSWER_PAYLOAD})

        assert started.controller.negotiation_state == NegotiationState.IDLE

    @pytest.mark.asyncio
    async def test_out_of_order_answer_reports_invalid_state(self, started: CallHarness) -> None:
        await started.deliver({"kind": "answer", "roomId": ROOM, "payload": ANSWER_PAYLOAD})

        assert [kind for kind, _ in started.observer.errors] == [ErrorKind.INVALID_STATE]
        assert started.controller.negotiation_state == NegotiationState.IDLE
        assert started.controller.is_active

    @pytest.mark.asyncio
    async def test_inbound_join_ignored(self, started: CallHarness) -> None:
        await started.deliver({"kind": "join", "roomId": ROOM})

        assert started.controller.negotiation_state == NegotiationState.IDLE
        assert started.peer.calls == []

    @pytest.mark.asyncio
    async def test_peer_left_marks_disconnected(self, started: CallHarness) -> None:
        await started.deliver({"kind": "offer", "roomId": ROOM, "payload": OFFER_PAYLOAD})

        await started.deliver({"kind": "peer-left", "roomId": ROOM})

        assert started.controller.status == ConnectionStatus.DISCONNECTED
        assert started.observer.notifications == ["disconnected"]
        assert started.controller.negotiation_state == NegotiationState.STABLE
        assert not started.peer.closed

    @pytest.mark.asyncio
    async def test_frames_routed_from_signaling_socket(self, started: CallHarness) -> None:
        started.signaling_ws.feed_json({"kind": "peer-joined", "roomId": ROOM})

        await wait_until(lambda: started.controller.negotiation_state == NegotiationState.HAVE_LOCAL_OFFER)

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_close_signaling(self, started: CallHarness) -> None:
        started.signaling_ws.feed("garbage")
        started.signaling_ws.feed_json({"kind": "peer-joined", "roomId": ROOM})

        await wait_until(lambda: started.controller.negotiation_state == NegotiationState.HAVE_LOCAL_OFFER)
        assert started.controller.is_active


class TestPlatformEvents:
    """Test local candidate, track and connection state events."""

    @pytest.mark.asyncio
    async def test_local_candidate_sent(self, started: CallHarness) -> None:
        started.controller.post(LocalCandidateDiscovered(candidate(5)))
        await started.controller.drain()
        await wait_until(lambda: len(started.sent()) == 2)

        assert started.sent()[1] == {
            "kind": "ice-candidate",
            "roomId": ROOM,
            "payload": candidate(5).model_dump(),
        }

    @pytest.mark.asyncio
    async def test_gathered_candidates_follow_offer(self, started: CallHarness) -> None:
        started.peer.local_candidates = [candidate(1), candidate(2)]

        await started.deliver({"kind": "peer-joined", "roomId": ROOM})
        await wait_until(lambda: len(started.sent()) == 4)

        assert started.sent_kinds() == ["join", "offer", "ice-candidate", "ice-candidate"]

    @pytest.mark.asyncio
    async def test_first_remote_track_connects(self, started: CallHarness) -> None:
        started.controller.post(RemoteTrackReceived(kind="audio", track="remote-audio"))
        started.controller.post(RemoteTrackReceived(kind="video", track="remote-video"))
        await started.controller.drain()

        assert started.controller.status == ConnectionStatus.CONNECTED
        assert started.observer.notifications == ["connected"]
        assert started.observer.remote_tracks == [("audio", "remote-audio"), ("video", "remote-video")]
        assert len(started.controller.remote_tracks) == 2

    @pytest.mark.asyncio
    async def test_connection_failed_disconnects(self, started: CallHarness) -> None:
        started.controller.post(RemoteTrackReceived(kind="audio", track="remote-audio"))
        started.controller.post(ConnectionStateChanged(state="connected"))
        started.controller.post(ConnectionStateChanged(state="failed"))
        await started.controller.drain()

        assert started.controller.status == ConnectionStatus.DISCONNECTED
        assert started.observer.notifications == ["connected", "disconnected"]


class TestCaptions:
    """Test caption routing."""

    @pytest.mark.asyncio
    async def test_captions_recorded_and_notified(self, started: CallHarness) -> None:
        started.captions_ws.feed_json({"speaker": "You", "text": "hello", "timestampMs": 1})
        started.captions_ws.feed_json(
            {"speaker": "Remote", "text": "hola", "translation": "hello", "timestampMs": 2}
        )
        await wait_until(lambda: len(started.observer.captions) == 2)

        captions = started.controller.captions
        assert [event.text for event in captions.self_transcript] == ["hello"]
        assert [event.text for event in captions.remote_transcript] == ["hola"]

        exported = json.loads(started.controller.export_transcript())
        assert [item["speaker"] for item in exported] == ["You", "Remote"]

    @pytest.mark.asyncio
    async def test_caption_channel_close_not_terminal(self, started: CallHarness) -> None:
        started.captions_ws.disconnect()
        await asyncio.sleep(0.01)

        assert started.controller.is_active
        assert started.media.release_count == 0


class TestToggles:
    """Test local media toggles."""

    @pytest.mark.asyncio
    async def test_toggle_audio_and_video(self, started: CallHarness) -> None:
        started.controller.toggle_audio(False)
        started.controller.toggle_video(False)

        assert started.media.audio_enabled is False
        assert started.media.video_enabled is False
        assert started.controller.negotiation_state == NegotiationState.IDLE

        started.controller.toggle_audio(True)
        assert started.media.audio_enabled is True


class TestEnd:
    """Test teardown."""

    @pytest.mark.asyncio
    async def test_end_releases_everything(self, started: CallHarness) -> None:
        started.captions_ws.feed_json({"speaker": "Remote", "text": "hola", "timestampMs": 1})
        await wait_until(lambda: len(started.controller.captions) == 1)

        await started.controller.end()

        assert not started.controller.is_active
        assert started.peer.closed
        assert started.signaling_ws.closed
        assert started.captions_ws.closed
        assert started.media.release_count == 1
        assert started.controller.negotiation_state == NegotiationState.CLOSED
        assert len(started.controller.captions) == 0
        assert started.controller.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_end_idempotent(self, started: CallHarness) -> None:
        await started.controller.end()
        await started.controller.end()

        assert started.media.release_count == 1
        assert started.peer.calls.count("close") == 1
        assert started.observer.notifications.count("disconnected") == 1

    @pytest.mark.asyncio
    async def test_end_before_start(self, harness: CallHarness) -> None:
        await harness.controller.end()

        assert not harness.controller.is_active
        assert harness.observer.notifications == []

    @pytest.mark.asyncio
    async def test_events_after_end_dropped(self, started: CallHarness) -> None:
        await started.controller.end()

        started.controller.post(RemoteTrackReceived(kind="audio", track="late"))
        await started.controller.drain()

        assert started.controller.remote_tracks == []
        assert "connected" not in started.observer.notifications

    @pytest.mark.asyncio
    async def test_signaling_close_ends_call(self, started: CallHarness) -> None:
        started.signaling_ws.disconnect()

        await wait_until(lambda: started.media.release_count == 1)

        assert not started.controller.is_active
        assert started.peer.closed
        assert started.captions_ws.closed
        assert (ErrorKind.TRANSPORT_CLOSED, "Signaling connection lost") in started.observer.errors

    @pytest.mark.asyncio
    async def test_sends_after_end_dropped(self, started: CallHarness) -> None:
        await started.controller.end()
        sent_before = len(started.signaling_ws.sent)

        started.controller.post(LocalCandidateDiscovered(candidate(1)))
        await asyncio.sleep(0.01)

        assert len(started.signaling_ws.sent) == sent_before


class PacedAudioSource:
    """Audio track yielding a frame every few milliseconds, then ending."""

    def __init__(self, frames: int = 20) -> None:
        self.remaining = frames

    async def recv(self) -> AudioFrame:
        if self.remaining <= 0:
            raise MediaStreamError
        self.remaining -= 1
        await asyncio.sleep(0.002)
        frame = AudioFrame.from_ndarray(
            np.full((1, 960), 500, dtype=np.int16), format="s16", layout="mono"
        )
        frame.sample_rate = 48000
        frame.time_base = Fraction(1, 48000)
        return frame


class TestAudioForwarding:
    """Test forwarding local audio to the caption channel."""

    @staticmethod
    def forwarding_harness() -> CallHarness:
        media = FakeMedia()
        media.audio_subscriber = PacedAudioSource()
        config = CallConfig(captions=CaptionConfig(forward_audio=True))
        return CallHarness(media=media, config=config)

    @pytest.mark.asyncio
    async def test_audio_forwarded_as_pcm(self) -> None:
        harness = self.forwarding_harness()
        await harness.controller.start(ROOM)

        await wait_until(lambda: any(isinstance(frame, bytes) for frame in harness.captions_ws.sent))

        fragment = next(frame for frame in harness.captions_ws.sent if isinstance(frame, bytes))
        assert len(fragment) % 2 == 0

        await harness.controller.end()

    @pytest.mark.asyncio
    async def test_muted_audio_not_forwarded(self) -> None:
        harness = self.forwarding_harness()
        await harness.controller.start(ROOM)
        harness.controller.toggle_audio(False)

        await asyncio.sleep(0.06)

        assert harness.captions_ws.sent == []

        await harness.controller.end()

    @pytest.mark.asyncio
    async def test_forwarding_disabled_by_default(self, started: CallHarness) -> None:
        started.media.audio_subscriber = PacedAudioSource()

        await asyncio.sleep(0.02)

        assert started.captions_ws.sent == []
