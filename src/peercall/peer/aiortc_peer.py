"""aiortc-backed peer connection.

Wraps RTCPeerConnection behind PeerConnectionHandle. aiortc gathers every
local candidate while installing the local description and embeds them in
the SDP; they are additionally announced one by one as
LocalCandidateDiscovered events so trickle-ICE peers (browsers) receive
them as ``ice-candidate`` envelopes too. Remote candidates that were
already embedded in the remote description are not applied twice.
"""

import logging
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import SessionDescription as ParsedSdp
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from src.peercall.config import IceServerConfig
from src.peercall.events import (
    ConnectionStateChanged,
    EventSink,
    LocalCandidateDiscovered,
    RemoteTrackReceived,
)
from src.peercall.peer.base import PeerConnectionHandle
from src.peercall.transport.protocol import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def candidates_from_sdp(sdp: str) -> list[IceCandidate]:
    """Extract the candidates embedded in a session description.

    Args:
        sdp: Session description text

    Returns:
        Candidates in media-section order, tagged with mid and m-line index
    """
    parsed = ParsedSdp.parse(sdp)
    candidates: list[IceCandidate] = []
    for index, media in enumerate(parsed.media):
        for candidate in media.ice_candidates:
            candidates.append(
                IceCandidate(
                    candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
                    sdpMid=media.rtp.muxId or None,
                    sdpMLineIndex=index,
                )
            )
    return candidates


def _normalize_candidate(line: str) -> str:
    """Strip attribute prefixes so candidate lines compare equal."""
    line = line.strip()
    if line.startswith("a="):
        line = line[2:]
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    return line


class AiortcPeerConnection(PeerConnectionHandle):
    """PeerConnectionHandle implementation on top of aiortc."""

    def __init__(self, ice_servers: list[IceServerConfig], emit: EventSink) -> None:
        """Initialize the peer connection.

        Args:
            ice_servers: STUN/TURN servers
            emit: Sink receiving platform notifications as typed events
        """
        rtc_servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=rtc_servers))
        self._emit = emit
        self._remote_candidates: set[str] = set()

        @self._pc.on("track")
        def on_track(track: Any) -> None:
            logger.info("Remote track received", extra={"kind": track.kind})
            self._emit(RemoteTrackReceived(kind=track.kind, track=track))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            logger.info(
                "Peer connection state changed",
                extra={"connection_state": self._pc.connectionState},
            )
            self._emit(ConnectionStateChanged(state=self._pc.connectionState))

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            logger.debug(
                "ICE connection state changed",
                extra={"ice_connection_state": self._pc.iceConnectionState},
            )

    @property
    def connection_state(self) -> str:
        return str(self._pc.connectionState)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

        # Gathering is complete once setLocalDescription returns
        local = self._pc.localDescription
        if local is None:
            return
        for candidate in candidates_from_sdp(local.sdp):
            self._emit(LocalCandidateDiscovered(candidate=candidate))

    @property
    def local_description(self) -> SessionDescription | None:
        """Installed local description, including gathered candidates."""
        local = self._pc.localDescription
        if local is None:
            return None
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        self._remote_candidates = {
            _normalize_candidate(candidate.candidate)
            for candidate in candidates_from_sdp(description.sdp)
        }

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if candidate.is_end_of_candidates:
            logger.debug("End of remote candidates", extra={"sdp_mid": candidate.sdpMid})
            return

        line = _normalize_candidate(candidate.candidate)
        if line in self._remote_candidates:
            logger.debug("Candidate already in remote description", extra={"candidate": line})
            return

        rtc_candidate = candidate_from_sdp(line)
        rtc_candidate.sdpMid = candidate.sdpMid
        rtc_candidate.sdpMLineIndex = candidate.sdpMLineIndex
        await self._pc.addIceCandidate(rtc_candidate)
        self._remote_candidates.add(line)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def close(self) -> None:
        await self._pc.close()
