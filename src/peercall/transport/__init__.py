"""Relay transport layer.

Provides the signaling and caption websocket channels a call keeps open
to the relay service for the duration of a room visit.
"""

from src.peercall.transport.base import ChannelState, RoomChannel
from src.peercall.transport.captions import CaptionTransport
from src.peercall.transport.protocol import (
    CaptionEvent,
    IceCandidate,
    SessionDescription,
    SignalingEnvelope,
)
from src.peercall.transport.signaling import SignalingTransport

__all__ = [
    "CaptionEvent",
    "CaptionTransport",
    "ChannelState",
    "IceCandidate",
    "RoomChannel",
    "SessionDescription",
    "SignalingEnvelope",
    "SignalingTransport",
]
