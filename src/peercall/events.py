"""Typed events processed by the call dispatcher.

Transport readers and platform callbacks never act on call state directly:
they construct one of these events and push it onto the controller's
dispatch queue, which applies them one at a time in arrival order.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.peercall.transport.protocol import IceCandidate, SignalingEnvelope


@dataclass(frozen=True)
class SignalingReceived:
    """Inbound envelope from the signaling channel."""

    envelope: SignalingEnvelope


@dataclass(frozen=True)
class SignalingClosed:
    """The relay closed the signaling channel (terminal for the room visit)."""


@dataclass(frozen=True)
class LocalCandidateDiscovered:
    """The connectivity layer found a local candidate."""

    candidate: IceCandidate


@dataclass(frozen=True)
class RemoteTrackReceived:
    """A remote media track arrived."""

    kind: str
    track: Any


@dataclass(frozen=True)
class ConnectionStateChanged:
    """The platform peer connection changed state."""

    state: str


CallEvent = (
    SignalingReceived
    | SignalingClosed
    | LocalCandidateDiscovered
    | RemoteTrackReceived
    | ConnectionStateChanged
)

EventSink = Callable[[CallEvent], None]
