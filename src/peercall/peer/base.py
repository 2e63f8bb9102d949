"""Base peer connection abstraction.

Defines the interface the negotiation state machine drives. Implementations
wrap a platform peer connection and publish its notifications (local
candidates, remote tracks, state changes) as typed events to an EventSink
instead of invoking call logic from callbacks.
"""

from abc import ABC, abstractmethod
from typing import Any

from src.peercall.transport.protocol import IceCandidate, SessionDescription


class PeerConnectionHandle(ABC):
    """Platform peer connection used by PeerSession.

    Negotiation methods may suspend while the platform works; they are only
    ever awaited from the call dispatcher, one at a time.
    """

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Produce a local offer blob.

        Raises:
            RuntimeError: If the platform fails to produce an offer
        """
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Produce a local answer blob for the current remote offer."""
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Install a local description.

        Implementations announce the local candidates they gather for it.
        """
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Install a remote description."""
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote connectivity candidate.

        Only valid once a remote description is installed.
        """
        pass

    @abstractmethod
    def add_track(self, track: Any) -> None:
        """Attach a local media track to be sent to the peer."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and its transports."""
        pass

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """Installed local description as the platform reports it.

        May differ from the blob passed to set_local_description (for
        example with gathered candidates embedded).
        """
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Platform connection state (new, connecting, connected, failed, closed)."""
        pass
