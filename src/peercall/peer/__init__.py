"""Peer connection layer.

Provides the platform peer connection abstraction and its aiortc
implementation.
"""

from src.peercall.peer.aiortc_peer import AiortcPeerConnection, candidates_from_sdp
from src.peercall.peer.base import PeerConnectionHandle

__all__ = [
    "AiortcPeerConnection",
    "PeerConnectionHandle",
    "candidates_from_sdp",
]
