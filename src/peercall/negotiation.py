"""Offer/answer negotiation state machine.

PeerSession owns one peer connection handle for the lifetime of a call and
sequences the offer/answer exchange. Its central rule concerns remote
connectivity candidates: a candidate is meaningless until a remote
description exists, and candidates routinely arrive before or interleaved
with that description. Such candidates are buffered and applied, in receipt
order and exactly once, as soon as negotiation reaches a state with a remote
description.
"""

import logging
from collections.abc import Callable
from enum import Enum

from src.peercall.errors import InvalidState
from src.peercall.peer.base import PeerConnectionHandle
from src.peercall.transport.protocol import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

LocalCandidateListener = Callable[[IceCandidate], None]


class NegotiationState(Enum):
    """Negotiation state machine states.

    State Transitions:
    - IDLE → HAVE_LOCAL_OFFER (create_offer, offering side)
    - HAVE_LOCAL_OFFER → STABLE (handle_remote_answer)
    - IDLE → HAVE_REMOTE_OFFER (handle_remote_offer, answering side)
    - HAVE_REMOTE_OFFER → STABLE (create_answer)
    - * → CLOSED (close)

    STABLE is the only state in which media flows. There is no way back
    from STABLE other than CLOSED.
    """

    IDLE = "idle"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CLOSED = "closed"


# Valid state transitions
VALID_TRANSITIONS: dict[NegotiationState, set[NegotiationState]] = {
    NegotiationState.IDLE: {
        NegotiationState.HAVE_LOCAL_OFFER,
        NegotiationState.HAVE_REMOTE_OFFER,
        NegotiationState.CLOSED,
    },
    NegotiationState.HAVE_LOCAL_OFFER: {NegotiationState.STABLE, NegotiationState.CLOSED},
    NegotiationState.HAVE_REMOTE_OFFER: {NegotiationState.STABLE, NegotiationState.CLOSED},
    NegotiationState.STABLE: {NegotiationState.CLOSED},
    NegotiationState.CLOSED: set(),  # Terminal state
}


class CandidateBuffer:
    """Ordered holding area for remote candidates awaiting a remote description.

    Append-only until drained; draining returns everything in receipt order
    and leaves the buffer empty.
    """

    def __init__(self) -> None:
        self._candidates: list[IceCandidate] = []

    def append(self, candidate: IceCandidate) -> None:
        self._candidates.append(candidate)

    def drain(self) -> list[IceCandidate]:
        """Remove and return all buffered candidates, oldest first."""
        drained, self._candidates = self._candidates, []
        return drained

    def clear(self) -> None:
        self._candidates.clear()

    def snapshot(self) -> tuple[IceCandidate, ...]:
        return tuple(self._candidates)

    def __len__(self) -> int:
        return len(self._candidates)

    def __bool__(self) -> bool:
        return bool(self._candidates)


class PeerSession:
    """Negotiation state machine around a single peer connection.

    Not thread-safe: all operations are expected to be awaited from the
    call's single dispatcher, one at a time.
    """

    def __init__(self, connection: PeerConnectionHandle, session_id: str = "peer") -> None:
        """Initialize peer session.

        Args:
            connection: Platform peer connection handle (owned)
            session_id: Identifier used in log records
        """
        self._connection = connection
        self._session_id = session_id
        self._state = NegotiationState.IDLE
        self._local_description: SessionDescription | None = None
        self._remote_description: SessionDescription | None = None
        self._buffer = CandidateBuffer()
        self._local_candidate_listener: LocalCandidateListener | None = None
        self.candidates_applied = 0
        self.candidates_rejected = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def connection(self) -> PeerConnectionHandle:
        return self._connection

    @property
    def local_description(self) -> SessionDescription | None:
        return self._local_description

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._remote_description

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description is not None

    @property
    def pending_candidates(self) -> tuple[IceCandidate, ...]:
        """Candidates buffered while waiting for a remote description."""
        return self._buffer.snapshot()

    @property
    def is_closed(self) -> bool:
        return self._state == NegotiationState.CLOSED

    def on_local_candidate(self, listener: LocalCandidateListener) -> None:
        """Register the listener that transmits local candidates."""
        self._local_candidate_listener = listener

    async def create_offer(self) -> SessionDescription:
        """Create and install a local offer (offering side).

        Returns:
            Offer blob to send to the peer

        Raises:
            InvalidState: If negotiation is not IDLE
        """
        self._require(NegotiationState.IDLE, "create_offer")

        offer = await self._connection.create_offer()
        await self._connection.set_local_description(offer)
        self._local_description = self._connection.local_description or offer
        self._transition(NegotiationState.HAVE_LOCAL_OFFER)
        return self._local_description

    async def handle_remote_offer(self, description: SessionDescription) -> None:
        """Install the peer's offer (answering side).

        The caller must follow up with create_answer().

        Raises:
            InvalidState: If negotiation is not IDLE
        """
        self._require(NegotiationState.IDLE, "handle_remote_offer")

        await self._connection.set_remote_description(description)
        self._remote_description = description
        self._transition(NegotiationState.HAVE_REMOTE_OFFER)

    async def create_answer(self) -> SessionDescription:
        """Create and install the local answer, then flush buffered candidates.

        Returns:
            Answer blob to send to the peer

        Raises:
            InvalidState: If negotiation is not HAVE_REMOTE_OFFER
        """
        self._require(NegotiationState.HAVE_REMOTE_OFFER, "create_answer")

        answer = await self._connection.create_answer()
        await self._connection.set_local_description(answer)
        self._local_description = self._connection.local_description or answer
        self._transition(NegotiationState.STABLE)
        await self._flush_candidates()
        return self._local_description

    async def handle_remote_answer(self, description: SessionDescription) -> None:
        """Install the peer's answer, then flush buffered candidates.

        Raises:
            InvalidState: If negotiation is not HAVE_LOCAL_OFFER
        """
        self._require(NegotiationState.HAVE_LOCAL_OFFER, "handle_remote_answer")

        await self._connection.set_remote_description(description)
        self._remote_description = description
        self._transition(NegotiationState.STABLE)
        await self._flush_candidates()

    async def add_remote_candidate(self, candidate: IceCandidate) -> bool:
        """Apply a remote candidate now, or buffer it until a remote description exists.

        Candidates are applied immediately only when a remote description is
        installed and nothing older is still buffered, so application order
        always equals receipt order.

        Returns:
            True if applied now, False if buffered or dropped
        """
        if self._state == NegotiationState.CLOSED:
            logger.debug(
                "Dropping remote candidate after close",
                extra={"session_id": self._session_id},
            )
            return False

        if not self.has_remote_description or self._buffer:
            self._buffer.append(candidate)
            logger.debug(
                "Remote candidate buffered",
                extra={"session_id": self._session_id, "buffered": len(self._buffer)},
            )
            return False

        return await self._apply_candidate(candidate)

    def emit_local_candidate(self, candidate: IceCandidate) -> None:
        """Hand a newly discovered local candidate to the registered listener.

        Not a state transition. Dropped once the session is closed.
        """
        if self._state == NegotiationState.CLOSED:
            return
        if self._local_candidate_listener is None:
            logger.debug(
                "No listener for local candidate",
                extra={"session_id": self._session_id},
            )
            return
        self._local_candidate_listener(candidate)

    async def close(self) -> None:
        """Release the connection and enter CLOSED. Idempotent."""
        if self._state == NegotiationState.CLOSED:
            return

        self._transition(NegotiationState.CLOSED)
        self._buffer.clear()
        self._local_candidate_listener = None

        try:
            await self._connection.close()
        except Exception as e:
            logger.warning(
                "Error closing peer connection",
                extra={"session_id": self._session_id, "error": str(e)},
            )

    async def _flush_candidates(self) -> None:
        """Apply every buffered candidate in receipt order, then clear the buffer."""
        pending = self._buffer.drain()
        if not pending:
            return

        logger.info(
            "Flushing buffered remote candidates",
            extra={"session_id": self._session_id, "count": len(pending)},
        )
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidate) -> bool:
        # Rejected candidates are absorbed; the call continues
        try:
            await self._connection.add_ice_candidate(candidate)
        except Exception as e:
            self.candidates_rejected += 1
            logger.warning(
                "Remote candidate rejected",
                extra={"session_id": self._session_id, "error": str(e)},
            )
            return False

        self.candidates_applied += 1
        return True

    def _require(self, expected: NegotiationState, operation: str) -> None:
        if self._state != expected:
            raise InvalidState(
                f"{operation}() requires state {expected.value}, current state is {self._state.value}"
            )

    def _transition(self, new_state: NegotiationState) -> None:
        """Transition to a new state with validation.

        Raises:
            InvalidState: If the transition is not allowed
        """
        if new_state not in VALID_TRANSITIONS.get(self._state, set()):
            raise InvalidState(
                f"Invalid negotiation transition: {self._state.value} → {new_state.value}"
            )

        old_state = self._state
        self._state = new_state

        logger.info(
            "Negotiation state transition",
            extra={
                "session_id": self._session_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
