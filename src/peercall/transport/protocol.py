"""Relay message protocol definitions.

Defines Pydantic models for the signaling and caption channel messages.
Messages are JSON-encoded text frames; field names follow the relay's wire
contract (camelCase).
"""

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

EnvelopeKind = Literal["join", "peer-joined", "peer-left", "offer", "answer", "ice-candidate"]

# Envelope kinds that must carry a payload
PAYLOAD_KINDS: frozenset[str] = frozenset({"offer", "answer", "ice-candidate"})


class SessionDescription(BaseModel):
    """Negotiation blob (offer or answer session description)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1, description="Session description text")


class IceCandidate(BaseModel):
    """Connectivity candidate descriptor.

    An empty ``candidate`` string marks the end of candidates for a
    media section.
    """

    model_config = ConfigDict(frozen=True)

    candidate: str = Field(..., description="candidate-attribute line")
    sdpMid: str | None = Field(default=None, description="Media stream identification tag")  # noqa: N815
    sdpMLineIndex: int | None = Field(default=None, ge=0, description="Media section index")  # noqa: N815

    @property
    def is_end_of_candidates(self) -> bool:
        """Whether this is the end-of-candidates marker."""
        return not self.candidate.strip()


class SignalingEnvelope(BaseModel):
    """Signaling channel envelope (both directions).

    ``payload`` is required for offer, answer and ice-candidate and is kept
    as an opaque mapping here; the controller decodes it into a
    SessionDescription or IceCandidate when routing.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: EnvelopeKind
    room_id: str = Field(..., alias="roomId", min_length=1)
    payload: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_payload(self) -> "SignalingEnvelope":
        """Require a payload for negotiation envelopes."""
        if self.kind in PAYLOAD_KINDS and self.payload is None:
            raise ValueError(f"'{self.kind}' envelope requires a payload")
        return self

    def to_json(self) -> str:
        """Encode for the wire."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def join(cls, room_id: str) -> "SignalingEnvelope":
        return cls(kind="join", room_id=room_id)

    @classmethod
    def offer(cls, room_id: str, description: SessionDescription) -> "SignalingEnvelope":
        return cls(kind="offer", room_id=room_id, payload=description.model_dump())

    @classmethod
    def answer(cls, room_id: str, description: SessionDescription) -> "SignalingEnvelope":
        return cls(kind="answer", room_id=room_id, payload=description.model_dump())

    @classmethod
    def ice_candidate(cls, room_id: str, candidate: IceCandidate) -> "SignalingEnvelope":
        return cls(kind="ice-candidate", room_id=room_id, payload=candidate.model_dump())


class CaptionEvent(BaseModel):
    """Caption channel → client: one transcribed and translated utterance.

    Immutable once received. Accepts the legacy ``timestamp`` field name on
    input; always serializes as ``timestampMs``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speaker: str = Field(..., description="Speaker label")
    text: str = Field(..., description="Transcribed text in the spoken language")
    translation: str = Field(default="", description="Text translated to the target language")
    timestamp_ms: int | float = Field(
        ...,
        validation_alias=AliasChoices("timestampMs", "timestamp", "timestamp_ms"),
        serialization_alias="timestampMs",
        description="Capture time in milliseconds since the epoch",
    )
    language: str = Field(default="", description="Detected spoken language")

    def to_wire(self) -> dict[str, Any]:
        """Wire-shaped mapping (camelCase field names)."""
        return self.model_dump(by_alias=True)
