"""Per-speaker caption timeline.

The caption service sends one event per transcribed utterance, for both
participants, interleaved on a single channel. CaptionAggregator keeps the
receipt-ordered event list plus two speaker partitions (self and remote),
and serializes the whole timeline for download.

Typical usage:
    aggregator = CaptionAggregator(self_speaker="You")
    aggregator.record(event)
    for caption in aggregator.remote_transcript:
        render(caption.translation or caption.text)
    path = aggregator.save(Path("."), room_id="room-1")
"""

import json
import logging
import time
from pathlib import Path

from src.peercall.transport.protocol import CaptionEvent

logger = logging.getLogger(__name__)


class CaptionAggregator:
    """Caption timeline for one call.

    No deduplication and no size bound: the aggregator lives exactly as long
    as the call and is cleared on teardown.

    Attributes:
        self_speaker: Speaker label that identifies the local participant.
            Every other label belongs to the remote transcript.
    """

    def __init__(self, self_speaker: str = "You") -> None:
        self.self_speaker = self_speaker
        self._events: list[CaptionEvent] = []
        self._self: list[CaptionEvent] = []
        self._remote: list[CaptionEvent] = []

    def record(self, event: CaptionEvent) -> None:
        """Append an event to the timeline and to its speaker's transcript."""
        self._events.append(event)
        if self.is_self(event):
            self._self.append(event)
        else:
            self._remote.append(event)

    def is_self(self, event: CaptionEvent) -> bool:
        return event.speaker == self.self_speaker

    @property
    def events(self) -> tuple[CaptionEvent, ...]:
        """All events in receipt order."""
        return tuple(self._events)

    @property
    def self_transcript(self) -> tuple[CaptionEvent, ...]:
        return tuple(self._self)

    @property
    def remote_transcript(self) -> tuple[CaptionEvent, ...]:
        return tuple(self._remote)

    def export(self) -> str:
        """Serialize the full timeline as a JSON array in receipt order.

        Pure; safe to call at any time, including mid-call.
        """
        return json.dumps([event.to_wire() for event in self._events], indent=2, ensure_ascii=False)

    @staticmethod
    def export_filename(room_id: str, now_ms: int | None = None) -> str:
        """Download file name for a room's transcript."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return f"transcript-{room_id}-{now_ms}.json"

    def save(self, directory: Path, room_id: str) -> Path:
        """Write the exported timeline into ``directory``.

        Returns:
            Path of the written file
        """
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / self.export_filename(room_id)
        path.write_text(self.export(), encoding="utf-8")
        logger.info(
            "Transcript saved",
            extra={"room_id": room_id, "path": str(path), "events": len(self._events)},
        )
        return path

    def clear(self) -> None:
        """Drop the whole timeline (call teardown only)."""
        self._events.clear()
        self._self.clear()
        self._remote.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return (
            f"CaptionAggregator(events={len(self._events)}, "
            f"self={len(self._self)}, remote={len(self._remote)})"
        )
