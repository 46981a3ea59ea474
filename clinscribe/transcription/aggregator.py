"""Transcript aggregator folding transcription events into the running transcript."""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Union

from ..models.transcription import (
    PartialSegment,
    SpeakerRole,
    Transcript,
    TranscriptionEvent,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)


def parse_speaker_roles(mapping: Optional[Mapping[Union[int, str], Union[str, SpeakerRole]]]) -> Dict[int, SpeakerRole]:
    """Normalize a config mapping like ``{0: "clinician", "1": "patient"}``."""
    roles: Dict[int, SpeakerRole] = {}
    for speaker, role in (mapping or {}).items():
        roles[int(speaker)] = role if isinstance(role, SpeakerRole) else SpeakerRole(str(role).lower())
    return roles


class TranscriptAggregator:
    """Maintains the final transcript text and the current partial text.

    Final events append an immutable segment; interim events replace the
    partial wholesale. Events are applied in arrival order with no
    reordering or de-duplication.
    """

    def __init__(self, speaker_roles: Optional[Mapping] = None):
        """Initialize the aggregator.

        Args:
            speaker_roles: Optional mapping of diarization index to role
        """
        self.speaker_roles = parse_speaker_roles(speaker_roles)
        self._segments: List[TranscriptSegment] = []
        self._partial: Optional[PartialSegment] = None
        self._final_text = ""

        # The UI thread may read while the loop writes.
        self.lock = threading.RLock()

    def on_event(self, event: TranscriptionEvent) -> None:
        """Apply one transcription event."""
        now = datetime.now()
        with self.lock:
            if not event.is_final:
                self._partial = PartialSegment(
                    text=event.text,
                    speaker=event.speaker,
                    confidence=event.confidence,
                    updated_at=now,
                )
                return

            segment = TranscriptSegment(
                text=event.text,
                speaker=event.speaker,
                confidence=event.confidence,
                recorded_at=now,
                role=self.speaker_roles.get(event.speaker) if event.speaker is not None else None,
                start_offset=event.start_offset,
                end_offset=event.end_offset,
            )
            self._segments.append(segment)
            self._final_text += " " + event.text
            self._partial = None

        logger.debug(f"Final segment #{len(self._segments)} ({segment.label}): {event.text[:50]}")

    @property
    def final_text(self) -> str:
        with self.lock:
            return self._final_text

    @property
    def partial_text(self) -> str:
        with self.lock:
            return self._partial.text if self._partial else ""

    @property
    def segments(self) -> List[TranscriptSegment]:
        with self.lock:
            return list(self._segments)

    @property
    def transcript(self) -> Transcript:
        """Snapshot safe to hand to observers."""
        with self.lock:
            return Transcript(segments=list(self._segments), partial=self._partial)

    def reset(self) -> None:
        with self.lock:
            self._segments = []
            self._partial = None
            self._final_text = ""

    def render(self, include_partial: bool = True) -> str:
        """Speaker-attributed transcript, one line per speaker turn."""
        lines = []
        with self.lock:
            current_label = None
            for segment in self._segments:
                if segment.label == current_label and lines:
                    lines[-1] += " " + segment.text
                else:
                    current_label = segment.label
                    lines.append(f"{segment.label}: {segment.text}")
            if include_partial and self._partial is not None:
                lines.append(f"... {self._partial.text}")
        return "\n".join(lines)
