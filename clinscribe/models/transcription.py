"""Transcription-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class SpeakerRole(Enum):
    """Conversation role a diarized speaker can be mapped to."""
    CLINICIAN = "clinician"
    PATIENT = "patient"


@dataclass(frozen=True)
class Word:
    """Word-level timing from the backend."""
    word: str
    start: float
    end: float
    confidence: float
    speaker: Optional[int] = None


@dataclass(frozen=True)
class TranscriptionEvent:
    """Normalized transcription result, independent of the backend protocol."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speaker: Optional[int] = None
    start_offset: Optional[float] = None  # Seconds from stream start
    end_offset: Optional[float] = None
    words: List[Word] = field(default_factory=list)


@dataclass(frozen=True)
class TranscriptSegment:
    """A finalized piece of transcript. Never mutated after creation."""
    text: str
    speaker: Optional[int]
    confidence: float
    recorded_at: datetime
    role: Optional[SpeakerRole] = None
    start_offset: Optional[float] = None
    end_offset: Optional[float] = None

    @property
    def label(self) -> str:
        """Display label for the speaker."""
        if self.role is not None:
            return self.role.value.capitalize()
        if self.speaker is not None:
            return f"Speaker {self.speaker}"
        return "Unknown"


@dataclass(frozen=True)
class PartialSegment:
    """The single in-flight interim result, replaced on every update."""
    text: str
    speaker: Optional[int]
    confidence: float
    updated_at: datetime


@dataclass
class Transcript:
    """Ordered final segments plus at most one partial segment."""
    segments: List[TranscriptSegment] = field(default_factory=list)
    partial: Optional[PartialSegment] = None

    @property
    def is_empty(self) -> bool:
        return not self.segments and self.partial is None
