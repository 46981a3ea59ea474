"""Data models for the clinscribe application."""

from .audio import AudioEvent, AudioStats, CaptureConstraints, EncodedChunk
from .events import ConnectionState, ConnectionStatus, ControllerState
from .session import (
    ClinicalNote,
    PatientContext,
    SavedRecording,
    Session,
    SessionStatus,
)
from .transcription import (
    PartialSegment,
    SpeakerRole,
    Transcript,
    TranscriptionEvent,
    TranscriptSegment,
    Word,
)

__all__ = [
    "AudioEvent",
    "AudioStats",
    "CaptureConstraints",
    "EncodedChunk",
    "ConnectionState",
    "ConnectionStatus",
    "ControllerState",
    # Session models
    "ClinicalNote",
    "PatientContext",
    "SavedRecording",
    "Session",
    "SessionStatus",
    # Transcript models
    "PartialSegment",
    "SpeakerRole",
    "Transcript",
    "TranscriptionEvent",
    "TranscriptSegment",
    "Word",
]
