"""Session-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .transcription import Transcript


class SessionStatus(Enum):
    """Lifecycle status of one recording episode."""
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass
class PatientContext:
    """Patient details passed along to note generation."""
    id: str
    name: str
    age: Optional[int] = None
    medical_history: List[str] = field(default_factory=list)
    allergies: List[str] = field(default_factory=list)
    current_medications: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ClinicalNote:
    """Structured SOAP note. Regenerating replaces it wholesale."""
    subjective: str
    objective: str
    assessment: str
    plan: str
    generated_at: datetime
    confidence: Optional[float] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class Session:
    """One recording episode for a patient."""
    id: str
    patient_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RECORDING
    transcript: Transcript = field(default_factory=Transcript)
    note: Optional[ClinicalNote] = None
    recording_id: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()


@dataclass(frozen=True)
class SavedRecording:
    """Locally persisted audio of a finished session."""
    id: str
    patient_id: str
    date: datetime
    duration_seconds: float
    audio_path: str
    title: str
