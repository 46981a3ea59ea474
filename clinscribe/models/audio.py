"""Audio-related data models."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class CaptureConstraints:
    """Requested microphone capture settings."""
    sample_rate: int = 16000
    channels: int = 1
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    frames_per_buffer: int = 1024
    device_index: Optional[int] = None  # None selects the default input device


@dataclass
class AudioStats:
    """Audio recording statistics."""
    is_recording: bool
    duration_seconds: float
    sample_rate: int
    chunk_size: int
    total_chunks: int
    peak_level: float = 0.0


@dataclass
class AudioEvent:
    """One raw 16-bit PCM frame published by the capture thread."""
    chunk_id: str
    audio_data: bytes
    timestamp: float  # Unix timestamp when chunk was captured
    sequence_number: int
    sample_rate: int = 16000
    channels: int = 1
    chunk_duration_ms: Optional[int] = None

    def __post_init__(self):
        """Calculate chunk duration if not provided."""
        if self.chunk_duration_ms is None and self.audio_data:
            bytes_per_second = self.sample_rate * self.channels * 2
            duration_seconds = len(self.audio_data) / bytes_per_second
            self.chunk_duration_ms = int(duration_seconds * 1000)


@dataclass(frozen=True)
class EncodedChunk:
    """An encoded audio payload covering one timeslice."""
    data: bytes
    sequence_number: int
    format_name: str

    @property
    def size(self) -> int:
        return len(self.data)
