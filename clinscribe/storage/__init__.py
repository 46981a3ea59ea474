"""Local persistence for clinscribe."""

from .recording_store import RecordingStore

__all__ = ["RecordingStore"]
