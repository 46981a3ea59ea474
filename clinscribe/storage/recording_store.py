"""Local store of saved recordings: a JSON list plus WAV payloads."""

import os
import json
import uuid
import wave
import logging
import tempfile
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.session import SavedRecording

logger = logging.getLogger(__name__)

RECORDINGS_FILE = "recordings.json"


class RecordingStore:
    """Persists ``SavedRecording`` entries for all patients.

    The whole list lives in ``<data_dir>/recordings.json``. It is read once
    at construction and rewritten wholesale on every save; audio payloads
    are written as WAV files under ``<data_dir>/audio/``.
    """

    def __init__(self, data_dir: str = "./data"):
        """Initialize the store and load existing recordings.

        Args:
            data_dir: Base directory for storing all data
        """
        self.data_dir = Path(data_dir)
        self.audio_dir = self.data_dir / "audio"
        self.index_file = self.data_dir / RECORDINGS_FILE

        self._ensure_directories()
        self.recordings: List[SavedRecording] = self._load()

        logger.info(f"RecordingStore initialized with {len(self.recordings)} recordings in {self.data_dir}")

    def _ensure_directories(self) -> None:
        for directory in [self.data_dir, self.audio_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    def _load(self) -> List[SavedRecording]:
        if not self.index_file.exists():
            return []

        try:
            with open(self.index_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            # A corrupt index must not stop the app from starting.
            logger.error(f"Error loading recordings index {self.index_file}: {e}")
            return []

        recordings = []
        for entry in data:
            try:
                recordings.append(self._from_dict(entry))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed recording entry: {e}")
        return recordings

    @staticmethod
    def _to_dict(recording: SavedRecording) -> Dict[str, Any]:
        return {
            "id": recording.id,
            "patient_id": recording.patient_id,
            "date": recording.date.isoformat(),
            "duration_seconds": recording.duration_seconds,
            "audio_path": recording.audio_path,
            "title": recording.title,
        }

    @staticmethod
    def _from_dict(data: Dict[str, Any]) -> SavedRecording:
        return SavedRecording(
            id=data["id"],
            patient_id=data["patient_id"],
            date=datetime.fromisoformat(data["date"]),
            duration_seconds=float(data["duration_seconds"]),
            audio_path=data["audio_path"],
            title=data.get("title", ""),
        )

    def _write_index(self) -> None:
        """Rewrite the whole index atomically."""
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".recordings.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump([self._to_dict(r) for r in self.recordings], f, indent=2)
            os.replace(tmp_path, self.index_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def write_wav(self, recording_id: str, pcm: bytes, sample_rate: int, channels: int = 1) -> str:
        """Write 16-bit PCM as a WAV file and return its path."""
        audio_file_path = self.audio_dir / f"{recording_id}.wav"
        with wave.open(str(audio_file_path), 'wb') as wf:
            wf.setnchannels(channels)
            wf.setsampwidth(2)
            wf.setframerate(sample_rate)
            wf.writeframes(pcm)

        logger.info(f"Audio file saved: {audio_file_path} ({len(pcm)} bytes)")
        return str(audio_file_path)

    def save_audio(self,
                   patient_id: str,
                   pcm: bytes,
                   sample_rate: int,
                   channels: int = 1,
                   title: Optional[str] = None,
                   date: Optional[datetime] = None) -> SavedRecording:
        """Write the audio payload and add a recording entry for it."""
        recording_id = str(uuid.uuid4())
        date = date or datetime.now()
        audio_path = self.write_wav(recording_id, pcm, sample_rate, channels)
        duration = len(pcm) / float(sample_rate * channels * 2)

        recording = SavedRecording(
            id=recording_id,
            patient_id=patient_id,
            date=date,
            duration_seconds=round(duration, 2),
            audio_path=audio_path,
            title=title or f"Recording {date.strftime('%Y-%m-%d %H:%M')}",
        )
        return self.save(recording)

    def save(self, recording: SavedRecording) -> SavedRecording:
        """Append a recording and persist the full list."""
        self.recordings.append(recording)
        self._write_index()
        logger.info(f"💾 Saved recording {recording.id} for patient {recording.patient_id} "
                    f"({recording.duration_seconds:.1f}s)")
        return recording

    def list_all(self) -> List[SavedRecording]:
        return list(self.recordings)

    def list_for_patient(self, patient_id: str) -> List[SavedRecording]:
        """Recordings of one patient, newest first."""
        matches = [r for r in self.recordings if r.patient_id == patient_id]
        return sorted(matches, key=lambda r: r.date, reverse=True)

    def get(self, recording_id: str) -> Optional[SavedRecording]:
        for recording in self.recordings:
            if recording.id == recording_id:
                return recording
        return None
