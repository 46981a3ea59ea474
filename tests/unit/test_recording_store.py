"""Unit tests for RecordingStore."""

import json
import wave
from datetime import datetime
from pathlib import Path

import pytest

from clinscribe.models.session import SavedRecording
from clinscribe.storage.recording_store import RecordingStore


@pytest.mark.unit
class TestRecordingStore:
    """Test cases for RecordingStore."""

    def test_initialization(self, temp_data_dir):
        """Test RecordingStore creates the directory structure."""
        store = RecordingStore(temp_data_dir)

        assert store.audio_dir.exists()
        assert store.list_all() == []
        assert not store.index_file.exists()

    def test_save_audio_writes_wav(self, temp_data_dir, sample_audio_chunk):
        """Test saving PCM as a WAV file with an index entry."""
        store = RecordingStore(temp_data_dir)
        pcm = sample_audio_chunk * 25

        recording = store.save_audio("patient-7", pcm, 16000)

        assert Path(recording.audio_path).exists()
        with wave.open(recording.audio_path, 'rb') as wf:
            assert wf.getframerate() == 16000
            assert wf.getnchannels() == 1
            assert wf.getnframes() == len(pcm) // 2
        assert recording.duration_seconds == 1.6
        assert recording.title.startswith("Recording ")
        assert store.get(recording.id) == recording

    def test_reload_returns_same_recordings(self, temp_data_dir, sample_audio_chunk):
        """Test that a new store sees every recording saved by the previous one."""
        store = RecordingStore(temp_data_dir)
        saved = [
            store.save_audio("patient-1", sample_audio_chunk, 16000, title="Intake"),
            store.save_audio("patient-2", sample_audio_chunk, 16000),
            store.save_audio("patient-1", sample_audio_chunk, 16000, date=datetime(2024, 3, 1, 9, 30)),
        ]

        reloaded = RecordingStore(temp_data_dir)

        assert reloaded.list_all() == saved
        assert reloaded.get(saved[0].id).title == "Intake"

    def test_list_for_patient_newest_first(self, temp_data_dir):
        store = RecordingStore(temp_data_dir)
        for day in (3, 1, 2):
            store.save(SavedRecording(id=f"r{day}", patient_id="p", date=datetime(2024, 1, day),
                                      duration_seconds=1.0, audio_path="", title=""))
        store.save(SavedRecording(id="other", patient_id="q", date=datetime(2024, 1, 9),
                                  duration_seconds=1.0, audio_path="", title=""))

        assert [r.id for r in store.list_for_patient("p")] == ["r3", "r2", "r1"]
        assert store.list_for_patient("nobody") == []

    def test_corrupt_index_starts_empty(self, temp_data_dir):
        """Test that an unreadable index does not prevent startup."""
        Path(temp_data_dir, "recordings.json").write_text("{not json")

        store = RecordingStore(temp_data_dir)
        assert store.list_all() == []

    def test_malformed_entries_are_skipped(self, temp_data_dir):
        entries = [
            {"id": "good", "patient_id": "p", "date": "2024-01-01T10:00:00",
             "duration_seconds": 2.5, "audio_path": "a.wav", "title": "ok"},
            {"id": "bad", "patient_id": "p", "date": "yesterday"},
        ]
        Path(temp_data_dir, "recordings.json").write_text(json.dumps(entries))

        store = RecordingStore(temp_data_dir)

        assert [r.id for r in store.list_all()] == ["good"]

    def test_index_is_written_whole(self, temp_data_dir):
        """Test the on-disk format and that no temp files are left behind."""
        store = RecordingStore(temp_data_dir)
        store.save(SavedRecording(id="r1", patient_id="p", date=datetime(2024, 1, 1, 8, 0),
                                  duration_seconds=3.0, audio_path="x.wav", title="t"))

        with open(store.index_file) as f:
            data = json.load(f)
        assert data == [{"id": "r1", "patient_id": "p", "date": "2024-01-01T08:00:00",
                         "duration_seconds": 3.0, "audio_path": "x.wav", "title": "t"}]
        assert not list(Path(temp_data_dir).glob(".recordings.*"))
