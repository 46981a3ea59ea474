"""Unit tests for status models and the error taxonomy."""

import pytest
from pubsub import pub

from clinscribe.audio.audio_saver import AudioSaver
from clinscribe.audio.capture import MicrophoneSource
from clinscribe.errors import ErrorKind, GenerationError, ScribeError, StreamConnectionError
from clinscribe.models.audio import AudioEvent, CaptureConstraints
from clinscribe.models.events import ConnectionState, ConnectionStatus


@pytest.mark.unit
class TestConnectionStatus:
    """Test cases for ConnectionStatus.describe."""

    def test_default(self):
        assert ConnectionStatus().describe() == "Disconnected"

    def test_reconnecting_shows_attempts(self):
        status = ConnectionStatus(state=ConnectionState.RECONNECTING, reconnect_attempt=2, max_attempts=5)
        assert status.describe() == "Reconnecting (attempt 2/5)..."

    def test_failed_shows_hint(self):
        status = ConnectionStatus(state=ConnectionState.FAILED, error=ErrorKind.AUTH_INVALID)

        assert status.is_error
        assert status.describe() == ("Transcription service rejected the credential "
                                     "(Verify the Deepgram API key)")

    def test_error_while_connected(self):
        status = ConnectionStatus(state=ConnectionState.STREAMING, error=ErrorKind.BACKEND_ERROR)
        assert status.describe() == "Transcribing...: Transcription service reported an error"


@pytest.mark.unit
class TestErrors:
    """Test cases for the error taxonomy."""

    def test_every_kind_has_a_message(self):
        for kind in ErrorKind:
            error = ScribeError(kind)
            assert error.status
            assert error.user_message().endswith(".")

    def test_retryable_kinds(self):
        assert StreamConnectionError().retryable is True
        assert StreamConnectionError(ErrorKind.CONNECTION_LOST).retryable is True
        assert ScribeError(ErrorKind.AUTH_INVALID).retryable is False
        assert ScribeError(ErrorKind.AUDIO_FORMAT_REJECTED).retryable is False

    def test_generation_error_defaults(self):
        error = GenerationError("boom")

        assert error.kind is ErrorKind.GENERATION_FAILED
        assert str(error) == "boom"
        assert "regenerating" in error.user_message()


@pytest.mark.unit
class TestAudioSaver:
    """Test cases for AudioSaver."""

    def test_collects_published_frames(self, fake_provider, sample_audio_chunk):
        source = MicrophoneSource(fake_provider)
        handle = source.acquire(CaptureConstraints())
        saver = AudioSaver(handle)

        saver.start()
        for i in range(3):
            pub.sendMessage(handle.topic, event=AudioEvent(chunk_id=f"chunk_{i}", audio_data=sample_audio_chunk,
                                                           timestamp=0.0, sequence_number=i))
        saver.stop()
        pub.sendMessage(handle.topic, event=AudioEvent(chunk_id="late", audio_data=sample_audio_chunk,
                                                       timestamp=0.0, sequence_number=9))
        source.release(handle)

        assert saver.get_pcm() == sample_audio_chunk * 3
        assert saver.duration_seconds == pytest.approx(3 * 1024 / 16000)
