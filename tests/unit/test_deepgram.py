"""Unit tests for the Deepgram wire protocol helpers."""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from clinscribe.errors import ErrorKind
from clinscribe.transcription.deepgram import (
    MessageKind,
    StreamSettings,
    build_listen_url,
    classify_close,
    parse_message,
)

from conftest import results_frame


@pytest.mark.unit
class TestListenUrl:
    """Test cases for connection parameters."""

    def test_query_parameters(self, scribe_config):
        """Test that configuration becomes query parameters."""
        settings = StreamSettings.from_config(scribe_config, "linear16")
        url = build_listen_url("wss://api.deepgram.com/v1/listen", settings)

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.netloc == "api.deepgram.com"
        assert params["encoding"] == "linear16"
        assert params["sample_rate"] == "16000"
        assert params["channels"] == "1"
        assert params["model"] == "nova-2"
        assert params["interim_results"] == "true"
        assert params["diarize"] == "true"
        assert params["utterance_end_ms"] == "1000"

    def test_credential_not_in_url(self, scribe_config):
        """Test that the API key never appears in the URL."""
        settings = StreamSettings.from_config(scribe_config, "mulaw")
        url = build_listen_url(scribe_config.get('transcription.url'), settings)

        assert scribe_config.transcription_api_key not in url
        assert "token" not in url

    def test_utterance_end_needs_interim_results(self):
        """Test that utterance_end_ms is omitted without interim results."""
        settings = StreamSettings(encoding="linear16", sample_rate=16000, interim_results=False)
        assert "utterance_end_ms" not in settings.query_params()

    def test_endpointing_flag(self):
        """Test that endpointing may be disabled with a boolean."""
        settings = StreamSettings(encoding="linear16", sample_rate=16000, endpointing=False)
        assert settings.query_params()["endpointing"] == "false"


@pytest.mark.unit
class TestParseMessage:
    """Test cases for inbound frame classification."""

    def test_final_result(self):
        """Test a final result with diarized words."""
        message = parse_message(results_frame("Any chest pain today?", is_final=True, speaker=0,
                                              start=2.0, duration=1.5))

        assert message.kind is MessageKind.RESULTS
        event = message.event
        assert event.text == "Any chest pain today?"
        assert event.is_final is True
        assert event.speaker == 0
        assert event.start_offset == 2.0
        assert event.end_offset == 3.5
        assert [w.word for w in event.words] == ["Any", "chest", "pain", "today?"]

    def test_interim_result(self):
        """Test an interim result."""
        message = parse_message(results_frame("any chest", is_final=False))
        assert message.event.is_final is False
        assert message.event.speaker is None

    def test_empty_transcript_has_no_event(self):
        """Test that silence results carry no event."""
        message = parse_message(results_frame("", is_final=True))
        assert message.kind is MessageKind.RESULTS
        assert message.event is None

    def test_dominant_word_speaker(self):
        """Test that the most common word speaker is used without a top-level speaker."""
        frame = json.loads(results_frame("one two three"))
        for word, speaker in zip(frame["channel"]["alternatives"][0]["words"], [1, 1, 0]):
            word["speaker"] = speaker

        message = parse_message(json.dumps(frame))
        assert message.event.speaker == 1

    def test_auth_error(self):
        """Test that credential errors are recognized."""
        message = parse_message(json.dumps({"type": "Error", "err_code": "INVALID_AUTH",
                                            "err_msg": "Invalid credentials."}))

        assert message.kind is MessageKind.ERROR
        assert message.is_auth_error is True
        assert message.description == "Invalid credentials."

    def test_other_error(self):
        """Test that non-credential errors are not auth errors."""
        message = parse_message(json.dumps({"type": "Error", "variant": "RATE_LIMITED",
                                            "description": "Too many requests"}))

        assert message.kind is MessageKind.ERROR
        assert message.error_code == "RATE_LIMITED"
        assert message.is_auth_error is False

    @pytest.mark.parametrize("msg_type,kind", [
        ("Metadata", MessageKind.METADATA),
        ("SpeechStarted", MessageKind.SPEECH_STARTED),
        ("UtteranceEnd", MessageKind.UTTERANCE_END),
        ("Warning", MessageKind.WARNING),
        ("SomethingNew", MessageKind.UNKNOWN),
    ])
    def test_control_frames(self, msg_type, kind):
        """Test classification of non-result frames."""
        assert parse_message(json.dumps({"type": msg_type})).kind is kind

    def test_invalid_json(self):
        """Test that garbage is tolerated."""
        assert parse_message("not json {").kind is MessageKind.UNKNOWN


@pytest.mark.unit
class TestClassifyClose:
    """Test cases for close code classification."""

    def test_normal_close(self):
        assert classify_close(1000, "") is None

    def test_audio_format_rejected(self):
        assert classify_close(1008, "DATA-0000") is ErrorKind.AUDIO_FORMAT_REJECTED

    def test_no_audio_received(self):
        assert classify_close(1011, "NET-0001") is ErrorKind.NO_AUDIO_RECEIVED

    @pytest.mark.parametrize("code,reason", [(1006, ""), (1011, "NET-0000"), (1001, "going away")])
    def test_other_codes_are_retryable(self, code, reason):
        assert classify_close(code, reason) is ErrorKind.CONNECTION_LOST
