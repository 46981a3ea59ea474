"""Unit tests for ScribeConfig."""

from pathlib import Path

import pytest

from clinscribe.config import ScribeConfig


@pytest.mark.unit
class TestScribeConfig:
    """Test cases for ScribeConfig."""

    def test_defaults_without_file(self):
        config = ScribeConfig(environ={})

        assert config.get('audio.sample_rate') == 16000
        assert config.get('audio.timeslice_ms') == 250
        assert config.get('transcription.max_reconnect_attempts') == 5
        assert config.get('notes.min_transcript_chars') == 50
        assert config.get('missing.key', 'fallback') == 'fallback'

    def test_credentials_from_environment(self):
        config = ScribeConfig(environ={"DEEPGRAM_API_KEY": "dg", "OPENROUTER_API_KEY": "or"})

        assert config.transcription_api_key == "dg"
        assert config.notes_api_key == "or"

    def test_missing_credentials_are_empty(self):
        config = ScribeConfig(environ={})

        assert config.transcription_api_key == ""
        assert config.notes_api_key == ""

    def test_file_overrides_defaults(self, temp_data_dir):
        """Test that YAML settings are merged over the defaults."""
        config_file = Path(temp_data_dir) / "clinscribe.yaml"
        config_file.write_text(
            "audio:\n"
            "  timeslice_ms: 100\n"
            "transcription:\n"
            "  api_key_env: MY_DG_KEY\n"
            "  speaker_roles:\n"
            "    0: clinician\n"
            "storage:\n"
            "  data_directory: recordings\n"
        )

        config = ScribeConfig(str(config_file), environ={"MY_DG_KEY": "custom"})

        assert config.get('audio.timeslice_ms') == 100
        assert config.get('audio.sample_rate') == 16000
        assert config.get('transcription.speaker_roles') == {0: "clinician"}
        assert config.transcription_api_key == "custom"
        assert config.get_data_directory() == str(Path(temp_data_dir) / "recordings")

    def test_missing_file(self, temp_data_dir):
        with pytest.raises(FileNotFoundError):
            ScribeConfig(str(Path(temp_data_dir) / "nope.yaml"))

    def test_invalid_yaml(self, temp_data_dir):
        config_file = Path(temp_data_dir) / "broken.yaml"
        config_file.write_text("audio: [unclosed\n")

        with pytest.raises(ValueError):
            ScribeConfig(str(config_file))

    def test_set_creates_nested_keys(self):
        config = ScribeConfig(environ={})

        config.set('notes.visit_type', 'annual physical')
        config.set('extra.nested.value', 3)

        assert config.get('notes.visit_type') == 'annual physical'
        assert config.get('extra.nested.value') == 3
