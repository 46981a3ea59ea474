"""Simple YAML configuration loader for clinscribe."""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "audio": {
        "sample_rate": 16000,
        "channels": 1,
        "frames_per_buffer": 1024,
        "echo_cancellation": True,
        "noise_suppression": True,
        "auto_gain_control": True,
        "timeslice_ms": 250,
        "format_preference": ["linear16", "mulaw"],
    },
    "transcription": {
        "url": "wss://api.deepgram.com/v1/listen",
        "api_key_env": "DEEPGRAM_API_KEY",
        "model": "nova-2",
        "language": "en-US",
        "punctuate": True,
        "interim_results": True,
        "smart_format": True,
        "diarize": True,
        "endpointing": 300,
        "utterance_end_ms": 1000,
        "keepalive_interval_seconds": 8.0,
        "flush_timeout_seconds": 5.0,
        "connect_timeout_seconds": 10.0,
        "max_reconnect_attempts": 5,
        "speaker_roles": {},
    },
    "notes": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "model": "openai/gpt-4o-mini",
        "temperature": 0.3,
        "max_tokens": 2000,
        "timeout_seconds": 60.0,
        "min_transcript_chars": 50,
        "visit_type": None,
    },
    "storage": {
        "data_directory": "data",
    },
    "logging": {
        "level": "INFO",
        "file_path": "data/logs/clinscribe.log",
        "console_output": True,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ScribeConfig:
    """clinscribe configuration loader.

    Settings come from an optional YAML file layered over ``DEFAULT_CONFIG``.
    Service credentials are never stored in the file: they are read from the
    environment once, when the configuration is constructed. A missing
    credential is not an error here; it is reported when a session or a note
    request actually needs it.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, built-in defaults are used
                        and relative paths resolve against the working directory.
            environ: Environment mapping to read credentials from (defaults to os.environ)
        """
        self.config_file = Path(config_path) if config_path else None

        if self.config_file is not None and not self.config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_file}")

        self.config = self._load_config()

        env = os.environ if environ is None else environ
        self._credentials = {
            "transcription": env.get(self.get("transcription.api_key_env"), "") or "",
            "notes": env.get(self.get("notes.api_key_env"), "") or "",
        }
        for service, key in self._credentials.items():
            if not key:
                logger.warning(f"No {service} credential found in the environment; "
                               f"{service} requests will report 'not configured'")

    def _load_config(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        if self.config_file is None:
            logger.info("No configuration file given, using defaults")
            config = copy.deepcopy(DEFAULT_CONFIG)
            self._resolve_paths(config, Path.cwd())
            return config

        logger.info(f"Loading configuration from: {self.config_file}")
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping")

        config = _merge(DEFAULT_CONFIG, loaded)
        self._resolve_paths(config, self.config_file.parent)

        logger.info("Configuration loaded successfully")
        return config

    def _resolve_paths(self, config: Dict[str, Any], base_dir: Path) -> None:
        """Resolve relative paths in configuration relative to config file location."""
        data_dir = config['storage']['data_directory']
        if not os.path.isabs(data_dir):
            config['storage']['data_directory'] = str(base_dir / data_dir)

        log_path = config['logging']['file_path']
        if not os.path.isabs(log_path):
            config['logging']['file_path'] = str(base_dir / log_path)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'transcription.model').

        Args:
            key_path: Dot-separated key path (e.g., 'audio.sample_rate')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value (e.g., 'notes.model')
            value: Value to set
        """
        keys = key_path.split('.')
        config_dict = self.config

        for key in keys[:-1]:
            if key not in config_dict:
                config_dict[key] = {}
            config_dict = config_dict[key]

        config_dict[keys[-1]] = value
        logger.debug(f"Configuration key '{key_path}' set to: {value}")

    @property
    def transcription_api_key(self) -> str:
        """Deepgram credential, empty when not configured."""
        return self._credentials["transcription"]

    @property
    def notes_api_key(self) -> str:
        """Note-generation credential, empty when not configured."""
        return self._credentials["notes"]

    def get_data_directory(self) -> str:
        """Get data directory path."""
        return str(Path(self.get('storage.data_directory', 'data')).absolute())
