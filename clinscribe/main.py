"""Main application entry point for clinscribe."""

import sys
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Optional

from . import __version__
from .audio.capture import MicrophoneSource, PyAudioCapabilityProvider
from .auto_mode import print_recordings, run_auto_mode
from .config import ScribeConfig
from .services.note_gateway import NoteGenerationGateway
from .services.session_controller import SessionController
from .storage.recording_store import RecordingStore

logger = logging.getLogger(__name__)


class Server:
    """Wires configuration, storage, microphone and controller together."""

    def __init__(self, config_path: Optional[str], log_level: Optional[str] = None):
        self.config = ScribeConfig(config_path)
        setup_logging(self.config, log_level or self.config.get('logging.level', 'INFO'))

        self.provider: Optional[PyAudioCapabilityProvider] = None
        self.controller: Optional[SessionController] = None
        self.store = RecordingStore(self.config.get_data_directory())

    def init(self) -> None:
        logger.info("Initializing services...")
        sample_rate = self.config.get('audio.sample_rate', 16000)
        timeslice = self.config.get('audio.timeslice_ms', 250)
        logger.info(f"Audio settings: {sample_rate}Hz, {timeslice}ms chunks, "
                    f"formats {self.config.get('audio.format_preference')}")

        self.provider = PyAudioCapabilityProvider()
        self.controller = SessionController(
            self.config,
            microphone=MicrophoneSource(self.provider),
            gateway=NoteGenerationGateway.from_config(self.config),
            store=self.store,
        )

    async def run_auto(self, patient_id: str, duration: int) -> bool:
        try:
            return await run_auto_mode(self.controller, patient_id, duration)
        finally:
            await self.cleanup()

    async def run_interactive(self, patient_id: str) -> None:
        # Imported here so auto mode does not require a terminal.
        from .ui.transcription_screen import TranscriptionScreen

        screen = TranscriptionScreen(self.controller, patient_id)
        try:
            await screen.run()
        finally:
            await self.cleanup()

    async def cleanup(self) -> None:
        if self.controller is not None:
            await self.controller.reset()
        if self.provider is not None:
            self.provider.terminate()
            self.provider = None


def setup_logging(config: ScribeConfig, level: str = "INFO") -> None:
    """Set up logging: everything to the log file, warnings to the console."""
    log_file_path = config.get('logging.file_path', 'data/logs/clinscribe.log')
    console_output = config.get('logging.console_output', True)

    log_dir = Path(log_file_path).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Console handler - only if enabled in config
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    logger.info("=" * 50)
    logger.info(f"clinscribe {__version__} starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("=" * 50)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="clinscribe - real-time clinical dictation with SOAP notes",
        epilog="Keys: SPACE=start/stop recording, R=reset, G=regenerate note, Q=quit"
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: built-in settings)"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: from config, INFO)"
    )

    parser.add_argument(
        "--patient-id",
        type=str,
        default="walk-in",
        help="Patient the recording belongs to (default: walk-in)"
    )

    parser.add_argument(
        "--auto",
        action="store_true",
        help="Run in automatic mode: record for --duration seconds, stop, print transcript and note"
    )

    parser.add_argument(
        "--duration",
        type=int,
        default=10,
        help="Duration in seconds for auto mode recording (default: 10)"
    )

    parser.add_argument(
        "--list-recordings",
        action="store_true",
        help="List saved recordings (for --patient-id if given) and exit"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"clinscribe v{__version__}"
    )
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point for clinscribe."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        server = Server(args.config, args.log_level)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(2)

    if args.list_recordings:
        patient_id = args.patient_id if args.patient_id != parser.get_default("patient_id") else None
        print_recordings(server.store, patient_id)
        return

    try:
        server.init()
        if args.auto:
            ok = asyncio.run(server.run_auto(args.patient_id, args.duration))
            sys.exit(0 if ok else 1)
        else:
            asyncio.run(server.run_interactive(args.patient_id))
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
    except OSError as e:
        print(f"❌ Error: {e}")
        logger.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
