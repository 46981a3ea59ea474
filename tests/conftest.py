"""Pytest configuration and fixtures for clinscribe tests."""

import asyncio
import json
import logging
import tempfile
import time
from typing import List, Optional, Set
from unittest.mock import Mock, patch

import numpy as np
import pytest

from clinscribe.audio import capture
from clinscribe.audio.capture import AudioCapabilityProvider, Capability, InputStream
from clinscribe.config import ScribeConfig
from clinscribe.errors import ErrorKind, StreamConnectionError
from clinscribe.models.audio import CaptureConstraints
from clinscribe.transcription.base import TranscriptionTransport, TransportMessage
from clinscribe.transcription.deepgram import CLOSE_STREAM_MESSAGE


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without hardware or network")
    config.addinivalue_line("markers", "integration: tests wiring several components together")
    config.addinivalue_line("markers", "hardware: tests that need a real microphone")


@pytest.fixture(autouse=True)
def release_held_devices():
    """Forget device ownership left behind by a failed test."""
    yield
    with capture._held_lock:
        capture._held_devices.clear()


@pytest.fixture
def temp_data_dir():
    """Create temporary directory for test data."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def sample_audio_chunk():
    """Generate a sample audio chunk for testing."""
    # Generate 1024 samples of 16-bit audio (sine wave)
    sample_rate = 16000
    duration = 1024 / sample_rate  # ~0.064 seconds
    freq = 440  # A4 note

    t = np.linspace(0, duration, 1024, False)
    wave_data = np.sin(2 * np.pi * freq * t)

    # Convert to 16-bit integers
    audio_data = (wave_data * 32767).astype(np.int16)
    return audio_data.tobytes()


@pytest.fixture
def mock_pyaudio(sample_audio_chunk):
    """Mock PyAudio for testing without actual audio hardware."""
    with patch('pyaudio.PyAudio') as mock_pyaudio_class:
        mock_pyaudio_instance = Mock()
        mock_stream = Mock()

        def read(frames, exception_on_overflow=True):
            time.sleep(0.01)
            return sample_audio_chunk

        # Configure mock stream
        mock_stream.read.side_effect = read
        mock_stream.stop_stream.return_value = None
        mock_stream.close.return_value = None

        # Configure mock PyAudio instance
        mock_pyaudio_instance.get_device_count.return_value = 1
        mock_pyaudio_instance.get_default_input_device_info.return_value = {
            'index': 0, 'name': 'Mock Microphone', 'maxInputChannels': 1, 'defaultSampleRate': 44100.0,
        }
        mock_pyaudio_instance.is_format_supported.return_value = True
        mock_pyaudio_instance.open.return_value = mock_stream
        mock_pyaudio_instance.terminate.return_value = None

        # Configure mock PyAudio class
        mock_pyaudio_class.return_value = mock_pyaudio_instance

        yield {
            'class': mock_pyaudio_class,
            'instance': mock_pyaudio_instance,
            'stream': mock_stream
        }


@pytest.fixture
def scribe_config(temp_data_dir):
    """Configuration with both credentials present and data under a temp dir."""
    config = ScribeConfig(environ={"DEEPGRAM_API_KEY": "dg-test-key",
                                   "OPENROUTER_API_KEY": "or-test-key"})
    config.set('storage.data_directory', temp_data_dir)
    config.set('logging.file_path', f"{temp_data_dir}/logs/test.log")
    return config


# Audio fakes

class FakeInputStream(InputStream):
    """Delivers a 440Hz tone in small blocking reads, like a slow device."""

    def __init__(self, sample_rate: int = 16000, frames: int = 320, read_delay: float = 0.005):
        self.sample_rate = sample_rate
        self.frames = frames
        self.read_delay = read_delay
        self.reads = 0
        self.closed = False
        t = np.arange(frames) / sample_rate
        self._block = (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16).tobytes()

    def read(self) -> bytes:
        if self.closed:
            raise OSError("stream closed")
        time.sleep(self.read_delay)
        self.reads += 1
        return self._block

    def close(self) -> None:
        self.closed = True


class FakeCapabilityProvider(AudioCapabilityProvider):
    """Capability provider with a scriptable probe result."""

    def __init__(self,
                 capability: Capability = Capability.SUPPORTED,
                 encodings: Optional[Set[str]] = None,
                 stream_rate: Optional[int] = None):
        self.capability = capability
        self.encodings = {"linear16", "mulaw"} if encodings is None else encodings
        self.stream_rate = stream_rate
        self.streams: List[FakeInputStream] = []

    def probe_input(self, constraints: CaptureConstraints) -> Capability:
        return self.capability

    def open_stream(self, constraints: CaptureConstraints) -> FakeInputStream:
        stream = FakeInputStream(sample_rate=self.stream_rate or constraints.sample_rate)
        self.streams.append(stream)
        return stream

    def supported_encodings(self) -> Set[str]:
        return set(self.encodings)


@pytest.fixture
def fake_provider():
    return FakeCapabilityProvider()


# Transcription fakes

def results_frame(text: str, is_final: bool = True, speaker: Optional[int] = None,
                  confidence: float = 0.9, start: float = 0.0, duration: float = 1.0) -> str:
    """A Deepgram ``Results`` frame as it arrives on the wire."""
    words = [{"word": w.lower().strip(".,"), "punctuated_word": w, "start": start, "end": start + duration,
              "confidence": confidence, "speaker": speaker} for w in text.split()]
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "speech_final": is_final,
        "start": start,
        "duration": duration,
        "channel": {"alternatives": [{"transcript": text, "confidence": confidence, "words": words}]},
    })


class FakeTransport(TranscriptionTransport):
    """In-memory transport: scripted inbound frames, recorded outbound frames.

    ``messages`` are queued on connect; more can be pushed later. Sending
    CloseStream makes the fake backend close normally, unless disabled.
    """

    def __init__(self, messages=(), connect_error: Optional[Exception] = None,
                 close_on_close_stream: bool = True):
        self.messages = list(messages)
        self.connect_error = connect_error
        self.close_on_close_stream = close_on_close_stream

        self.url: Optional[str] = None
        self.api_key: Optional[str] = None
        self.sent_bytes: List[bytes] = []
        self.sent_text: List[str] = []
        self.close_calls: List[int] = []
        self._inbound: Optional[asyncio.Queue] = None
        self._open = False

    async def connect(self, url: str, api_key: str) -> None:
        self.url = url
        self.api_key = api_key
        if self.connect_error is not None:
            raise self.connect_error
        self._inbound = asyncio.Queue()
        for message in self.messages:
            self.push(message)
        self._open = True

    def push(self, message) -> None:
        if isinstance(message, str):
            message = TransportMessage(text=message)
        self._inbound.put_nowait(message)

    def push_close(self, code: int, reason: str = "") -> None:
        self.push(TransportMessage(close_code=code, close_reason=reason))

    async def send_bytes(self, data: bytes) -> None:
        if not self._open:
            raise StreamConnectionError(ErrorKind.CONNECTION_LOST, "transport closed")
        self.sent_bytes.append(data)

    async def send_text(self, text: str) -> None:
        if not self._open:
            raise StreamConnectionError(ErrorKind.CONNECTION_LOST, "transport closed")
        self.sent_text.append(text)
        if text == CLOSE_STREAM_MESSAGE and self.close_on_close_stream:
            self.push_close(1000)

    async def receive(self) -> TransportMessage:
        return await self._inbound.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append(code)
        if self._open:
            self._open = False
            self.push_close(code, reason)

    @property
    def is_open(self) -> bool:
        return self._open


class FakeTransportFactory:
    """Hands out the given transports in order, then fresh default ones."""

    def __init__(self, *transports, default=None):
        self.pending = list(transports)
        self.default = default or FakeTransport
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = self.pending.pop(0) if self.pending else self.default()
        self.created.append(transport)
        return transport


class RecordingSleep:
    """Backoff sleep that records delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
