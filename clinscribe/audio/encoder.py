"""Audio encoder/chunker: turns captured PCM frames into timesliced payloads."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set

import numpy as np
from pubsub import pub

from ..errors import EncodingError, ErrorKind
from ..models.audio import AudioEvent, EncodedChunk
from .capture import DeviceHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioFormat:
    """An audio encoding the transcription backend accepts."""
    name: str
    mime_type: str
    encoding: str  # Value of the backend's ``encoding`` query parameter
    bytes_per_sample: int


_MULAW_BIAS = 0x84
_MULAW_CLIP = 32635


def _encode_linear16(pcm: bytes) -> bytes:
    return pcm


def _encode_mulaw(pcm: bytes) -> bytes:
    """G.711 mu-law compression of 16-bit little-endian PCM."""
    samples = np.frombuffer(pcm, dtype=np.int16).astype(np.int32)
    sign = np.where(samples < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(samples), _MULAW_CLIP) + _MULAW_BIAS
    exponent = np.clip(np.floor(np.log2(magnitude)).astype(np.int32) - 7, 0, 7)
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


FORMATS: Dict[str, AudioFormat] = {
    "linear16": AudioFormat("linear16", "audio/l16", "linear16", 2),
    "mulaw": AudioFormat("mulaw", "audio/basic", "mulaw", 1),
}

_ENCODERS: Dict[str, Callable[[bytes], bytes]] = {
    "linear16": _encode_linear16,
    "mulaw": _encode_mulaw,
}

DEFAULT_FORMAT_PREFERENCE = ("linear16", "mulaw")


def select_format(preference: Iterable[str], supported: Set[str]) -> AudioFormat:
    """Pick the first format from ``preference`` that is known and supported.

    Raises:
        EncodingError: if none of the preferred formats is available.
    """
    preference = list(preference)
    for name in preference:
        if name in FORMATS and name in supported:
            if name != preference[0]:
                logger.warning(f"Preferred format '{preference[0]}' not supported, using '{name}'")
            return FORMATS[name]
    raise EncodingError(ErrorKind.FORMAT_UNSUPPORTED,
                        f"None of {preference} is supported (available: {sorted(supported)})")


class ChunkStream:
    """Async iterator of encoded chunks; ends when the encoder stops."""

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[EncodedChunk]]" = asyncio.Queue()

    def _put(self, chunk: Optional[EncodedChunk]) -> None:
        self._queue.put_nowait(chunk)

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> EncodedChunk:
        chunk = await self._queue.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


class AudioEncoder:
    """Encodes the frames of one device handle into fixed-timeslice chunks.

    One instance serves one recording: ``start`` may be called only once.
    """

    def __init__(self, handle: DeviceHandle, audio_format: AudioFormat, timeslice_ms: int = 250):
        self.handle = handle
        self.audio_format = audio_format
        self.timeslice_ms = timeslice_ms
        self._encode = _ENCODERS[audio_format.name]

        channels = handle.constraints.channels
        self.slice_bytes = int(handle.sample_rate * channels * 2 * timeslice_ms / 1000)

        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream: Optional[ChunkStream] = None
        self._sequence = 0
        self._started = False
        self._stopped = False

    def start(self) -> ChunkStream:
        """Begin capture and return the chunk stream. Must run inside the event loop."""
        if self._started:
            raise RuntimeError("AudioEncoder is not restartable; create a new instance")
        self._started = True

        self._loop = asyncio.get_running_loop()
        self._stream = ChunkStream()
        pub.subscribe(self._on_audio_event, self.handle.topic)
        self.handle.start_capture()

        logger.info(f"Encoder started: {self.audio_format.name}, {self.timeslice_ms}ms timeslice "
                    f"({self.slice_bytes} PCM bytes)")
        return self._stream

    def _on_audio_event(self, event: AudioEvent) -> None:
        """Runs on the capture thread."""
        if not event.audio_data:
            return
        with self._lock:
            if self._stopped:
                return
            self._buffer.extend(event.audio_data)
            while len(self._buffer) >= self.slice_bytes:
                pcm = bytes(self._buffer[:self.slice_bytes])
                del self._buffer[:self.slice_bytes]
                self._emit(pcm)

    def _emit(self, pcm: bytes) -> None:
        data = self._encode(pcm)
        if not data:
            return
        self._sequence += 1
        chunk = EncodedChunk(data=data, sequence_number=self._sequence, format_name=self.audio_format.name)
        self._loop.call_soon_threadsafe(self._stream._put, chunk)

    def stop(self) -> None:
        """Flush buffered audio and end the chunk stream."""
        if not self._started or self._stopped:
            return

        try:
            pub.unsubscribe(self._on_audio_event, self.handle.topic)
        except Exception as e:
            logger.warning(f"Error during unsubscribe: {e}")

        with self._lock:
            self._stopped = True
            if self._buffer:
                self._emit(bytes(self._buffer))
                self._buffer.clear()
            self._loop.call_soon_threadsafe(self._stream._put, None)

        logger.info(f"Encoder stopped after {self._sequence} chunks")
