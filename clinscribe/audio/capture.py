"""Microphone acquisition and continuous capture with event publishing."""

import math
import time
import uuid
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from threading import Thread, Event
from typing import Optional, Set, Any
from datetime import datetime

import numpy as np
import pyaudio
from pubsub import pub
from scipy.signal import resample_poly

from ..errors import AcquisitionError, ErrorKind
from ..models.audio import AudioEvent, AudioStats, CaptureConstraints

logger = logging.getLogger(__name__)

# Devices currently held by a DeviceHandle, process-wide.
_held_devices: Set[Any] = set()
_held_lock = threading.Lock()


class Capability(Enum):
    """Outcome of probing the platform for audio input."""
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    PERMISSION_DENIED = "permission_denied"


class InputStream(ABC):
    """An opened input stream delivering 16-bit PCM frames."""

    sample_rate: int

    @abstractmethod
    def read(self) -> bytes:
        """Block until one buffer of frames is available and return it."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class AudioCapabilityProvider(ABC):
    """Platform capability probing and stream opening."""

    @abstractmethod
    def probe_input(self, constraints: CaptureConstraints) -> Capability:
        pass

    @abstractmethod
    def open_stream(self, constraints: CaptureConstraints) -> InputStream:
        pass

    @abstractmethod
    def supported_encodings(self) -> Set[str]:
        """Names of the audio encodings this platform can produce."""
        pass


class PyAudioInputStream(InputStream):
    """InputStream backed by a PyAudio blocking stream."""

    def __init__(self, stream: pyaudio.Stream, sample_rate: int, frames_per_buffer: int):
        self.stream = stream
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer

    def read(self) -> bytes:
        return self.stream.read(self.frames_per_buffer, exception_on_overflow=False)

    def close(self) -> None:
        try:
            self.stream.stop_stream()
        finally:
            self.stream.close()


class PyAudioCapabilityProvider(AudioCapabilityProvider):
    """Capability provider for PortAudio devices via PyAudio."""

    def __init__(self):
        self.pyaudio_instance: Optional[pyaudio.PyAudio] = None

    def _instance(self) -> pyaudio.PyAudio:
        if self.pyaudio_instance is None:
            self.pyaudio_instance = pyaudio.PyAudio()
        return self.pyaudio_instance

    def _device_info(self, constraints: CaptureConstraints) -> dict:
        pa = self._instance()
        if constraints.device_index is None:
            return pa.get_default_input_device_info()
        return pa.get_device_info_by_index(constraints.device_index)

    def probe_input(self, constraints: CaptureConstraints) -> Capability:
        try:
            pa = self._instance()
            if pa.get_device_count() == 0:
                return Capability.UNSUPPORTED
            info = self._device_info(constraints)
        except (IOError, OSError) as e:
            logger.debug(f"No usable input device: {e}")
            return Capability.UNSUPPORTED

        if int(info.get('maxInputChannels', 0)) < constraints.channels:
            logger.debug(f"Device '{info.get('name')}' has too few input channels")
            return Capability.UNSUPPORTED
        return Capability.SUPPORTED

    def open_stream(self, constraints: CaptureConstraints) -> InputStream:
        pa = self._instance()
        info = self._device_info(constraints)
        device_index = int(info['index'])
        rate = constraints.sample_rate

        try:
            pa.is_format_supported(rate,
                                   input_device=device_index,
                                   input_channels=constraints.channels,
                                   input_format=pyaudio.paInt16)
        except ValueError:
            rate = int(info['defaultSampleRate'])
            logger.info(f"Device does not support {constraints.sample_rate}Hz, "
                        f"capturing at {rate}Hz and resampling")

        try:
            stream = pa.open(
                format=pyaudio.paInt16,
                channels=constraints.channels,
                rate=rate,
                input=True,
                input_device_index=device_index,
                frames_per_buffer=constraints.frames_per_buffer,
                stream_callback=None
            )
        except OSError as e:
            raise AcquisitionError(ErrorKind.MIC_PERMISSION_DENIED, f"Could not open input device: {e}") from e

        logger.info(f"Audio stream opened: {rate}Hz, "
                    f"{constraints.frames_per_buffer} samples/chunk, device '{info.get('name')}'")
        return PyAudioInputStream(stream, rate, constraints.frames_per_buffer)

    def supported_encodings(self) -> Set[str]:
        # Both encodings are produced from paInt16 frames in numpy.
        return {"linear16", "mulaw"}

    def terminate(self) -> None:
        if self.pyaudio_instance is not None:
            self.pyaudio_instance.terminate()
            self.pyaudio_instance = None


class DeviceHandle:
    """Exclusive ownership of one opened input device.

    Frames are read on a background thread and published as ``AudioEvent`` on
    ``self.topic``; listeners run on the capture thread.
    """

    def __init__(self, stream: InputStream, constraints: CaptureConstraints, device_key: Any):
        self.stream = stream
        self.constraints = constraints
        self.device_key = device_key
        self.topic = f"audio_events_{uuid.uuid4().hex[:8]}"
        self.released = False
        self.error: Optional[Exception] = None

        # Recording thread management
        self.capture_thread: Optional[Thread] = None
        self.stop_event = Event()
        self.is_capturing = False

        # Statistics tracking
        self.start_time: Optional[datetime] = None
        self.total_chunks = 0
        self.peak_level = 0.0

        gcd = math.gcd(stream.sample_rate, constraints.sample_rate)
        self._resample = (constraints.sample_rate // gcd, stream.sample_rate // gcd)

    @property
    def sample_rate(self) -> int:
        """Rate of the published frames (always the requested rate)."""
        return self.constraints.sample_rate

    def start_capture(self) -> None:
        """Start continuous capture in a background thread."""
        if self.released:
            raise RuntimeError("Device handle has been released")
        if self.is_capturing:
            logger.warning("Capture already in progress")
            return

        logger.info("Starting audio capture")
        self.stop_event.clear()
        self.start_time = datetime.now()
        self.total_chunks = 0

        self.capture_thread = Thread(target=self._record_continuously, daemon=True)
        self.capture_thread.name = "AudioCaptureThread"
        self.is_capturing = True
        self.capture_thread.start()

    def stop_capture(self) -> None:
        """Stop capture and wait for the thread to finish."""
        if not self.is_capturing:
            return

        logger.info("Stopping audio capture")
        self.stop_event.set()

        if self.capture_thread and self.capture_thread.is_alive():
            self.capture_thread.join(timeout=2.0)
            if self.capture_thread.is_alive():
                logger.warning("Capture thread did not stop cleanly")

        self.is_capturing = False
        logger.info(f"Capture stopped. Total chunks: {self.total_chunks}")

    def _convert(self, raw: bytes) -> bytes:
        if self._resample == (1, 1):
            return raw
        samples = np.frombuffer(raw, dtype=np.int16).astype(np.float32)
        resampled = resample_poly(samples, *self._resample)
        return np.clip(resampled, -32768, 32767).astype(np.int16).tobytes()

    def _publish_audio_event(self, audio_chunk: bytes) -> None:
        self.total_chunks += 1
        if audio_chunk:
            samples = np.frombuffer(audio_chunk, dtype=np.int16)
            if samples.size:
                self.peak_level = float(np.abs(samples.astype(np.int32)).max()) / 32768.0

        audio_event = AudioEvent(
            chunk_id=f"chunk_{self.total_chunks}",
            audio_data=audio_chunk,
            timestamp=time.time(),
            sequence_number=self.total_chunks,
            sample_rate=self.sample_rate,
            channels=self.constraints.channels,
        )
        pub.sendMessage(self.topic, event=audio_event)

    def _record_continuously(self) -> None:
        """Internal method: continuous capture loop in background thread."""
        try:
            while not self.stop_event.is_set():
                raw = self.stream.read()
                self._publish_audio_event(self._convert(raw))
        except OSError as e:
            # The device went away; the handle is no longer usable.
            self.error = e
            logger.error(f"Audio capture failed: {e}")
        finally:
            self.is_capturing = False

    def get_recording_stats(self) -> AudioStats:
        """Get current capture statistics."""
        duration = 0.0
        if self.start_time:
            duration = (datetime.now() - self.start_time).total_seconds()

        return AudioStats(
            is_recording=self.is_capturing,
            duration_seconds=duration,
            sample_rate=self.sample_rate,
            chunk_size=self.constraints.frames_per_buffer,
            total_chunks=self.total_chunks,
            peak_level=self.peak_level,
        )


class MicrophoneSource:
    """Acquires and releases exclusive input devices."""

    def __init__(self, provider: Optional[AudioCapabilityProvider] = None):
        self.provider = provider or PyAudioCapabilityProvider()

    def acquire(self, constraints: CaptureConstraints) -> DeviceHandle:
        """Open the input device described by ``constraints``.

        Raises:
            AcquisitionError: unsupported platform, permission denied, or the
                device is already held by another handle.
        """
        capability = self.provider.probe_input(constraints)
        if capability is Capability.UNSUPPORTED:
            raise AcquisitionError(ErrorKind.MIC_UNSUPPORTED)
        if capability is Capability.PERMISSION_DENIED:
            raise AcquisitionError(ErrorKind.MIC_PERMISSION_DENIED)

        device_key = "default" if constraints.device_index is None else constraints.device_index
        with _held_lock:
            if device_key in _held_devices:
                raise AcquisitionError(ErrorKind.MIC_BUSY)
            _held_devices.add(device_key)

        try:
            stream = self.provider.open_stream(constraints)
        except AcquisitionError:
            self._forget(device_key)
            raise
        except OSError as e:
            self._forget(device_key)
            raise AcquisitionError(ErrorKind.MIC_PERMISSION_DENIED, str(e)) from e

        unapplied = [name for name in ("echo_cancellation", "noise_suppression", "auto_gain_control")
                     if getattr(constraints, name)]
        if unapplied:
            logger.debug(f"Capture constraints not applied by this platform: {', '.join(unapplied)}")

        logger.info(f"🎤 Microphone acquired ({device_key})")
        return DeviceHandle(stream, constraints, device_key)

    def release(self, handle: Optional[DeviceHandle]) -> None:
        """Stop capture and free the device. Safe to call more than once."""
        if handle is None or handle.released:
            return

        handle.released = True
        try:
            handle.stop_capture()
            handle.stream.close()
        except OSError as e:
            logger.warning(f"Error closing input stream: {e}")
        finally:
            self._forget(handle.device_key)
            logger.info(f"Microphone released ({handle.device_key})")

    @staticmethod
    def _forget(device_key: Any) -> None:
        with _held_lock:
            _held_devices.discard(device_key)
