"""Audio capture and encoding module."""

from .capture import (
    AudioCapabilityProvider,
    Capability,
    DeviceHandle,
    InputStream,
    MicrophoneSource,
    PyAudioCapabilityProvider,
)
from .encoder import AudioEncoder, AudioFormat, ChunkStream, FORMATS, select_format

__all__ = [
    'AudioCapabilityProvider',
    'Capability',
    'DeviceHandle',
    'InputStream',
    'MicrophoneSource',
    'PyAudioCapabilityProvider',
    'AudioEncoder',
    'AudioFormat',
    'ChunkStream',
    'FORMATS',
    'select_format',
]
