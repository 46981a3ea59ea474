"""Collects the raw PCM of a recording so it can be saved after stop."""

import logging
import threading
from typing import List

from pubsub import pub

from ..models.audio import AudioEvent
from .capture import DeviceHandle

logger = logging.getLogger(__name__)


class AudioSaver:
    """Subscribes to a device handle's frames and keeps them in memory."""

    def __init__(self, handle: DeviceHandle):
        self.topic = handle.topic
        self.sample_rate = handle.sample_rate
        self.channels = handle.constraints.channels
        self.audio_data: List[bytes] = []
        self.lock = threading.Lock()
        self.is_listening = False

    def start(self) -> None:
        pub.subscribe(self._on_audio_event, self.topic)
        self.is_listening = True

    def stop(self) -> None:
        if not self.is_listening:
            return
        pub.unsubscribe(self._on_audio_event, self.topic)
        self.is_listening = False
        logger.debug(f"AudioSaver collected {self.byte_count} bytes")

    def _on_audio_event(self, event: AudioEvent) -> None:
        if event.audio_data:
            with self.lock:
                self.audio_data.append(event.audio_data)

    @property
    def byte_count(self) -> int:
        with self.lock:
            return sum(len(chunk) for chunk in self.audio_data)

    @property
    def duration_seconds(self) -> float:
        return self.byte_count / float(self.sample_rate * self.channels * 2)

    def get_pcm(self) -> bytes:
        with self.lock:
            return b"".join(self.audio_data)
