"""Abstract transport for streaming transcription backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import logging

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_ABNORMAL = 1006


@dataclass(frozen=True)
class TransportMessage:
    """One inbound item: a text frame, or the end of the connection."""
    text: Optional[str] = None
    close_code: Optional[int] = None
    close_reason: str = ""

    @property
    def is_close(self) -> bool:
        return self.close_code is not None


class TranscriptionTransport(ABC):
    """A bidirectional message transport to the transcription backend.

    One instance represents one physical connection. The streaming client
    creates a fresh transport for every connection attempt, so a fake
    implementing this contract is enough to drive the client in tests.
    """

    #: True when the credential is presented during the handshake itself, in
    #: which case the client skips its authenticating state.
    authenticates_on_connect: bool = True

    @abstractmethod
    async def connect(self, url: str, api_key: str) -> None:
        """Open the connection.

        Raises:
            StreamConnectionError: retryable failure (network, timeout)
            ProtocolError: the backend rejected the credential or parameters
        """
        pass

    async def authenticate(self, api_key: str) -> None:
        """Send the credential after connecting, for transports that need it."""
        pass

    @abstractmethod
    async def send_bytes(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def send_text(self, text: str) -> None:
        pass

    @abstractmethod
    async def receive(self) -> TransportMessage:
        """Wait for the next text frame.

        Returns a message with ``close_code`` set once the connection has
        ended; abnormal termination is reported as ``CLOSE_ABNORMAL``.
        """
        pass

    @abstractmethod
    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close the connection. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass
