"""Connection and controller state models published to observers."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ErrorKind, describe_kind


class ConnectionState(Enum):
    """States of the transcription backend link."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ControllerState(Enum):
    """Top-level recording state exposed to the UI."""
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


_STATE_TEXT = {
    ConnectionState.DISCONNECTED: "Disconnected",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.AUTHENTICATING: "Authenticating...",
    ConnectionState.CONNECTED: "Connected",
    ConnectionState.STREAMING: "Transcribing...",
    ConnectionState.FAILED: "Connection Failed",
}


@dataclass(frozen=True)
class ConnectionStatus:
    """Snapshot of the transcription link, written only by the streaming client."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempt: int = 0
    max_attempts: int = 0
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def describe(self) -> str:
        """Human-readable status line with remediation hint where one exists."""
        if self.state is ConnectionState.RECONNECTING:
            text = f"Reconnecting (attempt {self.reconnect_attempt}/{self.max_attempts})..."
        else:
            text = _STATE_TEXT[self.state]
        if self.error is not None:
            status, hint = describe_kind(self.error)
            text = f"{text}: {status}" if self.state is not ConnectionState.FAILED else status
            if hint:
                text = f"{text} ({hint})"
        return text
