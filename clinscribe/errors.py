"""Error taxonomy for the dictation pipeline.

Every failure the pipeline can report carries an ``ErrorKind``. The kind
selects the short status string and remediation hint shown to the user, and
tells the streaming client whether a retry is allowed.
"""

from enum import Enum
from typing import Optional, Tuple


class ErrorKind(Enum):
    """Distinct reportable failure conditions."""
    MIC_UNSUPPORTED = "error_mic_unsupported"
    MIC_PERMISSION_DENIED = "error_mic_permission"
    MIC_BUSY = "error_mic_busy"
    FORMAT_UNSUPPORTED = "error_recorder_unsupported"
    NOT_CONFIGURED = "error_not_configured"
    AUTH_INVALID = "error_auth_invalid"
    CONFIG_INVALID = "error_config_invalid"
    CONNECT_FAILED = "error_websocket"
    CONNECTION_LOST = "error_connection_lost"
    STREAM_ENDED = "error_stream_ended"
    BACKEND_ERROR = "error_deepgram_api"
    AUDIO_FORMAT_REJECTED = "error_audio_format"
    NO_AUDIO_RECEIVED = "error_no_audio"
    GENERATION_FAILED = "error_generation"


# kind -> (status text, remediation hint)
_MESSAGES = {
    ErrorKind.MIC_UNSUPPORTED: (
        "Microphone capture is not supported on this system",
        "Connect an input device or install PortAudio",
    ),
    ErrorKind.MIC_PERMISSION_DENIED: (
        "Microphone access was denied",
        "Enable microphone permission in your system privacy settings",
    ),
    ErrorKind.MIC_BUSY: (
        "Microphone is already in use by another session",
        "Stop or reset the other recording first",
    ),
    ErrorKind.FORMAT_UNSUPPORTED: (
        "No supported audio encoding is available",
        "Check audio.format_preference in the configuration",
    ),
    ErrorKind.NOT_CONFIGURED: (
        "Service credential is not configured",
        "Set the API key environment variable and restart",
    ),
    ErrorKind.AUTH_INVALID: (
        "Transcription service rejected the credential",
        "Verify the Deepgram API key",
    ),
    ErrorKind.CONFIG_INVALID: (
        "Transcription service rejected the connection parameters",
        "Check the transcription section of the configuration",
    ),
    ErrorKind.CONNECT_FAILED: (
        "Could not connect to the transcription service",
        "Check your network connection",
    ),
    ErrorKind.CONNECTION_LOST: (
        "Connection to the transcription service was lost",
        "Check your network connection and start a new recording",
    ),
    ErrorKind.STREAM_ENDED: (
        "Transcription service ended the stream",
        "Stop the recording to save it, then start a new one",
    ),
    ErrorKind.BACKEND_ERROR: (
        "Transcription service reported an error",
        None,
    ),
    ErrorKind.AUDIO_FORMAT_REJECTED: (
        "Transcription service could not decode the audio",
        "The audio encoding does not match the connection parameters",
    ),
    ErrorKind.NO_AUDIO_RECEIVED: (
        "Transcription service received no audio",
        "Check that the microphone is not muted",
    ),
    ErrorKind.GENERATION_FAILED: (
        "Clinical note generation failed",
        "The transcript is kept; try regenerating the note",
    ),
}

RETRYABLE_KINDS = frozenset({
    ErrorKind.CONNECT_FAILED,
    ErrorKind.CONNECTION_LOST,
})


def describe_kind(kind: ErrorKind) -> Tuple[str, Optional[str]]:
    """Return the status text and optional remediation hint for a kind."""
    return _MESSAGES[kind]


class ScribeError(Exception):
    """Base class for all reportable pipeline failures."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None):
        self.kind = kind
        status, hint = describe_kind(kind)
        self.status = status
        self.hint = hint
        super().__init__(message or status)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def user_message(self) -> str:
        """Short human-readable text plus hint, for display."""
        if self.hint:
            return f"{self.status}. {self.hint}."
        return f"{self.status}."


class AcquisitionError(ScribeError):
    """Microphone could not be acquired (unsupported, denied, busy)."""


class EncodingError(ScribeError):
    """No audio encoding from the preference list is available."""


class StreamConnectionError(ScribeError):
    """Transient transport failure; handled by the reconnection policy."""

    def __init__(self, kind: ErrorKind = ErrorKind.CONNECT_FAILED, message: Optional[str] = None):
        super().__init__(kind, message)


class ProtocolError(ScribeError):
    """Non-retryable failure: bad credential, rejected audio, backend fault."""


class GenerationError(ScribeError):
    """Note generation failed or returned an incomplete structure."""

    def __init__(self, message: Optional[str] = None, kind: ErrorKind = ErrorKind.GENERATION_FAILED):
        super().__init__(kind, message)
