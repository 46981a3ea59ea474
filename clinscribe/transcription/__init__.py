"""Streaming transcription module for clinscribe."""

from .aggregator import TranscriptAggregator, parse_speaker_roles
from .base import TranscriptionTransport, TransportMessage
from .client import StreamingTranscriptionClient, backoff_delay
from .deepgram import (
    AiohttpTransport,
    InboundMessage,
    MessageKind,
    StreamSettings,
    build_listen_url,
    classify_close,
    parse_message,
)

__all__ = [
    "TranscriptAggregator",
    "parse_speaker_roles",
    "TranscriptionTransport",
    "TransportMessage",
    "StreamingTranscriptionClient",
    "backoff_delay",
    "AiohttpTransport",
    "InboundMessage",
    "MessageKind",
    "StreamSettings",
    "build_listen_url",
    "classify_close",
    "parse_message",
]
