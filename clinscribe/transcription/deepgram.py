"""Deepgram live-transcription wire protocol and its aiohttp transport."""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from ..config import ScribeConfig
from ..errors import ErrorKind, ProtocolError, StreamConnectionError
from ..models.transcription import TranscriptionEvent, Word
from .base import (
    CLOSE_ABNORMAL,
    CLOSE_NORMAL,
    TranscriptionTransport,
    TransportMessage,
)

logger = logging.getLogger(__name__)

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})

AUTH_ERROR_CODES = frozenset({"INVALID_AUTH", "INSUFFICIENT_PERMISSIONS"})


@dataclass
class StreamSettings:
    """Connection parameters sent as query parameters on the listen URL."""
    encoding: str
    sample_rate: int
    channels: int = 1
    model: str = "nova-2"
    language: str = "en-US"
    punctuate: bool = True
    interim_results: bool = True
    smart_format: bool = True
    diarize: bool = True
    endpointing: Any = 300
    utterance_end_ms: Optional[int] = 1000

    @classmethod
    def from_config(cls, config: ScribeConfig, encoding: str) -> "StreamSettings":
        return cls(
            encoding=encoding,
            sample_rate=config.get('audio.sample_rate', 16000),
            channels=config.get('audio.channels', 1),
            model=config.get('transcription.model', 'nova-2'),
            language=config.get('transcription.language', 'en-US'),
            punctuate=config.get('transcription.punctuate', True),
            interim_results=config.get('transcription.interim_results', True),
            smart_format=config.get('transcription.smart_format', True),
            diarize=config.get('transcription.diarize', True),
            endpointing=config.get('transcription.endpointing', 300),
            utterance_end_ms=config.get('transcription.utterance_end_ms', 1000),
        )

    def query_params(self) -> Dict[str, str]:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": self.encoding,
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
            "punctuate": _flag(self.punctuate),
            "interim_results": _flag(self.interim_results),
            "smart_format": _flag(self.smart_format),
            "diarize": _flag(self.diarize),
            "endpointing": _flag(self.endpointing) if isinstance(self.endpointing, bool) else str(self.endpointing),
        }
        # utterance_end_ms requires interim results
        if self.utterance_end_ms and self.interim_results:
            params["utterance_end_ms"] = str(self.utterance_end_ms)
        return params


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_listen_url(base_url: str, settings: StreamSettings) -> str:
    """Listen endpoint with connection parameters. Never carries the credential."""
    return f"{base_url}?{urlencode(settings.query_params())}"


class MessageKind(Enum):
    RESULTS = "Results"
    METADATA = "Metadata"
    SPEECH_STARTED = "SpeechStarted"
    UTTERANCE_END = "UtteranceEnd"
    WARNING = "Warning"
    ERROR = "Error"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class InboundMessage:
    """A classified inbound frame."""
    kind: MessageKind
    event: Optional[TranscriptionEvent] = None
    error_code: Optional[str] = None
    description: str = ""

    @property
    def is_auth_error(self) -> bool:
        return self.kind is MessageKind.ERROR and self.error_code in AUTH_ERROR_CODES


def _parse_words(raw_words: List[Dict[str, Any]]) -> List[Word]:
    words = []
    for raw in raw_words or []:
        words.append(Word(
            word=raw.get("punctuated_word") or raw.get("word", ""),
            start=float(raw.get("start", 0.0)),
            end=float(raw.get("end", 0.0)),
            confidence=float(raw.get("confidence", 0.0)),
            speaker=raw.get("speaker"),
        ))
    return words


def _dominant_speaker(words: List[Word]) -> Optional[int]:
    speakers = Counter(w.speaker for w in words if w.speaker is not None)
    if not speakers:
        return None
    return speakers.most_common(1)[0][0]


def _parse_results(data: Dict[str, Any]) -> Optional[TranscriptionEvent]:
    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    alternative = alternatives[0]
    transcript = alternative.get("transcript") or ""
    if not transcript.strip():
        # Silence produces empty results.
        return None

    words = _parse_words(alternative.get("words"))
    speaker = data.get("speaker")
    if speaker is None:
        speaker = _dominant_speaker(words)

    start = data.get("start")
    duration = data.get("duration")
    end = start + duration if start is not None and duration is not None else None

    return TranscriptionEvent(
        text=transcript,
        is_final=bool(data.get("is_final", False)),
        confidence=float(alternative.get("confidence", 0.0)),
        speaker=speaker,
        start_offset=start,
        end_offset=end,
        words=words,
    )


def _error_code(data: Dict[str, Any]) -> Optional[str]:
    error = data.get("error")
    if isinstance(error, dict) and error.get("code"):
        return error["code"]
    return data.get("err_code") or data.get("code") or data.get("variant")


def parse_message(text: str) -> InboundMessage:
    """Classify one inbound text frame."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON from Deepgram: {text[:200]}")
        return InboundMessage(MessageKind.UNKNOWN, description="invalid json")

    if not isinstance(data, dict):
        return InboundMessage(MessageKind.UNKNOWN, description="unexpected frame")

    msg_type = data.get("type")
    if msg_type == "Error" or "error" in data or "err_code" in data:
        error = data.get("error")
        description = (data.get("description") or data.get("err_msg") or data.get("message")
                       or (error.get("message") if isinstance(error, dict) else error) or "")
        return InboundMessage(MessageKind.ERROR, error_code=_error_code(data), description=str(description))

    if msg_type == "Results":
        return InboundMessage(MessageKind.RESULTS, event=_parse_results(data))

    for kind in (MessageKind.METADATA, MessageKind.SPEECH_STARTED,
                 MessageKind.UTTERANCE_END, MessageKind.WARNING):
        if msg_type == kind.value:
            return InboundMessage(kind, description=str(data.get("description", "")))

    return InboundMessage(MessageKind.UNKNOWN, description=str(msg_type))


def classify_close(code: int, reason: str) -> Optional[ErrorKind]:
    """Map a close code/reason to an error kind; None means a clean close."""
    if code == CLOSE_NORMAL:
        return None
    if code == 1008 and reason == "DATA-0000":
        return ErrorKind.AUDIO_FORMAT_REJECTED
    if code == 1011 and reason == "NET-0001":
        return ErrorKind.NO_AUDIO_RECEIVED
    return ErrorKind.CONNECTION_LOST


class AiohttpTransport(TranscriptionTransport):
    """WebSocket transport using aiohttp; credential via the sub-protocol."""

    authenticates_on_connect = True

    def __init__(self, connect_timeout: float = 10.0):
        self.connect_timeout = connect_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self, url: str, api_key: str) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url, protocols=("token", api_key), autoping=True),
                timeout=self.connect_timeout,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self._close_session()
            if e.status in (401, 403):
                raise ProtocolError(ErrorKind.AUTH_INVALID, f"Handshake rejected: {e.status}") from e
            if e.status == 400:
                raise ProtocolError(ErrorKind.CONFIG_INVALID, f"Handshake rejected: {e.message}") from e
            raise StreamConnectionError(ErrorKind.CONNECT_FAILED, f"Handshake failed: {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._close_session()
            raise StreamConnectionError(ErrorKind.CONNECT_FAILED, f"Connect failed: {e!r}") from e

    async def send_bytes(self, data: bytes) -> None:
        try:
            await self._ws.send_bytes(data)
        except (ConnectionResetError, aiohttp.ClientError) as e:
            raise StreamConnectionError(ErrorKind.CONNECTION_LOST, str(e)) from e

    async def send_text(self, text: str) -> None:
        try:
            await self._ws.send_str(text)
        except (ConnectionResetError, aiohttp.ClientError) as e:
            raise StreamConnectionError(ErrorKind.CONNECTION_LOST, str(e)) from e

    async def receive(self) -> TransportMessage:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return TransportMessage(text=msg.data)
            if msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug(f"Ignoring binary frame of {len(msg.data)} bytes")
                continue
            if msg.type == aiohttp.WSMsgType.CLOSE:
                return TransportMessage(close_code=msg.data, close_reason=msg.extra or "")
            if msg.type == aiohttp.WSMsgType.ERROR:
                return TransportMessage(close_code=CLOSE_ABNORMAL, close_reason=str(self._ws.exception()))
            # CLOSING / CLOSED: connection ended without a close frame we saw
            return TransportMessage(close_code=self._ws.close_code or CLOSE_ABNORMAL)

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        try:
            if self._ws is not None and not self._ws.closed:
                await self._ws.close(code=code, message=reason.encode())
        finally:
            await self._close_session()

    async def _close_session(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed
