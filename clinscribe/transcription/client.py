"""Streaming transcription client: one logical session over reconnecting transports."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..errors import ErrorKind, ProtocolError, StreamConnectionError
from ..models.events import ConnectionState, ConnectionStatus
from ..models.transcription import TranscriptionEvent
from .base import CLOSE_NORMAL, TranscriptionTransport, TransportMessage
from .deepgram import (
    CLOSE_STREAM_MESSAGE,
    KEEPALIVE_MESSAGE,
    MessageKind,
    classify_close,
    parse_message,
)

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30000

_SENDABLE_STATES = (ConnectionState.CONNECTED, ConnectionState.STREAMING)


def backoff_delay(attempt: int) -> int:
    """Delay in milliseconds before reconnect attempt ``attempt`` (1-based)."""
    return min(BACKOFF_BASE_MS * 2 ** (attempt - 1), BACKOFF_CAP_MS)


class StreamingTranscriptionClient:
    """Maintains a streaming transcription session with the backend.

    A supervisor task owns the physical connections: it connects, pumps
    inbound frames, and reconnects with exponential backoff after abnormal
    closures. Audio is sent fire-and-forget; chunks produced while no
    connection is usable are dropped.

    Callbacks run on the event loop. Nothing is delivered after ``stop()``
    returns.
    """

    def __init__(self,
                 transport_factory: Callable[[], TranscriptionTransport],
                 url: str,
                 api_key: str,
                 on_event: Optional[Callable[[TranscriptionEvent], None]] = None,
                 on_status: Optional[Callable[[ConnectionStatus], None]] = None,
                 max_reconnect_attempts: int = 5,
                 keepalive_interval: float = 8.0,
                 flush_timeout: float = 5.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the client.

        Args:
            transport_factory: Builds a fresh transport for each connection attempt
            url: Listen URL including connection parameters
            api_key: Backend credential, presented through the transport
            on_event: Receives every non-empty result
            on_status: Receives every connection status change
            max_reconnect_attempts: Reconnect attempts before giving up
            keepalive_interval: Seconds of audio silence before a KeepAlive is sent
            flush_timeout: Seconds to wait for final results after CloseStream
            sleep: Awaitable used for backoff delays
            clock: Monotonic clock used for keep-alive bookkeeping
        """
        self.transport_factory = transport_factory
        self.url = url
        self.api_key = api_key
        self.on_event = on_event
        self.on_status = on_status
        self.max_reconnect_attempts = max_reconnect_attempts
        self.keepalive_interval = keepalive_interval
        self.flush_timeout = flush_timeout
        self._sleep = sleep
        self._clock = clock

        self._status = ConnectionStatus(max_attempts=max_reconnect_attempts)
        self._transport: Optional[TranscriptionTransport] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._attempt = 0
        self._frame_received = False
        self._last_audio_sent = 0.0
        self._stopping = False
        self._silenced = False

        # Statistics
        self.connection_attempts = 0
        self.chunks_sent = 0
        self.chunks_dropped = 0
        self.keepalives_sent = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    def start(self) -> None:
        """Spawn the supervisor task. Must run inside the event loop."""
        if self._supervisor is not None:
            raise RuntimeError("StreamingTranscriptionClient can only be started once")
        logger.info("🔌 Starting transcription stream")
        self._supervisor = asyncio.ensure_future(self._run())
        self._supervisor.add_done_callback(self._on_supervisor_done)

    def _on_supervisor_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error(f"Transcription supervisor crashed: {task.exception()!r}")
        if self._status.state is not ConnectionState.FAILED:
            self._fail(ErrorKind.CONNECTION_LOST, str(task.exception()))

    async def send_audio(self, data: bytes) -> bool:
        """Send one encoded chunk. Returns False if the chunk was dropped."""
        if not data:
            return False

        transport = self._transport
        if self._stopping or transport is None or self._status.state not in _SENDABLE_STATES:
            self.chunks_dropped += 1
            return False

        try:
            await transport.send_bytes(data)
        except StreamConnectionError as e:
            # The receive loop sees the closure and drives reconnection.
            logger.debug(f"Audio send failed: {e}")
            self.chunks_dropped += 1
            return False

        self._last_audio_sent = self._clock()
        self.chunks_sent += 1
        if self._status.state is ConnectionState.CONNECTED:
            self._set_status(ConnectionState.STREAMING)
        return True

    async def stop(self) -> None:
        """End the session: CloseStream, wait for final results, close(1000)."""
        if self._stopping:
            return
        self._stopping = True

        transport = self._transport
        supervisor = self._supervisor
        try:
            if transport is not None and transport.is_open and self._status.state in _SENDABLE_STATES:
                try:
                    await transport.send_text(CLOSE_STREAM_MESSAGE)
                    logger.debug("Sent CloseStream, waiting for final results")
                    if supervisor is not None and not supervisor.done():
                        await asyncio.wait_for(asyncio.shield(supervisor), timeout=self.flush_timeout)
                except StreamConnectionError as e:
                    logger.warning(f"Could not send CloseStream: {e}")
                except asyncio.TimeoutError:
                    logger.warning(f"Backend did not close within {self.flush_timeout}s of CloseStream")
        finally:
            # Also runs when the flush wait is cancelled.
            await self._shutdown()
        logger.info(f"🔌 Transcription stream stopped "
                    f"({self.chunks_sent} chunks sent, {self.chunks_dropped} dropped)")

    async def close(self) -> None:
        """End the session at once, without waiting for final results."""
        self._stopping = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)

        if self._transport is not None:
            await self._close_transport(self._transport)

        if self._status.state is not ConnectionState.FAILED:
            self._set_status(ConnectionState.DISCONNECTED)
        self._silenced = True

    async def _run(self) -> None:
        """Supervisor: connect, pump, and reconnect until stopped or failed."""
        try:
            while not self._stopping:
                if self._attempt > 0:
                    if self._attempt > self.max_reconnect_attempts:
                        self._fail(ErrorKind.CONNECTION_LOST,
                                   f"Gave up after {self.max_reconnect_attempts} reconnect attempts")
                        return
                    self._set_status(ConnectionState.RECONNECTING)
                    delay_ms = backoff_delay(self._attempt)
                    logger.info(f"🔄 Reconnecting in {delay_ms}ms "
                                f"(attempt {self._attempt}/{self.max_reconnect_attempts})")
                    await self._sleep(delay_ms / 1000.0)
                    if self._stopping:
                        return

                transport = await self._connect()
                if transport is None:
                    if self._status.state is ConnectionState.FAILED:
                        return
                    self._attempt += 1
                    continue

                close = await self._pump(transport)
                await self._close_transport(transport)
                if self._stopping:
                    return

                kind = classify_close(close.close_code, close.close_reason)
                if kind is None:
                    logger.info("Backend closed the stream normally")
                    self._set_status(ConnectionState.DISCONNECTED)
                    return
                if kind is not ErrorKind.CONNECTION_LOST:
                    self._fail(kind, f"Closed with {close.close_code} {close.close_reason}")
                    return

                logger.warning(f"Connection closed abnormally: {close.close_code} {close.close_reason}")
                if self._frame_received:
                    self._attempt = 0
                self._attempt += 1
        except ProtocolError as e:
            if self._transport is not None:
                await self._close_transport(self._transport)
            self._fail(e.kind, str(e))

    async def _connect(self) -> Optional[TranscriptionTransport]:
        """One connect+auth handshake; None on a retryable failure."""
        self._set_status(ConnectionState.CONNECTING)
        transport = self.transport_factory()
        self._transport = transport
        self.connection_attempts += 1
        self._frame_received = False

        try:
            await transport.connect(self.url, self.api_key)
            if not transport.authenticates_on_connect:
                self._set_status(ConnectionState.AUTHENTICATING)
                await transport.authenticate(self.api_key)
        except StreamConnectionError as e:
            logger.warning(f"Connect attempt {self.connection_attempts} failed: {e}")
            await self._close_transport(transport)
            return None

        self._last_audio_sent = self._clock()
        self._set_status(ConnectionState.CONNECTED)
        logger.info("✅ Connected to transcription service")
        return transport

    async def _pump(self, transport: TranscriptionTransport) -> TransportMessage:
        """Receive frames until the connection ends; returns the close message."""
        keepalive = asyncio.ensure_future(self._keepalive(transport))
        try:
            while True:
                message = await transport.receive()
                if message.is_close:
                    return message
                self._frame_received = True
                self._handle_frame(message.text)
        finally:
            keepalive.cancel()

    def _handle_frame(self, text: str) -> None:
        message = parse_message(text)

        if message.kind is MessageKind.RESULTS:
            if message.event is not None and not self._silenced and self.on_event:
                self.on_event(message.event)
        elif message.kind is MessageKind.ERROR:
            if message.is_auth_error:
                raise ProtocolError(ErrorKind.AUTH_INVALID,
                                    f"{message.error_code}: {message.description}")
            logger.error(f"Backend error {message.error_code}: {message.description}")
            self._set_status(self._status.state, error=ErrorKind.BACKEND_ERROR,
                             detail=message.description or message.error_code)
        elif message.kind is MessageKind.WARNING:
            logger.warning(f"Backend warning: {message.description}")
        else:
            logger.debug(f"Backend frame: {message.kind.value}")

    async def _keepalive(self, transport: TranscriptionTransport) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if not transport.is_open:
                return
            if self._clock() - self._last_audio_sent < self.keepalive_interval:
                continue
            try:
                await transport.send_text(KEEPALIVE_MESSAGE)
            except StreamConnectionError as e:
                logger.debug(f"KeepAlive failed: {e}")
                return
            self.keepalives_sent += 1
            logger.debug("Sent KeepAlive")

    async def _close_transport(self, transport: TranscriptionTransport) -> None:
        try:
            await transport.close(CLOSE_NORMAL)
        except (StreamConnectionError, OSError) as e:
            logger.debug(f"Error closing transport: {e}")

    def _fail(self, kind: ErrorKind, detail: str) -> None:
        logger.error(f"❌ Transcription stream failed: {kind.value} ({detail})")
        self._set_status(ConnectionState.FAILED, error=kind, detail=detail)

    def _set_status(self, state: ConnectionState,
                    error: Optional[ErrorKind] = None,
                    detail: Optional[str] = None) -> None:
        if self._silenced:
            return
        self._status = ConnectionStatus(
            state=state,
            reconnect_attempt=self._attempt,
            max_attempts=self.max_reconnect_attempts,
            error=error,
            detail=detail,
        )
        if self.on_status:
            self.on_status(self._status)
