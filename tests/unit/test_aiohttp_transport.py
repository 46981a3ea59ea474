"""Unit tests for AiohttpTransport against a local WebSocket endpoint."""

import asyncio

import pytest
from aiohttp import WSMsgType, test_utils, web

from clinscribe.errors import ErrorKind, ProtocolError, StreamConnectionError
from clinscribe.transcription.deepgram import CLOSE_STREAM_MESSAGE, AiohttpTransport, classify_close

from conftest import results_frame, wait_until


class ListenEndpoint:
    """A local stand-in for the live-listen WebSocket endpoint.

    Sends one Results frame on connect, records what the client sends, and
    closes with 1000 after CloseStream. ``reject_status`` fails the handshake;
    ``close_on_audio`` closes with the given code and reason on the first
    binary frame.
    """

    def __init__(self, reject_status=None, close_on_audio=None):
        self.reject_status = reject_status
        self.close_on_audio = close_on_audio
        self.protocol_header = None
        self.query = None
        self.received_bytes = []
        self.received_text = []
        self.close_code = None

    async def handle(self, request):
        self.protocol_header = request.headers.get("Sec-WebSocket-Protocol")
        self.query = dict(request.query)
        if self.reject_status is not None:
            return web.Response(status=self.reject_status, text="rejected")

        ws = web.WebSocketResponse(protocols=("token",))
        await ws.prepare(request)
        await ws.send_str(results_frame("good morning", speaker=0))

        async for msg in ws:
            if msg.type == WSMsgType.BINARY:
                self.received_bytes.append(msg.data)
                if self.close_on_audio is not None:
                    code, reason = self.close_on_audio
                    await ws.close(code=code, message=reason.encode())
            elif msg.type == WSMsgType.TEXT:
                self.received_text.append(msg.data)
                if msg.data == CLOSE_STREAM_MESSAGE:
                    await ws.close(code=1000)

        self.close_code = ws.close_code
        return ws


async def serve(endpoint):
    app = web.Application()
    app.router.add_get("/v1/listen", endpoint.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


def listen_url(server):
    return f"ws://{server.host}:{server.port}/v1/listen?encoding=linear16&sample_rate=16000"


@pytest.mark.unit
class TestAiohttpTransport:
    """Test cases for the aiohttp WebSocket transport."""

    def test_credential_sent_as_subprotocol(self):
        """Test the handshake, a round trip of frames, and the CloseStream flush."""
        endpoint = ListenEndpoint()

        async def run():
            server = await serve(endpoint)
            transport = AiohttpTransport(connect_timeout=5.0)
            try:
                await transport.connect(listen_url(server), "dg-secret")
                opened = transport.is_open
                first = await transport.receive()
                await transport.send_bytes(b"\x00\x01\x02\x03")
                await transport.send_text(CLOSE_STREAM_MESSAGE)
                last = await transport.receive()
                await transport.close()
                return opened, first, last, transport.is_open
            finally:
                await server.close()

        opened, first, last, still_open = asyncio.run(run())

        assert opened is True
        assert [p.strip() for p in endpoint.protocol_header.split(",")] == ["token", "dg-secret"]
        assert "dg-secret" not in str(endpoint.query)
        assert endpoint.query["encoding"] == "linear16"
        assert '"good morning"' in first.text
        assert endpoint.received_bytes == [b"\x00\x01\x02\x03"]
        assert endpoint.received_text == [CLOSE_STREAM_MESSAGE]
        assert last.is_close and last.close_code == 1000
        assert classify_close(last.close_code, last.close_reason) is None
        assert still_open is False

    def test_format_rejection_close(self):
        """Test that a 1008 DATA-0000 close reaches the caller with its reason."""
        endpoint = ListenEndpoint(close_on_audio=(1008, "DATA-0000"))

        async def run():
            server = await serve(endpoint)
            transport = AiohttpTransport()
            try:
                await transport.connect(listen_url(server), "dg-secret")
                await transport.receive()
                await transport.send_bytes(b"\xff" * 32)
                close = await transport.receive()
                await transport.close()
                return close
            finally:
                await server.close()

        close = asyncio.run(run())

        assert close.close_code == 1008
        assert close.close_reason == "DATA-0000"
        assert classify_close(close.close_code, close.close_reason) is ErrorKind.AUDIO_FORMAT_REJECTED

    def test_client_close_uses_normal_code(self):
        endpoint = ListenEndpoint()

        async def run():
            server = await serve(endpoint)
            transport = AiohttpTransport()
            try:
                await transport.connect(listen_url(server), "dg-secret")
                await transport.receive()
                await transport.close(1000)
                await wait_until(lambda: endpoint.close_code is not None)
                await transport.close(1000)
            finally:
                await server.close()

        asyncio.run(run())
        assert endpoint.close_code == 1000

    @pytest.mark.parametrize("status, error_type, kind", [
        (401, ProtocolError, ErrorKind.AUTH_INVALID),
        (403, ProtocolError, ErrorKind.AUTH_INVALID),
        (400, ProtocolError, ErrorKind.CONFIG_INVALID),
        (503, StreamConnectionError, ErrorKind.CONNECT_FAILED),
    ])
    def test_handshake_rejection(self, status, error_type, kind):
        """Test how a refused upgrade maps to error kinds."""
        endpoint = ListenEndpoint(reject_status=status)

        async def run():
            server = await serve(endpoint)
            transport = AiohttpTransport()
            try:
                with pytest.raises(error_type) as exc_info:
                    await transport.connect(listen_url(server), "dg-secret")
                return exc_info.value, transport.is_open
            finally:
                await server.close()

        error, is_open = asyncio.run(run())

        assert error.kind is kind
        assert is_open is False
        assert "dg-secret" not in str(error)

    def test_unreachable_endpoint(self):
        """Test that a refused TCP connection is a retryable connect failure."""
        async def run():
            server = await serve(ListenEndpoint())
            url = listen_url(server)
            await server.close()

            transport = AiohttpTransport(connect_timeout=2.0)
            with pytest.raises(StreamConnectionError) as exc_info:
                await transport.connect(url, "dg-secret")
            return exc_info.value

        error = asyncio.run(run())

        assert error.kind is ErrorKind.CONNECT_FAILED
        assert error.retryable is True
