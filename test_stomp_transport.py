"""
Tests for the STOMP-over-WebSocket transport
============================================
Tests cover:
1. Frame codec - encode/decode, header escaping, content-length
2. FrameParser - split and coalesced frames, heart-beat EOLs
3. Heart-beat negotiation
4. StompTransport - handshake, outbound frames, inbound stream, failures

Run: python -m pytest test_stomp_transport.py -v
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidURI
from websockets.frames import Close

from conftest import settle
from stomp_transport import (
    FrameParser, StompFrame, StompTransport, TransportError,
    decode_frame, encode_frame, negotiate_heartbeat,
)

CONNECTED = "CONNECTED\nversion:1.2\nheart-beat:0,0\nserver:test\n\n\0"


class FakeWebSocket:

    def __init__(self, incoming=(), delay=0.0):
        self.incoming = list(incoming)
        self.delay = delay
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def recv(self):
        if not self.incoming:
            await asyncio.sleep(3600)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.incoming.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def _message(destination, body, sub_id="sub-0"):
    return f"MESSAGE\ndestination:{destination}\nsubscription:{sub_id}\nmessage-id:m1\n\n{body}\0"


# ─────────────────────────────────────────────────────────────────
# Frame Codec
# ─────────────────────────────────────────────────────────────────

class TestFrameCodec:

    def test_encode_send_frame(self):
        raw = encode_frame(StompFrame("SEND", {"destination": "/app/bid/7"}, '{"amount": 5}'))
        assert raw == 'SEND\ndestination:/app/bid/7\ncontent-length:13\n\n{"amount": 5}\0'

    def test_content_length_counts_bytes(self):
        raw = encode_frame(StompFrame("SEND", {"destination": "/x"}, "é"))
        assert "content-length:2" in raw

    def test_frame_without_body_has_no_content_length(self):
        raw = encode_frame(StompFrame("UNSUBSCRIBE", {"id": "sub-0"}))
        assert raw == "UNSUBSCRIBE\nid:sub-0\n\n\0"

    def test_header_values_escaped(self):
        raw = encode_frame(StompFrame("SEND", {"note": "a:b\nc"}))
        assert "note:a\\cb\\nc" in raw

    def test_connect_headers_not_escaped(self):
        raw = encode_frame(StompFrame("CONNECT", {"host": "example.com:8080"}))
        assert "host:example.com:8080" in raw

    def test_decode_message(self):
        frame = decode_frame(_message("/topic/bid/7", '{"amount": 5}')[:-1])
        assert frame.command == "MESSAGE"
        assert frame.headers["destination"] == "/topic/bid/7"
        assert frame.headers["subscription"] == "sub-0"
        assert json.loads(frame.body) == {"amount": 5}

    def test_decode_unescapes_headers(self):
        frame = decode_frame("MESSAGE\nnote:a\\cb\\\\c\n\n")
        assert frame.headers["note"] == "a:b\\c"

    def test_decode_repeated_header_first_wins(self):
        frame = decode_frame("MESSAGE\nfoo:1\nfoo:2\n\n")
        assert frame.headers["foo"] == "1"

    def test_decode_crlf_frame(self):
        frame = decode_frame("RECEIPT\r\nreceipt-id:77\r\n\r\n")
        assert frame.command == "RECEIPT"
        assert frame.headers["receipt-id"] == "77"

    def test_decode_rejects_missing_command(self):
        with pytest.raises(ValueError):
            decode_frame("\n\nbody")

    def test_decode_rejects_bad_header_line(self):
        with pytest.raises(ValueError):
            decode_frame("MESSAGE\nno-colon-here\n\n")


# ─────────────────────────────────────────────────────────────────
# FrameParser
# ─────────────────────────────────────────────────────────────────

class TestFrameParser:

    def setup_method(self):
        self.parser = FrameParser()

    def test_two_frames_in_one_message(self):
        frames = self.parser.feed(_message("/a", "1") + _message("/b", "2"))
        assert [f.headers["destination"] for f in frames] == ["/a", "/b"]

    def test_partial_frame_buffered(self):
        raw = _message("/topic/bidUpdates", '{"amount": 9}')
        assert self.parser.feed(raw[:20]) == []
        frames = self.parser.feed(raw[20:])
        assert len(frames) == 1
        assert frames[0].body == '{"amount": 9}'

    def test_heartbeats_ignored(self):
        assert self.parser.feed("\n") == []
        assert self.parser.feed("\r\n\n") == []
        frames = self.parser.feed("\n" + CONNECTED)
        assert frames[0].command == "CONNECTED"


# ─────────────────────────────────────────────────────────────────
# Heart-beat negotiation
# ─────────────────────────────────────────────────────────────────

class TestHeartbeat:

    @pytest.mark.parametrize("client,server,expected", [
        ((4000, 4000), "10000,10000", (10000, 10000)),
        ((4000, 4000), "0,0", (0, 0)),
        ((4000, 4000), None, (0, 0)),
        ((4000, 4000), "garbage", (0, 0)),
        ((4000, 4000), "0,5000", (5000, 0)),
        ((0, 4000), "1000,1000", (0, 4000)),
    ])
    def test_negotiate(self, client, server, expected):
        assert negotiate_heartbeat(client, server) == expected


# ─────────────────────────────────────────────────────────────────
# StompTransport
# ─────────────────────────────────────────────────────────────────

class TestStompTransport:

    def _transport(self, **kwargs):
        defaults = dict(host="auction.example", connect_headers={"Authorization": "Bearer t0k"},
                        heartbeat_ms=4000, connect_timeout=1.0)
        defaults.update(kwargs)
        return StompTransport("ws://auction.example/ws/websocket", **defaults)

    @pytest.mark.asyncio
    async def test_open_sends_connect_and_reads_connected(self):
        ws = FakeWebSocket([CONNECTED])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)) as mock_connect:
            await transport.open()

        _, kwargs = mock_connect.call_args
        assert kwargs["subprotocols"] == ["v12.stomp", "v11.stomp", "v10.stomp"]
        assert kwargs["ping_interval"] is None
        connect = decode_frame(ws.sent[0][:-1])
        assert connect.command == "CONNECT"
        assert connect.headers["accept-version"] == "1.2,1.1,1.0"
        assert connect.headers["host"] == "auction.example"
        assert connect.headers["heart-beat"] == "4000,4000"
        assert connect.headers["Authorization"] == "Bearer t0k"
        assert transport.server == "test"
        await transport.close()

    @pytest.mark.asyncio
    async def test_outbound_frames_written_in_order(self):
        ws = FakeWebSocket([CONNECTED])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()

        assert transport.subscribe("/topic/bid/7") == "sub-0"
        transport.send("/app/bid/7", {"itemId": 7, "amount": 150})
        transport.unsubscribe("sub-0")
        await settle()

        written = [decode_frame(raw[:-1]) for raw in ws.sent[1:]]
        assert [f.command for f in written] == ["SUBSCRIBE", "SEND", "UNSUBSCRIBE"]
        assert written[0].headers == {"id": "sub-0", "destination": "/topic/bid/7", "ack": "auto"}
        assert written[1].headers["content-type"] == "application/json"
        assert json.loads(written[1].body) == {"itemId": 7, "amount": 150}
        assert written[2].headers["id"] == "sub-0"
        await transport.close()

    @pytest.mark.asyncio
    async def test_close_sends_disconnect(self):
        ws = FakeWebSocket([CONNECTED])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        await transport.close()
        assert ws.sent[-1].startswith("DISCONNECT\n")
        assert ws.closed
        with pytest.raises(RuntimeError):
            transport.subscribe("/topic/bidUpdates")

    def test_subscribe_before_open_raises(self):
        with pytest.raises(RuntimeError):
            self._transport().subscribe("/topic/bidUpdates")

    @pytest.mark.asyncio
    async def test_open_failure_raises_transport_error(self):
        transport = self._transport()
        refused = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        with patch("stomp_transport.websockets.connect", new=refused):
            with pytest.raises(TransportError):
                await transport.open()

    @pytest.mark.asyncio
    async def test_invalid_uri_raises_transport_error(self):
        transport = self._transport()
        bad_uri = AsyncMock(side_effect=InvalidURI("nope", "not a websocket URI"))
        with patch("stomp_transport.websockets.connect", new=bad_uri):
            with pytest.raises(TransportError):
                await transport.open()

    @pytest.mark.asyncio
    async def test_error_frame_on_connect_raises(self):
        ws = FakeWebSocket(["ERROR\nmessage:Bad credentials\n\n\0"])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            with pytest.raises(TransportError, match="Bad credentials"):
                await transport.open()
        assert ws.closed

    @pytest.mark.asyncio
    async def test_connected_frame_timeout(self):
        ws = FakeWebSocket([])
        transport = self._transport(connect_timeout=0.02)
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            with pytest.raises(TransportError, match="CONNECTED"):
                await transport.open()

    @pytest.mark.asyncio
    async def test_frames_yields_messages_until_normal_close(self):
        closed_ok = ConnectionClosedOK(Close(1000, "bye"), Close(1000, "bye"))
        ws = FakeWebSocket([
            CONNECTED,
            "\n",
            _message("/topic/bidUpdates", '{"amount": 1}') + _message("/topic/bid/7", '{"amount": 2}'),
            closed_ok,
        ])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        received = [frame async for frame in transport.frames()]
        assert [f.headers["destination"] for f in received] == ["/topic/bidUpdates", "/topic/bid/7"]
        await transport.close()

    @pytest.mark.asyncio
    async def test_abnormal_close_raises(self):
        ws = FakeWebSocket([CONNECTED, ConnectionClosedError(Close(1011, "boom"), None)])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        with pytest.raises(TransportError):
            async for _ in transport.frames():
                pass
        await transport.close()

    @pytest.mark.asyncio
    async def test_error_frame_in_stream_raises(self):
        ws = FakeWebSocket([CONNECTED, "ERROR\nmessage:session expired\n\n\0"])
        transport = self._transport()
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        with pytest.raises(TransportError, match="session expired"):
            async for _ in transport.frames():
                pass
        await transport.close()

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self):
        ws = FakeWebSocket(["CONNECTED\nversion:1.2\nheart-beat:10,0\n\n\0"])
        transport = self._transport(heartbeat_ms=10)
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        with pytest.raises(TransportError, match="No data"):
            async for _ in transport.frames():
                pass
        await transport.close()

    @pytest.mark.asyncio
    async def test_heartbeats_keep_quiet_session_alive(self):
        # expect=50ms -> 100ms read window; EOLs every 10ms for ~150ms, then a message
        closed_ok = ConnectionClosedOK(Close(1000, "bye"), Close(1000, "bye"))
        incoming = ["CONNECTED\nversion:1.2\nheart-beat:50,0\n\n\0"]
        incoming += ["\n"] * 15
        incoming += [_message("/topic/bid/7", '{"amount": 3}'), closed_ok]
        ws = FakeWebSocket(incoming, delay=0.01)
        transport = self._transport(heartbeat_ms=50)
        with patch("stomp_transport.websockets.connect", new=AsyncMock(return_value=ws)):
            await transport.open()
        received = [frame async for frame in transport.frames()]
        assert [f.body for f in received] == ['{"amount": 3}']
        await transport.close()
