"""
STOMP-over-WebSocket Transport
==============================
One STOMP 1.2 session on one WebSocket connection, the wire format spoken by
the auction server's message broker endpoint.

A transport is single-use: the connection manager builds a new one for every
connection attempt. It is not multiplexed by itself; topic bookkeeping lives
in the subscription registry.

Frame format (STOMP 1.2):
    COMMAND\\n
    header1:value1\\n
    header2:value2\\n
    \\n
    body\\0

Heart-beats are bare EOLs between frames.
"""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, WebSocketException

logger = logging.getLogger("auction_sync.stomp")


STOMP_SUBPROTOCOLS = ["v12.stomp", "v11.stomp", "v10.stomp"]
ACCEPT_VERSION = "1.2,1.1,1.0"
MAX_MESSAGE_SIZE = 2**20  # 1MB

# Missed heart-beats tolerated before the session is considered dead
HEARTBEAT_GRACE_FACTOR = 2.0

# CONNECT/CONNECTED headers are never escaped (STOMP 1.2 §Value Encoding)
_UNESCAPED_COMMANDS = {"CONNECT", "CONNECTED"}

_ESCAPES = [("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c")]
_UNESCAPES = {"\\\\": "\\", "\\r": "\r", "\\n": "\n", "\\c": ":"}


class TransportError(Exception):
    """Connection-level failure: refused, bad handshake, ERROR frame, abnormal close."""


# ─────────────────────────────────────────────────────────────────
# Frame Codec
# ─────────────────────────────────────────────────────────────────

@dataclass
class StompFrame:
    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        pair = value[i:i + 2]
        if pair in _UNESCAPES:
            out.append(_UNESCAPES[pair])
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


def encode_frame(frame: StompFrame) -> str:
    escape = frame.command not in _UNESCAPED_COMMANDS
    lines = [frame.command]
    headers = dict(frame.headers)
    if frame.body and "content-length" not in headers:
        headers["content-length"] = str(len(frame.body.encode("utf-8")))
    for key, value in headers.items():
        key, value = str(key), str(value)
        if escape:
            key, value = _escape(key), _escape(value)
        lines.append(f"{key}:{value}")
    return "\n".join(lines) + "\n\n" + frame.body + "\0"


def decode_frame(raw: str) -> StompFrame:
    """Decode one frame (without its trailing NUL)."""
    head, sep, body = raw.partition("\n\n")
    if not sep:
        head, sep, body = raw.partition("\r\n\r\n")
    lines = head.replace("\r\n", "\n").split("\n")
    command = lines[0].strip()
    if not command:
        raise ValueError("STOMP frame without a command")
    escape = command not in _UNESCAPED_COMMANDS
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        key, colon, value = line.partition(":")
        if not colon:
            raise ValueError(f"Malformed STOMP header line: {line!r}")
        if escape:
            key, value = _unescape(key), _unescape(value)
        # Repeated headers: the first one wins
        headers.setdefault(key, value)
    return StompFrame(command, headers, body)


class FrameParser:
    """
    Incremental parser: a WebSocket message may carry a partial frame,
    several frames, or just heart-beat EOLs.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, data: str) -> List[StompFrame]:
        self._buffer += data
        frames = []
        while True:
            self._buffer = self._buffer.lstrip("\r\n")
            end = self._buffer.find("\0")
            if end == -1:
                break
            raw, self._buffer = self._buffer[:end], self._buffer[end + 1:]
            frames.append(decode_frame(raw))
        return frames


def negotiate_heartbeat(client: Tuple[int, int], server_header: Optional[str]) -> Tuple[int, int]:
    """
    Return (send_every_ms, expect_every_ms) from the client's (cx, cy) and
    the server's "sx,sy" heart-beat header. 0 disables that direction.
    """
    cx, cy = client
    try:
        sx, sy = (int(part) for part in (server_header or "0,0").split(","))
    except ValueError:
        sx, sy = 0, 0
    send_every = max(cx, sy) if cx and sy else 0
    expect_every = max(cy, sx) if cy and sx else 0
    return send_every, expect_every


# ─────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────

class StompTransport:
    """
    Single STOMP session over a WebSocket.

    Outbound frames are queued and written by one writer task, so
    subscribe()/unsubscribe()/send() are synchronous and keep their order.
    """

    def __init__(
        self,
        url: str,
        host: str = "localhost",
        connect_headers: Optional[Dict[str, str]] = None,
        heartbeat_ms: int = 4000,
        connect_timeout: float = 15.0,
    ):
        self.url = url
        self.host = host
        self.connect_headers = dict(connect_headers or {})
        self.heartbeat_ms = heartbeat_ms
        self.connect_timeout = connect_timeout

        self._ws = None
        self._parser = FrameParser()
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._ids = itertools.count()
        self._send_every_ms = 0
        self._expect_every_ms = 0
        self._pending: List[StompFrame] = []
        self.session: Optional[str] = None
        self.server: Optional[str] = None

    async def open(self):
        """WebSocket handshake + STOMP CONNECT. Raises TransportError on failure."""
        logger.info(f"STOMP connecting to {self.url}...")
        try:
            self._ws = await websockets.connect(
                self.url,
                subprotocols=STOMP_SUBPROTOCOLS,
                open_timeout=self.connect_timeout,
                ping_interval=None,  # STOMP heart-beats replace WebSocket pings
                close_timeout=5,
                max_size=MAX_MESSAGE_SIZE,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"WebSocket connect to {self.url} failed: {e}") from e

        headers = {
            "accept-version": ACCEPT_VERSION,
            "host": self.host,
            "heart-beat": f"{self.heartbeat_ms},{self.heartbeat_ms}",
        }
        headers.update(self.connect_headers)

        try:
            await self._ws.send(encode_frame(StompFrame("CONNECT", headers)))
            reply = await asyncio.wait_for(self._read_frame(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise TransportError("Timed out waiting for CONNECTED frame") from e
        except (ConnectionClosedError, ConnectionClosedOK) as e:
            self._ws = None
            raise TransportError(f"Connection closed during STOMP handshake: {e}") from e

        if reply.command == "ERROR":
            await self.close()
            raise TransportError(f"STOMP ERROR on connect: {self._error_text(reply)}")
        if reply.command != "CONNECTED":
            await self.close()
            raise TransportError(f"Unexpected {reply.command} frame during handshake")

        self.session = reply.headers.get("session")
        self.server = reply.headers.get("server")
        self._send_every_ms, self._expect_every_ms = negotiate_heartbeat(
            (self.heartbeat_ms, self.heartbeat_ms), reply.headers.get("heart-beat")
        )
        logger.info(
            f"STOMP session established (version={reply.headers.get('version', '1.0')}, "
            f"heart-beat send={self._send_every_ms}ms expect={self._expect_every_ms}ms)"
        )

        self._writer_task = asyncio.ensure_future(self._writer_loop())
        if self._send_every_ms:
            self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    async def _read_frame(self, idle_timeout: Optional[float] = None) -> StompFrame:
        """
        Next complete frame. idle_timeout bounds each socket read, so any
        inbound data (heart-beat EOLs included) keeps the session alive.
        """
        while not self._pending:
            if idle_timeout:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=idle_timeout)
            else:
                raw = await self._ws.recv()
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            self._pending.extend(self._parser.feed(raw))
        return self._pending.pop(0)

    async def frames(self) -> AsyncIterator[StompFrame]:
        """
        Yield inbound frames until the server closes the socket.

        Returns on a normal close, raises TransportError on an abnormal
        close, an ERROR frame, or a heart-beat timeout.
        """
        read_timeout = None
        if self._expect_every_ms:
            read_timeout = self._expect_every_ms * HEARTBEAT_GRACE_FACTOR / 1000.0

        while True:
            try:
                frame = await self._read_frame(read_timeout)
            except ConnectionClosedOK:
                logger.info("STOMP socket closed normally")
                return
            except ConnectionClosedError as e:
                raise TransportError(f"Connection closed abnormally: {e}") from e
            except asyncio.TimeoutError as e:
                raise TransportError(f"No data from server for {read_timeout:.1f}s") from e
            except ValueError as e:
                raise TransportError(f"Malformed STOMP frame: {e}") from e

            if frame.command == "ERROR":
                raise TransportError(f"STOMP ERROR: {self._error_text(frame)}")
            yield frame

    @staticmethod
    def _error_text(frame: StompFrame) -> str:
        return frame.headers.get("message") or frame.body.strip() or "unknown error"

    # ── Outbound ──

    def _enqueue(self, frame: StompFrame):
        if self._ws is None:
            raise RuntimeError("STOMP transport is not open")
        self._outbox.put_nowait(encode_frame(frame))

    def subscribe(self, destination: str) -> str:
        sub_id = f"sub-{next(self._ids)}"
        self._enqueue(StompFrame("SUBSCRIBE", {
            "id": sub_id,
            "destination": destination,
            "ack": "auto",
        }))
        logger.debug(f"STOMP SUBSCRIBE {destination} ({sub_id})")
        return sub_id

    def unsubscribe(self, sub_id: str):
        self._enqueue(StompFrame("UNSUBSCRIBE", {"id": sub_id}))
        logger.debug(f"STOMP UNSUBSCRIBE {sub_id}")

    def send(self, destination: str, payload: dict):
        body = json.dumps(payload)
        self._enqueue(StompFrame("SEND", {
            "destination": destination,
            "content-type": "application/json",
        }, body))
        logger.debug(f"STOMP SEND {destination}: {body}")

    async def _writer_loop(self):
        try:
            while True:
                data = await self._outbox.get()
                await self._ws.send(data)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # The reader sees the same dead socket and reports it
            logger.warning(f"STOMP write failed: {e}")

    async def _heartbeat_loop(self):
        """Send EOL heart-beats at the negotiated interval."""
        interval = self._send_every_ms / 1000.0
        try:
            while self._ws is not None:
                await asyncio.sleep(interval)
                if self._outbox.empty():
                    self._outbox.put_nowait("\n")
        except asyncio.CancelledError:
            pass

    async def close(self):
        """Best-effort DISCONNECT and socket close."""
        ws = self._ws
        if ws is None:
            return
        for task in (self._heartbeat_task, self._writer_task):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._writer_task = None
        try:
            await ws.send(encode_frame(StompFrame("DISCONNECT")))
        except Exception as e:
            logger.debug(f"STOMP DISCONNECT not sent: {e}")
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"WebSocket close error: {e}")
        self._ws = None
