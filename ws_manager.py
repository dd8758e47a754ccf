"""
WebSocket Connection Manager for the Auction Bid Client
=======================================================
Owns the single STOMP-over-WebSocket session to the auction server.

Features:
- Connect/retry state machine (DISCONNECTED -> CONNECTING -> CONNECTED)
- Linear backoff: delay = base_delay * attempt, capped at N attempts
- Terminal GAVE_UP event once retries are exhausted (manual connect() restarts)
- Re-arms every registered subscription before CONNECTED becomes visible
- Event bus for connection and bid lifecycle events
- Connection statistics for diagnostics

Architecture:
- Everything runs on one asyncio event loop; no two callbacks run at once
- connect() returns immediately, outcomes arrive via the event bus
- The transport is only ever referenced here. The subscription registry and
  bid coordinator go through send_subscribe()/send_unsubscribe()/publish(),
  so nothing can write to a transport that has been replaced.
"""

import asyncio
import logging
import time
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("auction_sync.ws")


# ─────────────────────────────────────────────────────────────────
# Connection State
# ─────────────────────────────────────────────────────────────────

class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ─────────────────────────────────────────────────────────────────
# Event Types (for the event bus)
# ─────────────────────────────────────────────────────────────────

class EventType(Enum):
    # Connection events
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"        # Retry scheduled: {"attempt", "delay"}
    GAVE_UP = "gave_up"                  # Retries exhausted for this cycle
    ERROR = "error"                      # Transport error (already handled)

    # Message events
    MESSAGE_ERROR = "message_error"      # Unparseable payload on a topic

    # Bid events
    BID_SUBMITTED = "bid_submitted"
    BID_INVALID = "bid_invalid"          # Rejected before any network action
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    BID_TIMED_OUT = "bid_timed_out"
    BID_ABANDONED = "bid_abandoned"


# ─────────────────────────────────────────────────────────────────
# Event Bus
# ─────────────────────────────────────────────────────────────────

class EventBus:
    """
    Pub/sub for connection and bid lifecycle events.

    Handlers are called synchronously, in registration order, with
    (event_type, data). A failing handler is logged and does not stop
    the others. subscribe() returns a function that removes the handler.
    """

    def __init__(self, max_log_size: int = 500):
        self._handlers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._event_log: Deque[dict] = deque(maxlen=max_log_size)

    def subscribe(self, event_type: EventType, handler: Callable) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def remove():
            self.unsubscribe(event_type, handler)

        return remove

    def unsubscribe(self, event_type: EventType, handler: Callable):
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event_type: EventType, data: Optional[dict] = None):
        data = data if data is not None else {}
        self._event_log.append({
            "type": event_type.value,
            "ts": time.time(),
            "data_keys": sorted(data) if isinstance(data, dict) else [],
        })
        # Copy: handlers may subscribe or unsubscribe while being called
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(event_type, data)
            except Exception as e:
                name = getattr(handler, "__qualname__", repr(handler))
                logger.error(f"Event handler {name} failed on {event_type.value}: {e}")

    def get_event_log(self, last_n: int = 50) -> list:
        return list(self._event_log)[-last_n:]


# ─────────────────────────────────────────────────────────────────
# Connection Statistics
# ─────────────────────────────────────────────────────────────────

@dataclass
class ConnectionStats:
    connects: int = 0
    disconnects: int = 0
    reconnect_attempts: int = 0
    transport_errors: int = 0
    messages_received: int = 0
    parse_errors: int = 0
    last_message_at: float = 0.0
    started_at: float = field(default_factory=time.time)

    def record_message(self):
        self.messages_received += 1
        self.last_message_at = time.time()

    def record_parse_error(self):
        self.parse_errors += 1

    def snapshot(self) -> dict:
        return {
            "uptime_seconds": time.time() - self.started_at,
            "connects": self.connects,
            "disconnects": self.disconnects,
            "reconnect_attempts": self.reconnect_attempts,
            "transport_errors": self.transport_errors,
            "messages_received": self.messages_received,
            "parse_errors": self.parse_errors,
            "last_message_at": self.last_message_at,
        }


# ─────────────────────────────────────────────────────────────────
# Connection Manager
# ─────────────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Maintains one logical connection to the broker, retrying with policy.

    transport_factory builds a fresh, unopened transport for every attempt.
    A transport must provide: async open(), frames() (async iterator),
    subscribe(destination) -> id, unsubscribe(id), send(destination, payload)
    and async close().
    """

    def __init__(
        self,
        transport_factory: Callable[[], Any],
        event_bus: Optional[EventBus] = None,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        reconnect_on_close: bool = False,
    ):
        self._transport_factory = transport_factory
        self.event_bus = event_bus or EventBus()
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_on_close = reconnect_on_close
        self.stats = ConnectionStats()

        self._state = ConnectionState.DISCONNECTED
        self._transport = None
        self._session_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._attempts = 0
        self._gave_up = False
        self._registry = None

    def attach_registry(self, registry):
        """Bind the subscription registry that is re-armed on every connect."""
        self._registry = registry

    # ── State ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def _set_state(self, state: ConnectionState, data: Optional[dict] = None):
        if state is self._state:
            return
        logger.debug(f"WS state {self._state.value} -> {state.value}")
        self._state = state
        self.event_bus.emit(EventType(state.value), data or {})

    # ── Lifecycle ──

    def connect(self):
        """
        Start connecting. No-op while CONNECTING or CONNECTED.

        Must be called from code running on the event loop. A manual call
        cancels a pending retry and restarts the attempt cycle.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug(f"WS connect() ignored: already {self._state.value}")
            return
        self._cancel_retry()
        self._attempts = 0
        self._gave_up = False
        self._open()

    async def disconnect(self):
        """Deliberate teardown: close the transport, drop all subscriptions, no retry."""
        self._cancel_retry()
        transport = self._transport
        task = self._session_task
        self._transport = None
        self._session_task = None

        # DISCONNECTED before any callback runs, so nothing observes a
        # connected state without a transport behind it
        self._set_state(ConnectionState.DISCONNECTED, {"graceful": True, "requested": True})
        if self._registry is not None:
            self._registry.clear()

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if transport is not None:
            await self._close_transport(transport)
            self.stats.disconnects += 1
        logger.info("WS disconnected (requested)")

    def _open(self):
        loop = asyncio.get_running_loop()
        transport = self._transport_factory()
        self._transport = transport
        self._set_state(ConnectionState.CONNECTING, {"attempt": self._attempts})
        self._session_task = loop.create_task(self._run_session(transport))

    def _retry(self):
        self._retry_handle = None
        if self._state is not ConnectionState.DISCONNECTED:
            return
        logger.info(f"WS reconnect attempt {self._attempts}/{self.max_reconnect_attempts}")
        self._open()

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _close_transport(self, transport):
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"WS transport close error: {e}")

    # ── Session ──

    async def _run_session(self, transport):
        """Open the transport, re-arm subscriptions, then pump inbound frames."""
        try:
            await transport.open()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if transport is self._transport:
                self._on_transport_error(transport, e)
            return

        if transport is not self._transport:
            # Superseded while the handshake was in flight
            await self._close_transport(transport)
            return

        self._on_established()

        try:
            async for frame in transport.frames():
                if transport is not self._transport:
                    break
                self._route(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if transport is self._transport:
                self._on_transport_error(transport, e)
            return

        if transport is self._transport:
            self._on_closed(transport)

    def _on_established(self):
        self._attempts = 0
        self._gave_up = False
        self.stats.connects += 1
        # Subscriptions are bound before anyone can observe CONNECTED
        if self._registry is not None:
            self._registry.rearm_all()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("WS connected")

    def _route(self, frame):
        if frame.command != "MESSAGE":
            logger.debug(f"WS ignoring {frame.command} frame")
            return
        self.stats.record_message()
        if self._registry is None:
            return
        self._registry.dispatch(
            frame.headers.get("destination", ""),
            frame.headers.get("subscription"),
            frame.body,
        )

    def _drop_transport(self, transport, data: dict):
        """Forget the transport, go DISCONNECTED, then release its bindings."""
        self._transport = None
        self._session_task = None
        asyncio.get_running_loop().create_task(self._close_transport(transport))
        self._set_state(ConnectionState.DISCONNECTED, data)
        if self._registry is not None:
            self._registry.deactivate_all()

    def _on_transport_error(self, transport, error: Exception):
        was_connected = self._state is ConnectionState.CONNECTED
        self.stats.transport_errors += 1
        if was_connected:
            self.stats.disconnects += 1
        logger.warning(f"WS transport error: {error}")
        logger.debug(traceback.format_exc())
        self._drop_transport(transport, {"graceful": False})
        self.event_bus.emit(EventType.ERROR, {"error": str(error)})
        self._schedule_retry()

    def _on_closed(self, transport):
        self.stats.disconnects += 1
        logger.info("WS closed by server")
        self._drop_transport(transport, {"graceful": True, "requested": False})
        if self.reconnect_on_close:
            self._schedule_retry()

    def _schedule_retry(self):
        if self._state is not ConnectionState.DISCONNECTED or self._retry_handle is not None:
            # A listener already called connect()
            return
        self._attempts += 1
        if self._attempts > self.max_reconnect_attempts:
            if not self._gave_up:
                self._gave_up = True
                logger.error(
                    f"WS giving up after {self.max_reconnect_attempts} reconnect attempts"
                )
                self.event_bus.emit(EventType.GAVE_UP, {"attempts": self.max_reconnect_attempts})
            return

        delay = self.reconnect_delay * self._attempts
        self.stats.reconnect_attempts += 1
        logger.info(
            f"WS reconnecting in {delay:.1f}s "
            f"(attempt {self._attempts}/{self.max_reconnect_attempts})"
        )
        self.event_bus.emit(EventType.RECONNECTING, {
            "attempt": self._attempts,
            "delay": delay,
        })
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._retry)

    # ── Outbound (used by the registry and bid coordinator) ──

    def _live_transport(self):
        if self._transport is None or self._state is ConnectionState.DISCONNECTED:
            raise RuntimeError("No live connection")
        return self._transport

    def send_subscribe(self, topic: str) -> str:
        return self._live_transport().subscribe(topic)

    def send_unsubscribe(self, sub_id: str):
        self._live_transport().unsubscribe(sub_id)

    def publish(self, destination: str, payload: dict):
        self._live_transport().send(destination, payload)

    # ── Diagnostics ──

    def get_status(self) -> dict:
        status = {
            "state": self._state.value,
            "attempts": self._attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "gave_up": self._gave_up,
            "retry_pending": self.retry_pending,
            "stats": self.stats.snapshot(),
        }
        if self._registry is not None:
            status["active_topics"] = self._registry.active_topics()
            status["pending_topics"] = self._registry.pending_topics()
        return status
