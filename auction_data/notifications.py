"""
User-facing notifications for connection and bid events.

ToastNotifier listens on the client's event bus and forwards short messages
to a sink callable: sink(level, message). The UI layer passes its own sink
(toast, status bar...). Without one, messages go to the log.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from ws_manager import EventBus, EventType

logger = logging.getLogger("auction_sync.notify")


class NotificationLevel(Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
}

_INVALID_BID_MESSAGES = {
    "not_connected": "Connection lost. Please refresh the page and try again.",
    "invalid_item": "Invalid item ID",
    "pending": "A bid on this item is still waiting for confirmation.",
    "send_failed": "Failed to place bid. Please try again.",
}


def log_sink(level: NotificationLevel, message: str):
    logger.log(_LOG_LEVELS[level], message)


class ToastNotifier:

    def __init__(self, event_bus: EventBus, sink: Optional[Callable[[NotificationLevel, str], None]] = None):
        self.sink = sink or log_sink
        self._routes = {
            EventType.CONNECTED: self._on_connected,
            EventType.RECONNECTING: self._on_reconnecting,
            EventType.GAVE_UP: self._on_gave_up,
            EventType.MESSAGE_ERROR: self._on_message_error,
            EventType.BID_INVALID: self._on_bid_invalid,
            EventType.BID_ACCEPTED: self._on_bid_accepted,
            EventType.BID_REJECTED: self._on_bid_rejected,
            EventType.BID_TIMED_OUT: self._on_bid_timed_out,
            EventType.BID_ABANDONED: self._on_bid_abandoned,
        }
        self._removers = [event_bus.subscribe(et, handler) for et, handler in self._routes.items()]

    def close(self):
        for remove in self._removers:
            remove()
        self._removers = []

    def _notify(self, level: NotificationLevel, message: str):
        self.sink(level, message)

    # ── Connection ──

    def _on_connected(self, event_type, data):
        self._notify(NotificationLevel.SUCCESS, "Connected to real-time updates")

    def _on_reconnecting(self, event_type, data):
        delay = data.get("delay", 0)
        self._notify(NotificationLevel.ERROR, f"Connection lost. Reconnecting in {delay:g} seconds...")

    def _on_gave_up(self, event_type, data):
        self._notify(
            NotificationLevel.ERROR,
            "Failed to connect to real-time updates. Please refresh the page.",
        )

    def _on_message_error(self, event_type, data):
        self._notify(NotificationLevel.WARNING, "Received a bid update that could not be read")

    # ── Bids ──

    def _on_bid_invalid(self, event_type, data):
        message = _INVALID_BID_MESSAGES.get(data.get("reason"), "Failed to place bid. Please try again.")
        self._notify(NotificationLevel.ERROR, message)

    def _on_bid_accepted(self, event_type, data):
        result = data.get("result")
        amount = result.payload.get("amount") if result is not None else data.get("amount")
        self._notify(NotificationLevel.SUCCESS, f"Bid placed successfully! Amount: ${amount}")

    def _on_bid_rejected(self, event_type, data):
        self._notify(NotificationLevel.ERROR, "Bid not accepted. Please try again.")

    def _on_bid_timed_out(self, event_type, data):
        self._notify(
            NotificationLevel.WARNING,
            f"No confirmation for your bid on item {data.get('item_id')} yet. "
            "Check the item page for the latest price.",
        )

    def _on_bid_abandoned(self, event_type, data):
        self._notify(
            NotificationLevel.WARNING,
            f"Lost track of your bid on item {data.get('item_id')}. "
            "Check the item page for the latest price.",
        )
