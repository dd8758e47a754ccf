"""
Real-time Bid Sync Client
=========================
The one object the rest of the application talks to for live bidding.

Usage:
    client = BidSyncClient(SyncConfig(), notifier=show_toast)
    client.connect()                         # once per session, on the event loop

    stop_global = client.subscribe_to_global_updates(on_any_bid)
    stop_item = client.subscribe_to_item_updates(42, on_item_bid)

    if client.is_connected:
        client.place_bid(42, 150.0, on_result=lambda r: print(r.outcome))

    stop_item()
    await client.disconnect()

Each client owns its own connection manager, subscription registry, bid
coordinator and event bus. Nothing is shared at module level, so several
clients (sessions) can coexist in one process.
"""

import logging
from typing import Any, Callable, Optional

from auction_data.config import SyncConfig
from auction_data.notifications import NotificationLevel, ToastNotifier
from auction_data.topics import GLOBAL_TOPIC, item_topic, normalize_item_id
from bid_coordinator import BidResult, BidSubmissionCoordinator
from stomp_transport import StompTransport
from subscription_registry import SubscriptionRegistry
from ws_manager import ConnectionManager, ConnectionState, EventBus, EventType

logger = logging.getLogger("auction_sync.client")


def _noop():
    pass


class BidSyncClient:

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        transport_factory: Optional[Callable[[], Any]] = None,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[Callable[[NotificationLevel, str], None]] = None,
    ):
        """
        Args:
            config: Connection/retry/timeout settings (defaults from environment)
            transport_factory: Builds one unopened transport per connection
                attempt. Defaults to a StompTransport for config.ws_url.
            event_bus: Shared bus for lifecycle events (a new one by default)
            notifier: sink(level, message) for user-facing messages. Messages
                are logged when not given.
        """
        self.config = config or SyncConfig()
        self.event_bus = event_bus or EventBus()
        self.connection = ConnectionManager(
            transport_factory or self._default_transport,
            event_bus=self.event_bus,
            reconnect_delay=self.config.reconnect_delay,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            reconnect_on_close=self.config.reconnect_on_close,
        )
        self.registry = SubscriptionRegistry(self.connection)
        self.bids = BidSubmissionCoordinator(
            self.connection, self.registry, timeout=self.config.bid_timeout
        )
        self.notifications = ToastNotifier(self.event_bus, notifier)

    def _default_transport(self) -> StompTransport:
        return StompTransport(
            self.config.ws_url,
            host=self.config.stomp_host,
            connect_headers=self.config.connect_headers(),
            heartbeat_ms=self.config.heartbeat_ms,
            connect_timeout=self.config.connect_timeout,
        )

    # ── Lifecycle ──

    def connect(self):
        """Start the connection (returns immediately). Call from the event loop."""
        self.connection.connect()

    async def disconnect(self):
        """Close the connection and drop every subscription. No reconnect follows."""
        await self.connection.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def on(self, event_type: EventType, handler: Callable) -> Callable[[], None]:
        """Observe lifecycle events: handler(event_type, data). Returns the remover."""
        return self.event_bus.subscribe(event_type, handler)

    def off(self, event_type: EventType, handler: Callable):
        self.event_bus.unsubscribe(event_type, handler)

    # ── Subscriptions ──

    def subscribe_to_global_updates(self, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Every accepted bid on any item. Returns the unsubscribe function."""
        return self.registry.subscribe(GLOBAL_TOPIC, handler)

    def subscribe_to_item_updates(self, item_id, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Bid updates for one item. Returns the unsubscribe function."""
        if normalize_item_id(item_id) is None:
            logger.warning(f"Cannot subscribe to bid updates: invalid item id {item_id!r}")
            return _noop
        logger.info(f"Subscribing to bid updates for item {item_id}")
        return self.registry.subscribe(item_topic(item_id), handler)

    # ── Bids ──

    def place_bid(
        self,
        item_id,
        amount,
        on_result: Optional[Callable[[BidResult], None]] = None,
    ) -> bool:
        """
        Dispatch a bid. True means the command was sent, not that the bid
        was accepted; the outcome is reported through on_result.
        """
        return self.bids.submit_bid(item_id, amount, on_result=on_result)

    # ── Diagnostics ──

    def get_status(self) -> dict:
        status = self.connection.get_status()
        status["outstanding_bids"] = self.bids.outstanding
        return status

    def get_connection_summary(self) -> str:
        """Human-readable connection summary for logging."""
        stats = self.connection.stats
        return (
            f"{self.state.value.upper()} | subs {len(self.registry.active_topics())} active"
            f"/{len(self.registry.pending_topics())} pending | msgs {stats.messages_received}"
            f" | bids pending {self.bids.outstanding}"
        )
