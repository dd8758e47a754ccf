"""
Subscription Registry
=====================
Decouples "interest in a topic" from "the current connection".

Every subscription is either pending (no live binding) or active (bound to
the live transport through a STOMP subscription id). The connection manager
calls rearm_all() on every CONNECTED transition and deactivate_all() when the
connection is lost, so the active set is always the replay of all live
subscribe() calls against the current connection.

At most one subscription exists per topic: subscribing again replaces the
previous one, so there is never more than one delivery path for a topic.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ws_manager import EventType

logger = logging.getLogger("auction_sync.subscriptions")


@dataclass(eq=False)
class Subscription:
    topic: str
    handler: Callable[[Any], None]
    one_shot: bool = False
    # Called when a one-shot subscription is dropped without ever firing
    on_discard: Optional[Callable[[], None]] = None
    active: bool = False
    sub_id: Optional[str] = None


class SubscriptionRegistry:

    def __init__(self, connection):
        self._connection = connection
        self._subscriptions: Dict[str, Subscription] = {}
        connection.attach_registry(self)

    def subscribe(
        self,
        topic: str,
        handler: Callable[[Any], None],
        one_shot: bool = False,
        on_discard: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """
        Register handler for topic and return its unsubscribe function.

        Armed right away when connected, otherwise kept pending until the
        next CONNECTED transition.
        """
        if not topic:
            raise ValueError("topic must be a non-empty string")

        previous = self._subscriptions.pop(topic, None)
        if previous is not None:
            logger.debug(f"Replacing subscription on {topic}")
            self._teardown(previous)

        sub = Subscription(topic, handler, one_shot=one_shot, on_discard=on_discard)
        if self._connection.is_connected:
            try:
                self._arm(sub)
            except RuntimeError:
                # Nothing is registered for a binding that could not be made
                if previous is not None:
                    self._discarded(previous)
                raise
        else:
            logger.debug(f"Not connected, {topic} pending")
        self._subscriptions[topic] = sub

        if previous is not None:
            self._discarded(previous)

        def unsubscribe():
            self._remove(sub)

        return unsubscribe

    # ── Binding ──

    def _arm(self, sub: Subscription):
        sub.sub_id = self._connection.send_subscribe(sub.topic)
        sub.active = True

    def _teardown(self, sub: Subscription):
        # Bindings exist only while connected; a lost connection took them along
        if sub.active and sub.sub_id is not None and self._connection.is_connected:
            self._connection.send_unsubscribe(sub.sub_id)
        sub.active = False
        sub.sub_id = None

    def _remove(self, sub: Subscription):
        if self._subscriptions.get(sub.topic) is not sub:
            return
        del self._subscriptions[sub.topic]
        self._teardown(sub)
        logger.debug(f"Unsubscribed from {sub.topic}")

    @staticmethod
    def _discarded(sub: Subscription):
        if sub.one_shot and sub.on_discard is not None:
            try:
                sub.on_discard()
            except Exception as e:
                logger.error(f"Discard callback error for {sub.topic}: {e}")

    def rearm_all(self):
        """Bind every subscription to the new live connection, in subscription order."""
        for sub in list(self._subscriptions.values()):
            sub.active = False
            sub.sub_id = None
            self._arm(sub)
        if self._subscriptions:
            logger.info(f"Re-armed {len(self._subscriptions)} subscription(s)")

    def deactivate_all(self):
        """
        Connection lost: ordinary subscriptions fall back to pending,
        one-shot subscriptions are abandoned.
        """
        abandoned = []
        for topic, sub in list(self._subscriptions.items()):
            sub.active = False
            sub.sub_id = None
            if sub.one_shot:
                del self._subscriptions[topic]
                abandoned.append(sub)
        for sub in abandoned:
            self._discarded(sub)

    def clear(self):
        """Drop every subscription (deliberate disconnect)."""
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            sub.active = False
            sub.sub_id = None
        for sub in subs:
            self._discarded(sub)

    # ── Inbound ──

    def dispatch(self, topic: str, sub_id: Optional[str], body: str):
        """Deliver one inbound message to the handler registered for topic."""
        sub = self._subscriptions.get(topic)
        if sub is None or not sub.active:
            logger.debug(f"Dropping message for unsubscribed topic {topic}")
            return
        if sub_id is not None and sub_id != sub.sub_id:
            logger.debug(f"Dropping message for stale binding {sub_id} on {topic}")
            return

        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed payload on {topic}: {e} ({str(body)[:200]!r})")
            self._connection.stats.record_parse_error()
            self._connection.event_bus.emit(EventType.MESSAGE_ERROR, {
                "topic": topic,
                "error": str(e),
            })
            return

        if sub.one_shot:
            self._remove(sub)

        try:
            sub.handler(payload)
        except Exception as e:
            logger.error(f"Subscription handler error for {topic}: {e}")

    # ── Introspection ──

    def active_topics(self) -> List[str]:
        return [t for t, s in self._subscriptions.items() if s.active]

    def pending_topics(self) -> List[str]:
        return [t for t, s in self._subscriptions.items() if not s.active]

    def get(self, topic: str) -> Optional[Subscription]:
        return self._subscriptions.get(topic)

    def __contains__(self, topic: str) -> bool:
        return topic in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)
