"""
Bid Submission Coordinator
==========================
Turns "publish a bid command, wait for the broadcast" into one call with an
outcome.

Flow for submit_bid(item_id, amount):
1. Preconditions: connected, and a usable item id. Otherwise False, no I/O.
2. One-shot subscription on /topic/bid/{itemId} is armed BEFORE the command
   goes out, so the server's broadcast cannot be missed.
3. {"itemId", "amount"} is sent on /app/bid/{itemId}; True is returned.
   True means "dispatched", not "accepted".
4. The first reply on the topic resolves the bid: a positive amount is an
   acceptance, anything else a rejection.

Policies:
- Only one outstanding bid per item; a second submit for the same item is
  refused until the first resolves.
- Bids that get no reply within `timeout` seconds resolve as TIMED_OUT
  (timeout=0 waits forever).
- A bid whose one-shot subscription is dropped (connection lost, explicit
  disconnect, or replaced by an ordinary subscription on the same topic)
  resolves as ABANDONED.
"""

import asyncio
import logging
import numbers
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from auction_data.topics import bid_command_topic, item_topic, normalize_item_id
from ws_manager import EventType

logger = logging.getLogger("auction_sync.bids")

DEFAULT_BID_TIMEOUT = 10.0


class BidOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


_OUTCOME_EVENTS = {
    BidOutcome.ACCEPTED: EventType.BID_ACCEPTED,
    BidOutcome.REJECTED: EventType.BID_REJECTED,
    BidOutcome.TIMED_OUT: EventType.BID_TIMED_OUT,
    BidOutcome.ABANDONED: EventType.BID_ABANDONED,
}


@dataclass
class BidSubmission:
    item_id: Any
    amount: Any
    submitted_at: float = field(default_factory=time.time)


@dataclass
class BidResult:
    submission: BidSubmission
    outcome: BidOutcome
    payload: Optional[Any] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is BidOutcome.ACCEPTED


@dataclass(eq=False)
class _PendingBid:
    key: str
    submission: BidSubmission
    on_result: Optional[Callable[[BidResult], None]]
    unsubscribe: Optional[Callable[[], None]] = None
    timer: Optional[asyncio.TimerHandle] = None
    done: bool = False


def is_confirmation(payload) -> bool:
    """A reply confirms the bid when it carries a positive numeric amount."""
    if not isinstance(payload, dict):
        return False
    amount = payload.get("amount")
    if isinstance(amount, bool) or amount is None:
        return False
    if isinstance(amount, str):
        try:
            amount = float(amount)
        except ValueError:
            return False
    return isinstance(amount, numbers.Real) and amount > 0


class BidSubmissionCoordinator:

    def __init__(self, connection, registry, timeout: float = DEFAULT_BID_TIMEOUT):
        self._connection = connection
        self._registry = registry
        self.event_bus = connection.event_bus
        self.timeout = timeout
        self._outstanding: Dict[str, _PendingBid] = {}

    def submit_bid(
        self,
        item_id,
        amount,
        on_result: Optional[Callable[[BidResult], None]] = None,
    ) -> bool:
        """
        Send a bid. Returns True once the command is dispatched, False if it
        was refused before any network action. The final outcome arrives
        later through on_result and the BID_* events.
        """
        if not self._connection.is_connected:
            logger.error("Cannot place bid: WebSocket not connected")
            return self._invalid(item_id, amount, "not_connected")

        key = normalize_item_id(item_id)
        if key is None:
            logger.error(f"Cannot place bid: invalid item id {item_id!r}")
            return self._invalid(item_id, amount, "invalid_item")

        if key in self._outstanding:
            logger.warning(f"Bid on item {key} already pending, refusing a second one")
            return self._invalid(item_id, amount, "pending")

        pending = _PendingBid(key, BidSubmission(item_id, amount), on_result)
        self._outstanding[key] = pending

        try:
            # Reply subscription first so the broadcast cannot race the command
            pending.unsubscribe = self._registry.subscribe(
                item_topic(key),
                lambda payload: self._on_reply(pending, payload),
                one_shot=True,
                on_discard=lambda: self._finish(pending, BidOutcome.ABANDONED),
            )
            self._connection.publish(bid_command_topic(key), {
                "itemId": item_id,
                "amount": amount,
            })
        except (RuntimeError, TypeError, ValueError) as e:
            logger.error(f"Error placing bid on item {key}: {e}")
            pending.done = True
            if self._outstanding.get(key) is pending:
                del self._outstanding[key]
            if pending.unsubscribe is not None:
                pending.unsubscribe()
            return self._invalid(item_id, amount, "send_failed")

        if self.timeout:
            loop = asyncio.get_running_loop()
            pending.timer = loop.call_later(self.timeout, self._on_timeout, pending)

        logger.info(f"Placed bid on item {key}: amount={amount}")
        self.event_bus.emit(EventType.BID_SUBMITTED, {
            "item_id": item_id,
            "amount": amount,
            "submission": pending.submission,
        })
        return True

    def _invalid(self, item_id, amount, reason: str) -> bool:
        self.event_bus.emit(EventType.BID_INVALID, {
            "item_id": item_id,
            "amount": amount,
            "reason": reason,
        })
        return False

    def _on_reply(self, pending: _PendingBid, payload):
        logger.info(f"Received bid response for item {pending.key}: {payload}")
        outcome = BidOutcome.ACCEPTED if is_confirmation(payload) else BidOutcome.REJECTED
        self._finish(pending, outcome, payload)

    def _on_timeout(self, pending: _PendingBid):
        pending.timer = None
        if pending.done:
            return
        logger.warning(f"No response to bid on item {pending.key} after {self.timeout:.1f}s")
        self._finish(pending, BidOutcome.TIMED_OUT)
        if pending.unsubscribe is not None:
            pending.unsubscribe()

    def _finish(self, pending: _PendingBid, outcome: BidOutcome, payload=None):
        if pending.done:
            return
        pending.done = True
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        if self._outstanding.get(pending.key) is pending:
            del self._outstanding[pending.key]

        result = BidResult(pending.submission, outcome, payload)
        self.event_bus.emit(_OUTCOME_EVENTS[outcome], {
            "item_id": pending.submission.item_id,
            "amount": pending.submission.amount,
            "result": result,
        })
        if pending.on_result is not None:
            try:
                pending.on_result(result)
            except Exception as e:
                logger.error(f"Bid result callback error for item {pending.key}: {e}")

    # ── Introspection ──

    def is_pending(self, item_id) -> bool:
        key = normalize_item_id(item_id)
        return key is not None and key in self._outstanding

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)
