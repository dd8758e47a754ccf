"""
Auction Bid Watcher
===================
Command-line launcher for the real-time bid client:
- Prints a REST snapshot (item + highest bid) for each watched item
- Streams global and per-item bid updates to the log
- Optionally places one bid and reports the server's verdict
- Stops on Ctrl+C / SIGTERM, or after --duration seconds

Usage:
    python main.py --item 7 --item 12
    python main.py --item 7 --bid 200
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from dotenv import load_dotenv

from auction_api import AuctionApiClient
from auction_data.config import SyncConfig
from bid_sync_client import BidSyncClient
from ws_manager import EventType

LOG_DIR = os.getenv("AUCTION_LOG_DIR", "logs")


def setup_logging(level: str = "INFO", log_dir: Optional[str] = LOG_DIR) -> logging.Logger:
    logger = logging.getLogger("auction_sync")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(
            os.path.join(log_dir, "bid_watch.log"), maxBytes=10 * 1024 * 1024, backupCount=5
        )
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    return logger


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch live auction bids over WebSocket")
    parser.add_argument("--item", action="append", default=[], help="Item id to watch (repeatable)")
    parser.add_argument("--bid", type=float, help="Place one bid of this amount on the single --item")
    parser.add_argument("--duration", type=float, default=0, help="Stop after N seconds (0 = until Ctrl+C)")
    parser.add_argument("--log-level", default=os.getenv("AUCTION_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)
    if args.bid is not None and len(args.item) != 1:
        parser.error("--bid needs exactly one --item")
    return args


class BidWatcher:
    """Wires a BidSyncClient to log output for the items being watched."""

    def __init__(self, client: BidSyncClient, api: Optional[AuctionApiClient], logger: logging.Logger):
        self.client = client
        self.api = api
        self.logger = logger
        self._unsubscribers = []
        self._item_handlers = {}
        self._stopped = False
        self._bid_amount: Optional[float] = None
        self._bid_item = None

    def print_snapshot(self, item_id):
        if self.api is None:
            return
        item = self.api.get_item(item_id)
        if item is None:
            self.logger.warning(f"  Item {item_id}: no REST snapshot available")
            return
        highest = self.api.get_highest_bid(item_id)
        top = highest.get("amount") if isinstance(highest, dict) else None
        self.logger.info(
            f"  Item {item_id}: {item.get('name', '?')} | "
            f"highest bid: {'$' + str(top) if top is not None else 'none'}"
        )

    def watch(self, item_ids):
        self._unsubscribers.append(self.client.subscribe_to_global_updates(self._on_global_update))
        for item_id in item_ids:
            self._item_handlers[item_id] = self._item_handler(item_id)
            self._follow_item(item_id)

    def _follow_item(self, item_id):
        self._unsubscribers.append(
            self.client.subscribe_to_item_updates(item_id, self._item_handlers[item_id])
        )

    def bid_when_connected(self, item_id, amount: float):
        """Place the bid as soon as the connection is up (once)."""
        self._bid_item = item_id
        self._bid_amount = amount
        self.client.on(EventType.CONNECTED, self._on_connected)

    def stop(self):
        self._stopped = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _on_connected(self, event_type, data):
        if self._bid_amount is None:
            return
        amount, self._bid_amount = self._bid_amount, None
        self.client.place_bid(self._bid_item, amount, on_result=self._on_bid_result)

    def _on_bid_result(self, result):
        self.logger.info(
            f"  Bid on item {result.submission.item_id} for ${result.submission.amount}: "
            f"{result.outcome.value.upper()}"
        )
        # The bid's reply subscription replaced the item stream; resume it
        item_id = result.submission.item_id
        if item_id in self._item_handlers and not self._stopped:
            self._follow_item(item_id)

    def _on_global_update(self, payload):
        self.logger.info(f"  [all] {self._describe(payload)}")

    def _item_handler(self, item_id):
        def handler(payload):
            self.logger.info(f"  [item {item_id}] {self._describe(payload)}")
        return handler

    @staticmethod
    def _describe(payload) -> str:
        if not isinstance(payload, dict):
            return repr(payload)
        who = payload.get("bidderName") or payload.get("bidderId") or "?"
        return f"item={payload.get('itemId', '?')} amount=${payload.get('amount')} by {who}"


async def run(args: argparse.Namespace) -> int:
    logger = setup_logging(args.log_level)
    config = SyncConfig()
    logger.info(
        f"Bid watcher started {datetime.now(timezone.utc).isoformat(timespec='seconds')} "
        f"| ws={config.ws_url} | items={args.item or 'global only'}"
    )

    client = BidSyncClient(config)
    watcher = BidWatcher(client, AuctionApiClient.from_config(config), logger)
    for item_id in args.item:
        watcher.print_snapshot(item_id)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            logger.debug(f"Signal handler for {sig} unavailable")
    client.on(EventType.GAVE_UP, lambda et, d: stop.set())

    watcher.watch(args.item)
    if args.bid is not None:
        watcher.bid_when_connected(args.item[0], args.bid)
    client.connect()

    try:
        if args.duration:
            try:
                await asyncio.wait_for(stop.wait(), timeout=args.duration)
            except asyncio.TimeoutError:
                logger.info(f"Duration of {args.duration:g}s reached")
        else:
            await stop.wait()
    finally:
        watcher.stop()
        logger.info(f"Final status: {client.get_connection_summary()}")
        await client.disconnect()

    return 1 if client.connection.gave_up else 0


def cli():
    load_dotenv()
    args = parse_args()
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nWatcher stopped by user.")
        sys.exit(0)


if __name__ == "__main__":
    cli()
