"""
Shared test helpers: an in-memory transport that behaves like a STOMP
session (subscription ids, MESSAGE frames per live subscription) so the
connection manager can be driven without a server.
"""

import asyncio
import itertools
import json

import pytest

from stomp_transport import StompFrame, TransportError

_CLOSE = object()


class FakeTransport:

    def __init__(self, fail_open=None):
        self.fail_open = fail_open
        self.opened = False
        self.closed = False
        self.sent = []
        self.subscriptions = {}
        self._inbox = asyncio.Queue()
        self._ids = itertools.count()

    async def open(self):
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True

    async def frames(self):
        while True:
            item = await self._inbox.get()
            if item is _CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def subscribe(self, destination):
        sub_id = f"sub-{next(self._ids)}"
        self.subscriptions[sub_id] = destination
        self.sent.append(("SUBSCRIBE", destination, sub_id))
        return sub_id

    def unsubscribe(self, sub_id):
        self.subscriptions.pop(sub_id, None)
        self.sent.append(("UNSUBSCRIBE", sub_id))

    def send(self, destination, payload):
        json.dumps(payload)
        self.sent.append(("SEND", destination, payload))

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    # ── Server side ──

    def deliver(self, destination, payload, sub_id=None, raw=False):
        """Broadcast on destination: one MESSAGE per live subscription to it."""
        body = payload if raw else json.dumps(payload)
        if sub_id is not None:
            ids = [sub_id]
        else:
            ids = [i for i, d in self.subscriptions.items() if d == destination]
        for i in ids:
            self._inbox.put_nowait(StompFrame("MESSAGE", {
                "destination": destination,
                "subscription": i,
            }, body))

    def close_gracefully(self):
        self._inbox.put_nowait(_CLOSE)

    def fail(self, message="connection reset"):
        self._inbox.put_nowait(TransportError(message))

    def frames_sent(self, command):
        return [f for f in self.sent if f[0] == command]


class TransportFactory:
    """Builds one FakeTransport per connection attempt; queue open failures in `failures`."""

    def __init__(self):
        self.created = []
        self.failures = []

    def __call__(self):
        error = self.failures.pop(0) if self.failures else None
        transport = FakeTransport(fail_open=error)
        self.created.append(transport)
        return transport

    @property
    def current(self):
        return self.created[-1]


async def settle(rounds: int = 10):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def factory():
    return TransportFactory()
