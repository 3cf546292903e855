"""
pytest configuration and shared fakes for the gateway tests.

The fakes stand in for the event loop timers, the HTTP transport, the clock
and the BLE scanner so the pipeline can be driven deterministically.
"""

import logging

import pytest

from ble_http_gateway import HttpResponse, TRANSPORT_OK


class FakeClock:
    """Manually advanced unix clock."""

    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return int(self.now)


class FakeTimerHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Timer facility that only fires when advanced."""

    def __init__(self, clock):
        self.clock = clock
        self.timers = []

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self.clock.now + delay, callback, args)
        self.timers.append(handle)
        return handle

    def pending(self):
        return [h for h in self.timers if not h.cancelled]

    def advance(self, seconds):
        target = self.clock.now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.timers.remove(handle)
            self.clock.now = max(self.clock.now, handle.when)
            handle.callback(*handle.args)
        self.clock.now = target


class FakeTransport:
    """Records requests; tests complete them explicitly."""

    def __init__(self):
        self.requests = []
        self.closed = False

    def post(self, url, body, callback):
        self.requests.append((url, body, callback))

    def complete(self, index=-1, code=200, body='', error_code=TRANSPORT_OK, response=True):
        _, _, callback = self.requests[index]
        callback(HttpResponse(code=code, body=body) if response else None, error_code)

    async def close(self):
        self.closed = True


class FakeScanner:
    """Stands in for BleakScanner."""

    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        FakeScanner.instances.append(self)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def loop(clock):
    return FakeLoop(clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def logger():
    return logging.getLogger('BLEHttpGateway.tests')


@pytest.fixture
def scanner_factory():
    FakeScanner.instances = []
    return FakeScanner
