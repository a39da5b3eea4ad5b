"""Shared fixtures: in-process transports standing in for a paired device."""

import queue
import threading
import time
from typing import Iterable, Optional

import pytest

from esp32_spp_thermometer.monitor import ConnectionState, MonitorState
from esp32_spp_thermometer.spp_receiver import (
    ConnectionFailedError,
    Transport,
    TransportReadError,
)


class QueueTransport(Transport):
    """Transport fed by the test through ``push()``.

    ``read()`` blocks on an internal queue exactly like a serial read blocks on
    the port, and ``close()`` unblocks it with end of stream.
    """

    def __init__(self, chunks: Iterable[bytes] = (), fail_open: bool = False):
        self._queue: "queue.Queue[Optional[object]]" = queue.Queue()
        for chunk in chunks:
            self._queue.put(chunk)
        self._fail_open = fail_open
        self._open = False
        self.opened = threading.Event()
        self.reading = threading.Event()
        self.close_calls = 0

    def push(self, chunk: bytes) -> None:
        self._queue.put(chunk)

    def push_error(self, message: str = "link reset") -> None:
        self._queue.put(TransportReadError(message))

    def end(self) -> None:
        self._queue.put(None)

    def open(self) -> None:
        if self._fail_open:
            raise ConnectionFailedError("device refused connection")
        self._open = True
        self.opened.set()

    def read(self, size: int = 1024) -> bytes:
        self.reading.set()
        item = self._queue.get()
        if item is None:
            self._queue.put(None)
            return b""
        if isinstance(item, Exception):
            raise item
        return item[:size]

    def close(self) -> None:
        self.close_calls += 1
        self._open = False
        self._queue.put(None)

    @property
    def is_open(self) -> bool:
        return self._open


class FakeClock:
    """Deterministic millisecond clock advancing 1000 ms per call."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1000
        return self.now


@pytest.fixture
def state() -> MonitorState:
    return MonitorState()


@pytest.fixture
def connected_state() -> MonitorState:
    state = MonitorState()
    state.update(connection_state=ConnectionState.CONNECTED)
    return state


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
