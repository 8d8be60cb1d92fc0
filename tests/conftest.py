from __future__ import annotations

import queue
import time

import pytest
import serial

from flash_monitor.channels import Mailbox
from flash_monitor.messages import Messenger


class FakePort:
    """Stand-in for an open serial.Serial."""

    def __init__(self, name: str = "/dev/ttyUSB0") -> None:
        self.port = name
        self.incoming: "queue.Queue[bytes]" = queue.Queue()
        self.writes = []
        self.dtr = True
        self.rts = False
        self._cts = True
        self.cts_error = None
        self.read_error = None
        self.write_error = None
        self.closed = False

    @property
    def in_waiting(self) -> int:
        return self.incoming.qsize()

    def read(self, size: int = 1) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        try:
            return self.incoming.get(timeout=0.01)
        except queue.Empty:
            return b""

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    @property
    def cts(self) -> bool:
        if self.cts_error is not None:
            raise self.cts_error
        return self._cts

    def close(self) -> None:
        self.closed = True


class Opener:
    """Records every config it is asked to open and hands out FakePorts."""

    def __init__(self, error: Exception = None) -> None:
        self.configs = []
        self.ports = []
        self.error = error

    def __call__(self, config):
        self.configs.append(config)
        if self.error is not None:
            raise self.error
        port = FakePort(config.path)
        self.ports.append(port)
        return port


@pytest.fixture
def fake_port():
    return FakePort()


@pytest.fixture
def opener():
    return Opener()


@pytest.fixture
def inbox():
    return queue.Queue()


@pytest.fixture
def messenger(inbox):
    return Messenger(inbox)


def _wait_for(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def pump():
    """Run the router loop by hand until ``until()`` holds."""

    def _pump(app, until, timeout: float = 3.0) -> None:
        deadline = time.monotonic() + timeout
        while not until():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssertionError("router never reached the expected state")
            try:
                msg = app.inbox.get(timeout=min(0.05, remaining))
            except queue.Empty:
                continue
            app.draw()
            app.handle(msg)

    return _pump


def notices(app, severity=None):
    return [n for n in app.state.log if severity is None or n.severity == severity]


@pytest.fixture
def get_notices():
    return notices


def drain(q: "queue.Queue", timeout: float = 0.0):
    out = []
    while True:
        try:
            out.append(q.get(timeout=timeout))
        except queue.Empty:
            return out


@pytest.fixture
def drain_queue():
    return drain


@pytest.fixture
def serial_error():
    return serial.SerialException("device reports readiness to read but returned no data")


@pytest.fixture
def link():
    return Mailbox("test-link")


@pytest.fixture
def make_opener():
    return Opener


@pytest.fixture
def make_port():
    return FakePort
