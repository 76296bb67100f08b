"""Shared fakes for driving BootloaderSession without hardware."""

from collections import deque

import pytest

from stm32_uart_loader.session import BootloaderSession

ACK = b"\x79"
NACK = b"\x1F"


class FakeTransport:
    """
    Scripted half-duplex target.

    Each write() releases the next queued reply into the receive buffer,
    so stale-input draining behaves as it would on a real link.
    `pending` bytes are waiting before anything is sent.
    """

    def __init__(self, replies=(), pending=b""):
        self.replies = deque(bytes(r) for r in replies)
        self.rx = deque(pending)
        self.writes = []

    def queue(self, *replies):
        self.replies.extend(bytes(r) for r in replies)

    def write(self, data):
        self.writes.append(bytes(data))
        if self.replies:
            self.rx.extend(self.replies.popleft())

    def read_byte(self):
        if self.rx:
            return self.rx.popleft()
        return None

    def count(self, frame):
        """How many writes were exactly `frame`."""
        return sum(1 for w in self.writes if w == frame)


class FakeLine:
    """Control line that records every level written."""

    def __init__(self):
        self.levels = []

    def write(self, level):
        self.levels.append(bool(level))


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class Rig:
    """Session plus the fakes behind it."""

    def __init__(self, replies=(), pending=b"", **kwargs):
        self.transport = FakeTransport(replies, pending)
        self.reset_line = FakeLine()
        self.boot0_line = FakeLine()
        self.boot1_line = kwargs.pop("boot1_line", None)
        self.clock = FakeClock()
        self.session = BootloaderSession(
            self.transport,
            self.reset_line,
            self.boot0_line,
            self.boot1_line,
            clock=self.clock,
            sleep=self.clock.sleep,
            **kwargs,
        )


@pytest.fixture
def rig():
    """Inactive session with no scripted replies."""
    return Rig()


@pytest.fixture
def active_rig():
    """Session that has already entered the bootloader."""
    r = Rig(replies=[ACK])
    r.session.enter_bootloader()
    r.transport.writes.clear()
    return r
