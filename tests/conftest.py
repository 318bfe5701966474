"""Make vmpilot importable for tests. Shared fixtures and helpers."""

import json
import socket
import sys
import weakref
from collections import deque
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from vmpilot.lib.ipc import Channel  # noqa: E402
from vmpilot.lib.messages import ScreenCheckResult, parse_screen_check  # noqa: E402


# ---------------------------------------------------------------------------
# Shared helpers (importable by test files)
# ---------------------------------------------------------------------------


def write_records(sock, *records):
    """Write JSON-line records to the raw peer socket of a Channel."""
    sock.sendall(b"".join(json.dumps(r).encode() + b"\n" for r in records))


_read_buffers = weakref.WeakKeyDictionary()


def read_record(sock, timeout=5):
    """Read one JSON-line record from a raw peer socket.

    Bytes past the first newline are kept for the next call on the same socket.
    """
    sock.settimeout(timeout)
    buf = _read_buffers.pop(sock, b"")
    while b"\n" not in buf:
        chunk = sock.recv(4096)
        if not chunk:
            return None
        buf += chunk
    line, rest = buf.split(b"\n", 1)
    if rest:
        _read_buffers[sock] = rest
    return json.loads(line)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeBackend:
    """In-process stand-in for BackendDriver.

    Synchronous calls are recorded and answered from ``replies``;
    ``screen_results`` feeds check_asserted_screen. The output channel is
    a real socket pair so the reactor can wait on it.
    """

    name = "qemu"
    supports_asset_extraction = True

    def __init__(self, replies=None):
        self.calls = []
        self.replies = dict(replies or {})
        self.screen_results = deque()
        self.async_calls = []
        parent, self.output_peer = socket.socketpair()
        self.output = Channel(parent, "backend-output")

    def call(self, cmd, **arguments):
        self.calls.append((cmd, arguments))
        return self.replies.get(cmd)

    def send_async(self, cmd, arguments=None):
        self.async_calls.append((cmd, arguments or {}))

    def set_tags_to_assert(self, arguments):
        return self.call("set_tags_to_assert", **arguments)

    def check_asserted_screen(self) -> ScreenCheckResult:
        self.calls.append(("check_asserted_screen", {}))
        if self.screen_results:
            return parse_screen_check(self.screen_results.popleft())
        return ScreenCheckResult()

    def close(self):
        self.output.close()
        self.output_peer.close()


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def channel_and_peer():
    """A Channel plus the raw socket at the other end."""
    parent, peer = socket.socketpair()
    channel = Channel(parent, "test")
    yield channel, peer
    channel.close()
    peer.close()


@pytest.fixture()
def fake_backend():
    backend = FakeBackend()
    yield backend
    backend.close()


@pytest.fixture()
def clock():
    return FakeClock()
