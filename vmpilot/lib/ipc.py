"""JSON-line message channel between the supervisor and its children.

Every record is one JSON object terminated by a newline, written with a
single ``sendall``. Same framing as the QMP socket, but symmetric: both
ends send requests and responses.
"""

from __future__ import annotations

import contextlib
import json
import socket
from collections import deque
from typing import Any

_RECV_SIZE = 65536


class ChannelReadError(Exception):
    """A record arrived but could not be decoded."""


class ChannelWriteError(Exception):
    """The channel is closed or the peer went away."""


class Channel:
    """Bidirectional newline-delimited JSON channel over a stream socket."""

    def __init__(self, sock: socket.socket, name: str = "") -> None:
        self.name = name or f"fd{sock.fileno()}"
        self._sock: socket.socket | None = sock
        self._buf = b""
        self._ready: deque[dict[str, Any]] = deque()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"fd={self.fileno()}"
        return f"<Channel {self.name} {state}>"

    @property
    def closed(self) -> bool:
        return self._sock is None

    @property
    def pending(self) -> bool:
        """Whether a whole message is already buffered."""
        return bool(self._ready)

    def fileno(self) -> int:
        if self._sock is None:
            msg = f"Channel {self.name} is closed"
            raise ValueError(msg)
        return self._sock.fileno()

    def send(self, message: dict[str, Any]) -> None:
        """Write one record."""
        if self._sock is None:
            msg = f"Cannot write to closed channel {self.name}"
            raise ChannelWriteError(msg)
        data = json.dumps(message, separators=(",", ":")).encode() + b"\n"
        try:
            self._sock.sendall(data)
        except OSError as e:
            msg = f"Cannot write to channel {self.name}: {e}"
            raise ChannelWriteError(msg) from e

    def receive(self) -> dict[str, Any] | None:
        """Block until one record is available.

        Returns None once the peer has gone: clean close, reset, or close
        in the middle of a record. Nothing more will arrive after that.
        """
        if self._ready:
            return self._ready.popleft()
        if self._sock is None:
            return None
        while b"\n" not in self._buf:
            try:
                chunk = self._sock.recv(_RECV_SIZE)
            except (ConnectionResetError, BrokenPipeError):
                chunk = b""
            if not chunk:
                self._buf = b""
                return None
            self._buf += chunk
        *lines, self._buf = self._buf.split(b"\n")
        for line in lines:
            if line.strip():
                self._ready.append(self._decode(line))
        if not self._ready:
            return self.receive()
        return self._ready.popleft()

    def _decode(self, line: bytes) -> dict[str, Any]:
        try:
            obj = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            msg = f"Malformed record on channel {self.name}: {line[:200]!r}"
            raise ChannelReadError(msg) from e
        if not isinstance(obj, dict):
            msg = f"Record on channel {self.name} is not an object: {line[:200]!r}"
            raise ChannelReadError(msg)
        return obj

    def close(self) -> None:
        """Close the socket. Buffered data is dropped."""
        if self._sock:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None
        self._buf = b""
        self._ready.clear()


def channel_pair(name: str = "") -> tuple[Channel, socket.socket]:
    """Return a parent-side Channel and the raw child-side socket."""
    parent, child = socket.socketpair()
    child.set_inheritable(True)
    return Channel(parent, name), child
