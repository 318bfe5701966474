"""Single-threaded main loop over the child channels."""

from __future__ import annotations

import contextlib
import logging
import select
import socket
from collections.abc import Sequence
from typing import TYPE_CHECKING

from vmpilot.lib.ipc import Channel, ChannelReadError

if TYPE_CHECKING:
    from vmpilot.lib.commands import CommandHandler
    from vmpilot.lib.process import ChildProcess
    from vmpilot.lib.session import Session

log = logging.getLogger(__name__)


class Reactor:
    """Wait for readable channels, dispatch one record per channel, repeat.

    ``wakeup`` is the read end of the socket registered with
    ``signal.set_wakeup_fd``; any signal makes the wait return so the
    loop flag and the children are re-examined right away.
    """

    def __init__(
        self,
        session: Session,
        handler: CommandHandler,
        *,
        children: Sequence[ChildProcess] = (),
        wakeup: socket.socket | None = None,
    ) -> None:
        self.session = session
        self.handler = handler
        self.children = list(children)
        self.wakeup = wakeup
        self.iterations = 0

    def run(self) -> None:
        while self.session.loop:
            if self.session.cancel.requested:
                log.info("Stop requested, leaving main loop")
                self.session.loop = False
                break
            self.run_once()

    def run_once(self) -> None:
        """One wait + dispatch + throttle round."""
        self.iterations += 1
        for channel in self._wait():
            if not self._dispatch(channel):
                break
        for child in self.children:
            child.poll()
        if self.session.loop and self.handler.tags is not None:
            self.handler.check_asserted_screen()

    def _wait(self) -> list[Channel]:
        channels = self.handler.channels()
        buffered = [c for c in channels if c.pending]
        if buffered:
            return buffered
        watched: list[object] = list(channels)
        if self.wakeup is not None:
            watched.append(self.wakeup)
        if not watched:
            log.error("No channel left to wait on")
            self.session.loop = False
            return []
        ready, _, _ = select.select(watched, [], [], self.handler.timeout)
        if self.wakeup is not None and self.wakeup in ready:
            self._drain_wakeup()
        return [c for c in channels if c in ready]

    def _drain_wakeup(self) -> None:
        with contextlib.suppress(BlockingIOError, InterruptedError):
            while self.wakeup.recv(512):
                pass

    def _dispatch(self, channel: Channel) -> bool:
        """Read and route one record. False means the loop must end."""
        if channel.closed:
            return True
        try:
            data = channel.receive()
        except ChannelReadError as e:
            log.error("Read failure on %s: %s", channel.name, e)
            data = None
        if data is None:
            log.error("Nothing to read from %s, peer is gone; aborting main loop", channel.name)
            self.session.loop = False
            self.session.return_code = 1
            return False
        if channel is self.handler.backend_output:
            self.handler.route_backend_reply(data)
        else:
            self.handler.process_command(channel, data)
        return True
