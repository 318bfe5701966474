"""Command routing and screen-check throttling.

All timing decisions of the main loop live here: the reactor only waits
for ``timeout`` and calls back. A screen check is outstanding while
``tags`` is set; checks are spaced at least ``CHECK_INTERVAL`` seconds
apart unless the test asked for ``no_wait``.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from vmpilot.lib.ipc import Channel, ChannelWriteError
from vmpilot.lib.messages import BackendReply, Request, Response, parse_message

if TYPE_CHECKING:
    from vmpilot.lib.backend import BackendDriver

log = logging.getLogger(__name__)

# Delta assumed before the first check ever ran.
ETERNITY = 100.0
CHECK_INTERVAL = 1.0
NO_WAIT_TIMEOUT = 0.1
FIRE_THRESHOLD = 0.05


class CommandError(Exception):
    """A command was valid but cannot be served right now."""


class UnknownCommandError(CommandError):
    """The command name is not part of the protocol."""


class CommandHandler:
    """Routes commands from the test runner and command server."""

    def __init__(
        self,
        backend: BackendDriver,
        *,
        test_channel: Channel | None,
        cmd_channel: Channel | None,
        clock: Callable[[], float] = time.monotonic,
        version: str = "",
    ) -> None:
        self.backend = backend
        self.test_channel = test_channel
        self.cmd_channel = cmd_channel
        self.clock = clock
        self.version = version

        self.tags: list[str] | None = None
        self.no_wait = False
        self.timeout: float | None = None
        self.last_check: float | None = None

        self.current_test: str | None = None
        self.current_test_full_name: str | None = None
        self.pause_test_name: str | None = None
        self.test_completed = False
        self.processing_stopped = False

        self.on_tests_done: Callable[[], None] | None = None
        self._requesters: deque[Channel] = deque()

    @property
    def backend_output(self) -> Channel | None:
        return self.backend.output

    @property
    def pending_requesters(self) -> list[Channel]:
        return list(self._requesters)

    def channels(self) -> list[Channel]:
        """Open channels the reactor should wait on."""
        candidates = (self.test_channel, self.cmd_channel, self.backend_output)
        return [c for c in candidates if c is not None and not c.closed]

    # ── Command processing ──

    def process_command(self, channel: Channel, data: dict[str, Any]) -> None:
        message = parse_message(data)
        if not isinstance(message, Request):
            log.warning("Ignoring non-command record from %s: %r", channel.name, data)
            return
        cmd = message.cmd
        # the test runner sends {cmd, ...args} with arguments at top level
        arguments = message.arguments if "arguments" in data else dict(message.extra)
        log.debug("%s: %s %r", channel.name, cmd, arguments)
        if cmd.startswith("backend_"):
            self._forward_to_backend(channel, cmd.removeprefix("backend_"), arguments)
            return
        handler = getattr(self, f"_handle_{cmd}", None)
        if handler is None:
            msg = f"Unknown command '{cmd}' from {channel.name}"
            raise UnknownCommandError(msg)
        handler(channel, arguments)

    def _reply(self, channel: Channel, value: Any) -> None:
        channel.send(Response(value).to_wire())

    def _forward_to_backend(self, channel: Channel, cmd: str, arguments: dict[str, Any]) -> None:
        if channel in self._requesters:
            msg = f"{channel.name} issued backend_{cmd} while a backend call is still pending"
            raise CommandError(msg)
        self.backend.send_async(cmd, arguments)
        self._requesters.append(channel)

    def route_backend_reply(self, data: dict[str, Any]) -> None:
        """Send an answer from the backend output channel to whoever asked."""
        if not self._requesters:
            log.warning("Dropping unsolicited backend message: %r", data)
            return
        requester = self._requesters.popleft()
        message = parse_message(data)
        value = message.rsp if isinstance(message, BackendReply) else data
        if requester.closed:
            log.warning("Requester %s went away, dropping backend reply", requester.name)
            return
        self._reply(requester, value)

    def _handle_tests_done(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self.test_completed = bool(arguments.get("completed", True))
        log.info("Tests done (completed: %s)", self.test_completed)
        if self.on_tests_done:
            self.on_tests_done()

    def _handle_check_screen(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self.no_wait = bool(arguments.get("no_wait"))
        rsp = self.backend.set_tags_to_assert(arguments)
        tags = rsp.get("tags") if isinstance(rsp, dict) else None
        if tags is None:
            mustmatch = arguments.get("mustmatch") or []
            tags = [mustmatch] if isinstance(mustmatch, str) else list(mustmatch)
        self.tags = list(tags)
        log.debug("Armed screen check for %s (no_wait: %s)", self.tags, self.no_wait)

    def _handle_set_current_test(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self.current_test = arguments.get("name")
        self.current_test_full_name = arguments.get("full_name") or self.current_test
        self._notify_command_server({
            "set_current_test": self.current_test,
            "current_test_full_name": self.current_test_full_name,
        })
        self._reply(channel, 1)

    def _handle_set_pause_at_test(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self.pause_test_name = arguments.get("name")
        log.info("Pausing at test: %s", self.pause_test_name or "(none)")
        self._reply(channel, 1)

    def _handle_status(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self._reply(channel, {
            "tags": self.tags,
            "running": self.current_test,
            "current_test_full_name": self.current_test_full_name,
            "pause_test_name": self.pause_test_name,
            "test_completed": self.test_completed,
        })

    def _handle_version(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self._reply(channel, {"version": self.version})

    def _handle_send_clients(self, channel: Channel, arguments: dict[str, Any]) -> None:
        self._notify_command_server({"send_clients": 1, **arguments})
        self._reply(channel, 1)

    def _notify_command_server(self, data: dict[str, Any]) -> None:
        if self.cmd_channel is None or self.cmd_channel.closed:
            return
        try:
            self.cmd_channel.send(data)
        except ChannelWriteError as e:
            log.warning("Unable to inform command server: %s", e)

    def stop_command_processing(self) -> None:
        """Tell the command server no further commands will be served."""
        self.processing_stopped = True
        self._notify_command_server({"stop_processing_commands": 1})

    # ── Screen-check throttle ──

    def calc_check_delta(self) -> float:
        """Update ``timeout`` from the time since the last check; return the delta."""
        delta = ETERNITY if self.last_check is None else self.clock() - self.last_check
        timeout = CHECK_INTERVAL - delta if delta > 0 else 0.0
        self.timeout = max(0.0, timeout)
        return delta

    def check_asserted_screen(self) -> None:
        """Run one screen check if it is due, delivering conclusive results."""
        if self.tags is None:
            return
        if self.no_wait:
            # keep a floor under the loop so it does not spin
            self.timeout = NO_WAIT_TIMEOUT
        else:
            self.calc_check_delta()
            if self.timeout > FIRE_THRESHOLD:
                return

        self.last_check = self.clock()
        result = self.backend.check_asserted_screen().with_tags(self.tags)
        if result.conclusive:
            log.debug("Screen check concluded (found: %s, timeout: %s)", bool(result.found), result.timeout)
            if self.test_channel is not None:
                self.test_channel.send(Response(result.to_wire()).to_wire())
            self.tags = None
            self.timeout = None
            self.no_wait = False
            return
        if not self.no_wait:
            self.calc_check_delta()
