"""Lifecycle of the three children: backend, command server, test runner.

Start order is backend, command server, test runner. Stops are
idempotent and best effort; ``teardown`` runs them all again on every
exit path and prints the final status line.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import socket
import sys
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Any

from vmpilot.lib.assets import handle_generated_assets
from vmpilot.lib.backend import BackendCallError, BackendDriver, create_backend
from vmpilot.lib.commands import CommandHandler
from vmpilot.lib.ipc import Channel, ChannelWriteError
from vmpilot.lib.messages import Request
from vmpilot.lib.process import ChildProcess
from vmpilot.lib.reactor import Reactor
from vmpilot.lib.session import CancelState, Session

log = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class NotificationError(Exception):
    """The command server's clients could not be informed."""


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, socket.timeout)):
        return True
    reason = getattr(error, "reason", None)
    return isinstance(reason, (TimeoutError, socket.timeout))


class Supervisor:
    """Starts the children, runs the main loop, and shuts everything down."""

    def __init__(
        self,
        session: Session,
        *,
        backend_factory: Callable[[str | None, Session], BackendDriver] = create_backend,
        urlopen: Callable[..., Any] = urllib.request.urlopen,
        exit_func: Callable[[int], None] = os._exit,
        version: str = "",
    ) -> None:
        self.session = session
        self.backend_factory = backend_factory
        self.urlopen = urlopen
        self.exit_func = exit_func
        self.version = version

        self.backend: BackendDriver | None = None
        self.commands: ChildProcess | None = None
        self.commands_channel: Channel | None = None
        self.autotest: ChildProcess | None = None
        self.autotest_channel: Channel | None = None
        self.handler: CommandHandler | None = None

        self._wakeup_r: socket.socket | None = None
        self._wakeup_w: socket.socket | None = None
        self._previous_handlers: dict[int, Any] = {}
        self._previous_wakeup_fd: int | None = None

    @property
    def cmd_srv_port(self) -> int:
        base = self.session.get("QEMUPORT", self.session.settings.base_port)
        return int(base) + 1

    # ── Start ──

    def start_backend(self) -> BackendDriver:
        name = self.session.get("BACKEND")
        self.backend = self.backend_factory(name, self.session)
        log.info("Starting backend %s", self.backend.name)
        self.backend.start()
        return self.backend

    def start_commands(self) -> Channel:
        argv = [
            *self.session.settings.commands_command,
            "--port", str(self.cmd_srv_port),
            "--token", str(self.session.get("JOBTOKEN", "")),
        ]
        self.commands = ChildProcess(
            "commands", argv,
            cwd=str(self.session.workdir),
            stop_timeout=self.session.settings.stop_timeout,
        )
        (self.commands_channel,) = self.commands.start()
        return self.commands_channel

    def start_autotest(self) -> Channel:
        self.autotest = ChildProcess(
            "autotest", list(self.session.settings.autotest_command),
            cwd=str(self.session.workdir),
            stop_timeout=self.session.settings.stop_timeout,
        )
        (self.autotest_channel,) = self.autotest.start()
        return self.autotest_channel

    # ── Stop ──

    def stop_backend(self) -> None:
        if self.backend is None:
            return
        log.info("Stopping backend process %s", self.backend.process.pid)
        self.backend.stop()
        self.backend = None
        log.info("Done with backend process")

    def notify_command_clients(self, reason: str) -> None:
        """POST the stop reason to the command server's broadcast endpoint."""
        timeout = self.session.settings.notify_timeout
        token = self.session.get("JOBTOKEN", "")
        url = f"http://127.0.0.1:{self.cmd_srv_port}/{token}/broadcast"
        log.info("Informing command server clients before stopping it: %s", url)
        req = urllib.request.Request(
            url,
            data=json.dumps({"stopping_test_execution": reason}).encode(),
            headers={"Content-Type": "application/json"},
        )
        try:
            with self.urlopen(req, timeout=timeout) as resp:
                status = resp.status
        except urllib.error.HTTPError as e:
            msg = f"HTTP {e.code} {e.reason}"
            raise NotificationError(msg) from e
        except (urllib.error.URLError, OSError) as e:
            if _is_timeout(e):
                msg = f"timeout after {timeout} seconds"
                raise NotificationError(msg) from e
            raise NotificationError(str(e)) from e
        if status != 200:
            msg = f"HTTP {status}"
            raise NotificationError(msg)

    def stop_commands(self, reason: str = "") -> None:
        """Stop the command server, first telling its clients why when a reason is given."""
        if self.commands is None:
            return
        if reason and self.commands.is_running:
            try:
                self.notify_command_clients(reason)
            except NotificationError as e:
                if _is_timeout(e.__cause__ or e):
                    log.warning("Timeout when informing command server clients about stopping: %s", e)
                else:
                    log.warning("Unable to inform command server clients about stopping: %s", e)
        log.info("Stopping command server %s: %s", self.commands.pid, reason or "shutdown")
        self.commands.stop()
        self.commands = None
        self.commands_channel = None
        if self.handler is not None:
            self.handler.cmd_channel = None
        log.info("Done with command server")

    def stop_autotest(self) -> None:
        if self.autotest is None:
            return
        log.info("Stopping autotest process %s", self.autotest.pid)
        self.autotest.stop()
        self.autotest = None
        self.autotest_channel = None
        if self.handler is not None:
            self.handler.test_channel = None
        log.info("Done with autotest process")

    def close_autotest_channel(self) -> None:
        if self.autotest_channel is not None:
            self.autotest_channel.close()
            self.autotest_channel = None
        if self.handler is not None:
            self.handler.test_channel = None

    # ── Signals ──

    def install_signal_handlers(self) -> socket.socket:
        """Route signals to ``handle_signal`` and wake the reactor on each one."""
        self._wakeup_r, self._wakeup_w = socket.socketpair()
        self._wakeup_r.setblocking(False)
        self._wakeup_w.setblocking(False)
        self._previous_wakeup_fd = signal.set_wakeup_fd(self._wakeup_w.fileno())
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self.handle_signal)
        # a Python-level handler is needed for SIGCHLD to reach the wakeup fd
        self._previous_handlers[signal.SIGCHLD] = signal.signal(signal.SIGCHLD, lambda *_: None)
        return self._wakeup_r

    def restore_signal_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()
        if self._previous_wakeup_fd is not None:
            signal.set_wakeup_fd(self._previous_wakeup_fd)
            self._previous_wakeup_fd = None
        for sock in (self._wakeup_r, self._wakeup_w):
            if sock is not None:
                sock.close()
        self._wakeup_r = self._wakeup_w = None

    def handle_signal(self, signum: int, _frame: object = None) -> None:
        log.info("Got signal %s", signal.Signals(signum).name)
        state = self.session.cancel.signal(running=self.session.loop)
        if state is CancelState.REQUESTED:
            self.session.loop = False
            return
        self.force_shutdown()

    def force_shutdown(self) -> None:
        """Kill every child without notification and leave immediately."""
        log.warning("Forced shutdown")
        if self.backend is not None:
            self.backend.kill()
            self.backend = None
        if self.commands is not None:
            self.commands.kill()
            self.commands = None
        if self.autotest is not None:
            self.autotest.kill()
            self.autotest = None
        self.exit_func(1)

    # ── Run ──

    def _stop_loop(self, child: ChildProcess) -> None:
        if self.session.loop:
            log.info("%s process %s exited, stopping main loop", child.name, child.pid)
            self.session.loop = False

    def _tests_done(self) -> None:
        self.close_autotest_channel()
        self.stop_autotest()
        self.session.loop = False

    def _ensure_vm(self) -> None:
        if self.backend.is_alive():
            log.info("VM is already running")
            return
        log.info("Starting VM")
        self.backend.start_vm()

    def run(self) -> int:
        """Whole run. Always ends with ``teardown``; returns the exit code."""
        try:
            self._run()
        except Exception:
            log.exception("Run aborted")
            self.session.return_code = 1
        finally:
            self.teardown()
        return self.session.return_code

    def _run(self) -> None:
        session = self.session
        locale = session.settings.locale
        os.environ["LC_ALL"] = locale
        os.environ["LANG"] = locale

        self.start_backend()
        self.start_commands()
        self.start_autotest()
        session.write_pid_file()
        wakeup = self.install_signal_handlers()

        self.handler = CommandHandler(
            self.backend,
            test_channel=self.autotest_channel,
            cmd_channel=self.commands_channel,
            version=self.version,
        )
        self.handler.on_tests_done = self._tests_done
        children = [self.autotest, self.backend.process, self.commands]
        for child in children:
            child.once_collected(self._stop_loop)

        self.autotest_channel.send(Request("start_tests").to_wire())
        self._ensure_vm()

        session.return_code = 0
        Reactor(session, self.handler, children=children, wakeup=wakeup).run()
        self._shutdown_after_loop()

    def _shutdown_after_loop(self) -> None:
        session = self.session
        handler = self.handler
        # leaving the loop means nobody serves commands anymore
        handler.stop_command_processing()
        self.stop_commands("test execution ended")
        if self.autotest_channel is not None:
            log.error("Test runner did not report completion, unusual shutdown")
            session.return_code = 1
            self.close_autotest_channel()
            self.stop_autotest()

        log.info("vmpilot %s", "failed" if session.return_code else "done")

        clean_shutdown = None
        if not session.return_code:
            try:
                clean_shutdown = self.backend.is_shutdown()
                log.info("Backend shutdown state: %s", clean_shutdown)
            except BackendCallError as e:
                log.warning("Unable to query backend shutdown state: %s", e)
            try:
                self.backend.stop_vm()
            except BackendCallError as e:
                log.error("stop_vm error: %s", e)
                session.return_code = 1

        session.reload_vars()
        if not session.return_code and self.backend.supports_asset_extraction:
            session.return_code = handle_generated_assets(
                self.backend, session,
                test_completed=handler.test_completed,
                clean_shutdown=clean_shutdown,
            )
        session.save_vars()

    def teardown(self) -> None:
        """Stop whatever is left and print the final status line."""
        for stop in (self.stop_backend, self.stop_commands, self.stop_autotest):
            try:
                stop()
            except (OSError, ChannelWriteError) as e:
                log.error("Error during teardown: %s", e)
        self.restore_signal_handlers()
        sys.stdout.write(f"{os.getpid()}: EXIT {self.session.return_code}\n")
        sys.stdout.flush()
