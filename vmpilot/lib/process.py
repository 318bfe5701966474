"""Child process handle with socket-pair channels.

Each channel is a ``socket.socketpair()``; the child end is inherited by
the spawned program and its descriptor number is exported in an
environment variable so the child can wrap it again.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
from collections.abc import Callable, Sequence

from vmpilot.lib.ipc import Channel, channel_pair

log = logging.getLogger(__name__)

IPC_FD_ENV = "VMPILOT_IPC_FD"


class ChildProcess:
    """One supervised child program and the channels connected to it."""

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        channel_env: Sequence[str] = (IPC_FD_ENV,),
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        stop_timeout: float = 10,
    ) -> None:
        self.name = name
        self.argv = list(argv)
        self.channel_env = list(channel_env)
        self.env = env
        self.cwd = cwd
        self.stop_timeout = stop_timeout
        self.channels: list[Channel] = []

        self._proc: subprocess.Popen[bytes] | None = None
        self._on_collected: list[Callable[[ChildProcess], None]] = []
        self._collected = False

    def __repr__(self) -> str:
        return f"<ChildProcess {self.name} pid={self.pid}>"

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> list[Channel]:
        """Spawn the program. Returns one channel per ``channel_env`` entry."""
        if self._proc is not None:
            msg = f"{self.name} already started"
            raise RuntimeError(msg)
        env = dict(os.environ if self.env is None else self.env)
        child_socks = []
        for var in self.channel_env:
            channel, child_sock = channel_pair(f"{self.name}:{var}")
            self.channels.append(channel)
            child_socks.append(child_sock)
            env[var] = str(child_sock.fileno())
        try:
            self._proc = subprocess.Popen(
                self.argv,
                env=env,
                cwd=self.cwd,
                pass_fds=[s.fileno() for s in child_socks],
            )
        except OSError:
            for channel in self.channels:
                channel.close()
            self.channels = []
            raise
        finally:
            for sock in child_socks:
                sock.close()
        log.info("Started %s process %d: %s", self.name, self._proc.pid, " ".join(self.argv))
        return list(self.channels)

    def once_collected(self, callback: Callable[[ChildProcess], None]) -> None:
        """Call ``callback(self)`` once, when the child is found dead."""
        self._on_collected.append(callback)

    def poll(self) -> bool:
        """Return True if the child has exited, firing collected callbacks."""
        if self._proc is None or self._proc.poll() is None:
            return False
        self._collect()
        return True

    def _collect(self) -> None:
        if self._collected:
            return
        self._collected = True
        log.debug("%s process %s exited with %s", self.name, self.pid, self.returncode)
        callbacks, self._on_collected = self._on_collected, []
        for callback in callbacks:
            callback(self)

    def _close_channels(self) -> None:
        for channel in self.channels:
            channel.close()

    def stop(self) -> None:
        """Terminate gracefully, escalating to SIGKILL after ``stop_timeout``."""
        self._close_channels()
        if self._proc is None:
            return
        if self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                log.warning(
                    "%s process %d did not terminate within %ss, killing",
                    self.name, self._proc.pid, self.stop_timeout,
                )
                self._proc.kill()
                self._proc.wait()
        self._collect()

    def kill(self) -> None:
        """SIGKILL without grace period."""
        self._close_channels()
        if self._proc is None:
            return
        if self._proc.poll() is None:
            with contextlib.suppress(OSError):
                self._proc.kill()
            with contextlib.suppress(subprocess.TimeoutExpired):
                self._proc.wait(timeout=5)
        self._collect()
