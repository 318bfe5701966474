"""Test-run supervisor core.

- ipc, messages: JSON-line channels and the record shapes on them
- process, backend: child process handles (backend with two channels)
- commands, reactor: command routing, screen-check throttle, main loop
- supervisor, session, assets: lifecycle, run context, post-run extraction
"""

from vmpilot.lib.assets import AssetDescriptor, AssetDirectory, UnsafeShutdownError
from vmpilot.lib.backend import (
    BACKENDS,
    AssetExtractionError,
    BackendCallError,
    BackendDriver,
    UnknownBackendError,
    create_backend,
    register_backend,
)
from vmpilot.lib.commands import CommandError, CommandHandler, UnknownCommandError
from vmpilot.lib.ipc import Channel, ChannelReadError, ChannelWriteError
from vmpilot.lib.process import ChildProcess
from vmpilot.lib.reactor import Reactor
from vmpilot.lib.session import CancellationToken, Session
from vmpilot.lib.supervisor import NotificationError, Supervisor

__all__ = [
    "BACKENDS",
    "AssetDescriptor",
    "AssetDirectory",
    "AssetExtractionError",
    "BackendCallError",
    "BackendDriver",
    "CancellationToken",
    "Channel",
    "ChannelReadError",
    "ChannelWriteError",
    "ChildProcess",
    "CommandError",
    "CommandHandler",
    "NotificationError",
    "Reactor",
    "Session",
    "Supervisor",
    "UnknownBackendError",
    "UnknownCommandError",
    "UnsafeShutdownError",
    "create_backend",
    "register_backend",
]
