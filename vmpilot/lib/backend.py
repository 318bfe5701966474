"""Handle on the virtualization backend process.

The backend owns two channels: a request channel used for synchronous
round trips (the caller needs the answer before it can go on) and an
output channel carrying answers to forwarded test-runner calls, which
the reactor multiplexes with everything else.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from vmpilot.lib.ipc import Channel, ChannelReadError, ChannelWriteError
from vmpilot.lib.messages import BackendReply, Response, ScreenCheckResult, parse_message, parse_screen_check
from vmpilot.lib.process import ChildProcess

if TYPE_CHECKING:
    from vmpilot.lib.assets import AssetDescriptor
    from vmpilot.lib.session import Session

log = logging.getLogger(__name__)

DEFAULT_BACKEND = "qemu"
REQUEST_FD_ENV = "VMPILOT_BACKEND_REQUEST_FD"
OUTPUT_FD_ENV = "VMPILOT_BACKEND_OUTPUT_FD"


class BackendCallError(Exception):
    """A synchronous backend call could not be completed."""


class UnknownBackendError(Exception):
    """No backend is registered under the requested name."""


class AssetExtractionError(Exception):
    """One asset could not be extracted."""

    def __init__(self, asset: AssetDescriptor, cause: object) -> None:
        super().__init__(f"unable to extract {asset.name}: {cause}")
        self.asset = asset
        self.cause = cause


BACKENDS: dict[str, type[BackendDriver]] = {}


def register_backend(name: str) -> Callable[[type[BackendDriver]], type[BackendDriver]]:
    def decorator(cls: type[BackendDriver]) -> type[BackendDriver]:
        cls.name = name
        BACKENDS[name] = cls
        return cls
    return decorator


class BackendDriver:
    """Backend child process plus its request and output channels."""

    name = ""
    supports_asset_extraction = False

    def __init__(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        stop_timeout: float = 10,
    ) -> None:
        self.process = ChildProcess(
            f"backend-{self.name}",
            argv,
            channel_env=(REQUEST_FD_ENV, OUTPUT_FD_ENV),
            env=env,
            cwd=cwd,
            stop_timeout=stop_timeout,
        )
        self.requests: Channel | None = None
        self.output: Channel | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pid={self.process.pid}>"

    def start(self) -> None:
        self.requests, self.output = self.process.start()

    def stop(self) -> None:
        self.process.stop()
        self.requests = self.output = None

    def kill(self) -> None:
        self.process.kill()
        self.requests = self.output = None

    def call(self, cmd: str, **arguments: Any) -> Any:
        """Synchronous round trip on the request channel."""
        if self.requests is None:
            msg = f"Backend not running, cannot call {cmd}"
            raise BackendCallError(msg)
        try:
            self.requests.send({"cmd": cmd, "arguments": arguments})
            data = self.requests.receive()
        except (ChannelWriteError, ChannelReadError) as e:
            msg = f"Backend call {cmd} failed: {e}"
            raise BackendCallError(msg) from e
        if data is None:
            msg = f"Backend went away during {cmd}"
            raise BackendCallError(msg)
        reply = parse_message(data)
        if isinstance(reply, (BackendReply, Response)) and not reply.extra.get("error"):
            return reply.rsp if isinstance(reply, BackendReply) else reply.ret
        error = data.get("error") or f"unexpected reply {data!r}"
        msg = f"Backend call {cmd} failed: {error}"
        raise BackendCallError(msg)

    def send_async(self, cmd: str, arguments: dict[str, Any] | None = None) -> None:
        """Queue a request whose answer arrives later on the output channel."""
        if self.output is None:
            msg = f"Backend not running, cannot forward {cmd}"
            raise ChannelWriteError(msg)
        self.output.send({"cmd": cmd, "arguments": arguments or {}})

    def is_alive(self) -> bool:
        try:
            return bool(self.call("alive"))
        except BackendCallError as e:
            log.info("Backend liveness check failed, assuming VM is not running: %s", e)
            return False

    def start_vm(self) -> Any:
        return self.call("start_vm")

    def stop_vm(self) -> Any:
        return self.call("stop_vm")

    def is_shutdown(self) -> bool:
        return bool(self.call("is_shutdown"))

    def set_tags_to_assert(self, arguments: dict[str, Any]) -> Any:
        return self.call("set_tags_to_assert", **arguments)

    def check_asserted_screen(self) -> ScreenCheckResult:
        return parse_screen_check(self.call("check_asserted_screen"))

    def extract_asset(self, asset: AssetDescriptor) -> Any:
        if not self.supports_asset_extraction:
            raise AssetExtractionError(asset, f"backend {self.name} cannot extract assets")
        try:
            return self.call("extract_assets", **asset.to_wire())
        except BackendCallError as e:
            raise AssetExtractionError(asset, e) from e


@register_backend("qemu")
class QemuBackend(BackendDriver):
    """Local QEMU; disks and firmware variables can be pulled out after a run."""

    supports_asset_extraction = True


@register_backend("svirt")
class SvirtBackend(BackendDriver):
    """Remote libvirt host."""


@register_backend("generalhw")
class GeneralHwBackend(BackendDriver):
    """Bare-metal machine driven by external scripts."""


def create_backend(name: str | None, session: Session) -> BackendDriver:
    """Instantiate the backend registered under ``name`` (default: qemu)."""
    name = name or DEFAULT_BACKEND
    cls = BACKENDS.get(name)
    if cls is None:
        msg = f"Unknown backend '{name}'. Available: {', '.join(sorted(BACKENDS))}"
        raise UnknownBackendError(msg)
    argv = [*session.settings.backend_command, "--backend", name]
    return cls(argv, cwd=str(session.workdir), stop_timeout=session.settings.stop_timeout)
