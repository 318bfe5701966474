"""Run-wide context shared by every component."""

from __future__ import annotations

import enum
import json
import logging
import os
from pathlib import Path
from typing import Any

from vmpilot.config import Settings, load_vars, save_vars

log = logging.getLogger(__name__)


class CancelState(enum.Enum):
    NONE = 0
    REQUESTED = 1
    FORCED = 2


class CancellationToken:
    """Two-step cancellation: a graceful request, then a forced stop."""

    def __init__(self) -> None:
        self.state = CancelState.NONE

    @property
    def requested(self) -> bool:
        return self.state is not CancelState.NONE

    @property
    def forced(self) -> bool:
        return self.state is CancelState.FORCED

    def signal(self, *, running: bool = True) -> CancelState:
        """Advance one step, or straight to FORCED when nothing is running."""
        if self.state is CancelState.NONE and running:
            self.state = CancelState.REQUESTED
        else:
            self.state = CancelState.FORCED
        return self.state


class Session:
    """Variables, outcome, and loop flag of one run."""

    def __init__(
        self,
        workdir: str | Path,
        settings: Settings | None = None,
        variables: dict[str, Any] | None = None,
    ) -> None:
        self.workdir = Path(workdir)
        self.settings = settings or Settings()
        self.vars: dict[str, Any] = dict(variables or {})
        self.return_code = 1
        self.loop = True
        self.cancel = CancellationToken()

    @property
    def vars_path(self) -> Path:
        return self.workdir / self.settings.vars_file

    @property
    def pid_path(self) -> Path:
        return self.workdir / self.settings.pid_file

    @property
    def state_path(self) -> Path:
        return self.workdir / self.settings.state_file

    def get(self, key: str, default: Any = None) -> Any:
        value = self.vars.get(key)
        return default if value in (None, "") else value

    def load_vars(self, overrides: dict[str, str] | None = None) -> None:
        """Load vars.json, then apply command-line overrides on top."""
        self.vars = load_vars(self.vars_path)
        self.vars.update(overrides or {})

    def reload_vars(self) -> None:
        """Merge variables written by the backend or test runner meanwhile."""
        self.vars.update(load_vars(self.vars_path))

    def save_vars(self) -> None:
        save_vars(self.vars_path, self.vars)

    def write_pid_file(self) -> Path:
        self.pid_path.write_text(f"{os.getpid()}\n")
        return self.pid_path

    def serialize_state(self, component: str, msg: str, *, error: bool = False) -> None:
        """Record why the run is in its current state for external observers."""
        (log.error if error else log.info)("%s: %s", component, msg)
        state = {"component": component, "msg": msg}
        if error:
            state["error"] = True
        self.state_path.write_text(json.dumps(state) + "\n")
