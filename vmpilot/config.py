"""Supervisor settings (vmpilot.yml) and test variables (vars.json)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

SETTINGS_FILE = "vmpilot.yml"


class ConfigError(ValueError):
    """Invalid settings file, variables file, or override."""


@dataclass
class Settings:
    """How to launch the children and where run artefacts go."""

    backend_command: list[str] = field(default_factory=lambda: ["vmpilot-backend"])
    autotest_command: list[str] = field(default_factory=lambda: ["vmpilot-autotest"])
    commands_command: list[str] = field(default_factory=lambda: ["vmpilot-commands"])
    base_port: int = 15222
    notify_timeout: float = 15
    stop_timeout: float = 10
    pid_file: str = "vmpilot.pid"
    vars_file: str = "vars.json"
    state_file: str = "base_state.json"
    locale: str = "C"


_LIST_FIELDS = {"backend_command", "autotest_command", "commands_command"}
_NUMBER_FIELDS = {"base_port", "notify_timeout", "stop_timeout"}


def load_settings(path: str | Path | None) -> Settings:
    """Load settings from YAML. A missing file yields the defaults."""
    if path is None:
        return Settings()
    p = Path(path)
    if not p.is_file():
        return Settings()
    try:
        with open(p) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        msg = f"Cannot parse {p}: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f"{p}: expected a mapping at top level"
        raise ConfigError(msg)
    return settings_from_dict(data, source=str(p))


def settings_from_dict(data: dict[str, Any], source: str = "settings") -> Settings:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"{source}: unknown setting(s): {', '.join(unknown)}"
        raise ConfigError(msg)
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key in _LIST_FIELDS:
            if isinstance(value, str):
                value = value.split()
            if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
                msg = f"{source}: {key} must be a non-empty command list"
                raise ConfigError(msg)
        elif key in _NUMBER_FIELDS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                msg = f"{source}: {key} must be a number"
                raise ConfigError(msg)
            if key == "base_port":
                value = int(value)
        elif not isinstance(value, str):
            msg = f"{source}: {key} must be a string"
            raise ConfigError(msg)
        values[key] = value
    return Settings(**values)


def load_vars(path: str | Path) -> dict[str, Any]:
    """Read vars.json. A missing file means no variables yet."""
    p = Path(path)
    if not p.is_file():
        return {}
    try:
        data = json.loads(p.read_text())
    except json.JSONDecodeError as e:
        msg = f"Cannot parse {p}: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f"{p}: expected a JSON object"
        raise ConfigError(msg)
    return data


def save_vars(path: str | Path, variables: dict[str, Any]) -> None:
    p = Path(path)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(variables, indent=4, sort_keys=True) + "\n")
    tmp.replace(p)


def parse_overrides(items: list[str]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` arguments into a dict. Keys are upper-cased."""
    overrides = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            msg = f"Invalid variable override '{item}', expected KEY=VALUE"
            raise ConfigError(msg)
        overrides[key.upper()] = value
    return overrides
