"""Shared utilities for the vmpilot CLI."""

import logging
from pathlib import Path

import typer
from rich.console import Console

from vmpilot.config import SETTINGS_FILE, ConfigError, Settings, load_settings, parse_overrides
from vmpilot.lib.session import Session

console = Console()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )


def load_settings_safe(workdir: Path, config: Path | None) -> Settings:
    """Load vmpilot.yml (or --config), or exit on error."""
    try:
        return load_settings(config or workdir / SETTINGS_FILE)
    except ConfigError as e:
        console.print(f"[red]Error loading settings:[/red] {e}")
        raise typer.Exit(1) from None


def build_session(workdir: Path, config: Path | None, variables: list[str]) -> Session:
    """Session with vars.json and command-line overrides merged, or exit on error."""
    settings = load_settings_safe(workdir, config)
    session = Session(workdir, settings)
    try:
        session.load_vars(parse_overrides(variables))
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    return session
