"""vmpilot CLI: run a test inside a virtual machine."""

import os
import sys
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from vmpilot.cli._helpers import build_session, console, setup_logging
from vmpilot.lib.backend import BACKENDS, DEFAULT_BACKEND
from vmpilot.lib.supervisor import Supervisor

__version__ = "0.1.0"

app = typer.Typer(
    name="vmpilot",
    help="Supervise a test runner, a command server and a VM backend for one test run.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

WorkdirOption = Annotated[
    Path, typer.Option("--workdir", "-w", help="Run directory (vars.json, pid file, assets)")
]
ConfigOption = Annotated[
    Path | None, typer.Option("--config", "-c", help="Settings file (default: <workdir>/vmpilot.yml)")
]
VariablesArgument = Annotated[
    list[str] | None, typer.Argument(help="Test variable overrides, KEY=VALUE")
]


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"vmpilot {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", "-V",
            help="Show version",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """vmpilot: automated testing inside a virtual machine."""


@app.command()
def run(
    variables: VariablesArgument = None,
    workdir: WorkdirOption = Path("."),
    config: ConfigOption = None,
    debug: Annotated[bool, typer.Option("--debug", "-d", help="Verbose logging")] = False,
) -> None:
    """Start backend, command server and test runner, and supervise the run."""
    setup_logging(debug)
    workdir = workdir.resolve()
    try:
        session = build_session(workdir, config, variables or [])
    except typer.Exit:
        # no supervisor yet, keep the exit summary contract
        sys.stdout.write(f"{os.getpid()}: EXIT 1\n")
        raise
    code = Supervisor(session, version=__version__).run()
    raise typer.Exit(code)


@app.command()
def backends() -> None:
    """List the registered backends."""
    table = Table(title="Backends")
    table.add_column("Name")
    table.add_column("Asset extraction")
    table.add_column("Default")
    for name, cls in sorted(BACKENDS.items()):
        table.add_row(
            name,
            "yes" if cls.supports_asset_extraction else "no",
            "*" if name == DEFAULT_BACKEND else "",
        )
    console.print(table)


@app.command("vars")
def vars_(
    variables: VariablesArgument = None,
    workdir: WorkdirOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """Show test variables after merging overrides."""
    session = build_session(workdir.resolve(), config, variables or [])
    if not session.vars:
        console.print("[yellow]No variables defined.[/yellow]")
        return
    table = Table(title=str(session.vars_path))
    table.add_column("Variable")
    table.add_column("Value")
    for key in sorted(session.vars):
        table.add_row(key, str(session.vars[key]))
    console.print(table)
