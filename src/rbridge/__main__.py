"""rbridge command line."""

from __future__ import annotations

from typing import Any

import typer
from rich.console import Console
from rich.text import Text

from rbridge.bridge import Bridge, launch
from rbridge.errors import LaunchError, ParseError, UnsupportedType
from rbridge.oracle import Complete, Incomplete
from rbridge.protocol.codec import Matrix

app = typer.Typer(name="rbridge", help="Drive a long-lived R engine from Python", add_completion=False)
console = Console()
error_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    executable: str | None = typer.Option(None, "--executable", "-x", help="R executable"),
    port: int | None = typer.Option(None, "--port", help="Smallest candidate data port"),
    interactive: bool | None = typer.Option(None, "--interactive/--no-interactive", help="Run R on a pty"),
) -> None:
    overrides: dict[str, Any] = {"executable": executable, "port_number": port, "interactive": interactive}
    ctx.obj = {key: value for key, value in overrides.items() if value is not None}


def _launch(ctx: typer.Context) -> Bridge:
    try:
        return launch(**(ctx.obj or {}))
    except LaunchError as exc:
        _error(str(exc))
        raise typer.Exit(2) from exc


def _error(message: str) -> None:
    error_console.print(Text.assemble(("Error: ", "bold red"), message))


def _render(value: object) -> str:
    if isinstance(value, Matrix):
        return "\n".join(" ".join(repr(item) for item in row) for row in value.rows_list())
    return repr(value)


@app.command("eval")
def eval_command(ctx: typer.Context, code: str = typer.Argument(..., help="R code to evaluate")) -> None:
    """Evaluate code and print the engine output."""
    with _launch(ctx) as bridge:
        try:
            completed = bridge.eval(code, echo=True)
        except ParseError as exc:
            _error(str(exc))
            raise typer.Exit(1) from exc
    if not completed:
        raise typer.Exit(130)


@app.command("check")
def check_command(ctx: typer.Context, code: str = typer.Argument(..., help="R code to classify")) -> None:
    """Report whether code is complete, incomplete or unrecoverable."""
    with _launch(ctx) as bridge:
        result = bridge.is_complete(code)
    if isinstance(result, Complete):
        console.out("complete")
    elif isinstance(result, Incomplete):
        console.out("incomplete")
    else:
        console.out(result.describe(), highlight=False)
        raise typer.Exit(1)


@app.command("pull")
def pull_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="R expression to copy back"),
    setup: str | None = typer.Option(None, "--setup", help="Code evaluated before pulling"),
) -> None:
    """Print the value of an R expression."""
    with _launch(ctx) as bridge:
        try:
            if setup:
                bridge.eval(setup, echo=False)
            value = bridge.pull(name)
        except (ParseError, UnsupportedType) as exc:
            _error(str(exc))
            raise typer.Exit(1) from exc
    console.out(_render(value), highlight=False)


if __name__ == "__main__":
    app()
