"""``imageforge lock FREEZE_FILE`` — capture version constraints.

Reads ``pip freeze`` output (``-`` for stdin) and prints the
constraints file the lock step would write for the named packages.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from imageforge.core.version_pinner import LockError, capture_constraints, parse_freeze
from imageforge.pipelines import LOCKED_PACKAGES

err_console = Console(stderr=True)


def lock_cmd(
    freeze_file: str = typer.Argument(
        ..., help="File holding `pip freeze` output, or - for stdin."
    ),
    packages: list[str] = typer.Option(
        None, "--package", "-P", help="Package to lock (repeatable)."
    ),
    strict: bool = typer.Option(
        False, "--strict", help="Fail when a package is not installed."
    ),
) -> None:
    """Print pinned constraints for the locked packages."""
    if freeze_file == "-":
        text = sys.stdin.read()
    else:
        path = Path(freeze_file)
        if not path.exists():
            err_console.print(f"[bold red]File not found:[/bold red] {freeze_file}")
            raise typer.Exit(code=1)
        text = path.read_text(encoding="utf-8")

    try:
        constraints = capture_constraints(
            parse_freeze(text), packages or LOCKED_PACKAGES, strict=strict
        )
    except LockError as exc:
        err_console.print(f"[bold red]Lock failed:[/bold red] {exc}")
        raise typer.Exit(code=1)

    typer.echo(constraints.render(), nl=False)
