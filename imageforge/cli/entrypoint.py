"""``imageforge-entrypoint COMMAND`` — container start-up.

Resolves the runtime configuration, prepares the writable directories
for the service user, drops privileges and replaces itself with
*COMMAND*. Exit status 1 means the container could not be prepared;
127 means the service command could not be executed.
"""

from __future__ import annotations

import os

import typer
from pydantic import ValidationError
from rich.console import Console

from imageforge.bootstrap import BootstrapPermissionFailure, ServiceLaunchError, bootstrap
from imageforge.config import settings
from imageforge.core.config_resolver import ConfigValueError
from imageforge.log import configure_logging

# One diagnostic per line; container log collectors split on newlines.
err_console = Console(stderr=True, highlight=False, soft_wrap=True)

app = typer.Typer(name="imageforge-entrypoint", add_completion=False)


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc)


def _fail(exc: Exception, code: int) -> typer.Exit:
    err_console.print(f"imageforge-entrypoint: {_describe(exc)}", markup=False)
    return typer.Exit(code=code)


@app.command(add_help_option=False)
def entrypoint_cmd(
    command: str = typer.Argument(..., help="Service command to execute."),
) -> None:
    configure_logging(settings.log_level, rich=False)
    try:
        bootstrap(command, dict(os.environ))
    except (BootstrapPermissionFailure, ConfigValueError, ValidationError) as exc:
        raise _fail(exc, 1)
    except ServiceLaunchError as exc:
        raise _fail(exc, 127)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
