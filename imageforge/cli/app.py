"""Main Typer application — imports and registers all CLI commands.

Entry point: ``imageforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from imageforge.cli.commands.build import build_cmd
from imageforge.cli.commands.config_cmd import config_cmd
from imageforge.cli.commands.dockerfile_cmd import dockerfile_cmd
from imageforge.cli.commands.lock import lock_cmd
from imageforge.config import settings
from imageforge.log import configure_logging

app = typer.Typer(
    name="imageforge",
    help="imageforge: cached multi-stage image builds with locked GPU dependencies.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _setup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    configure_logging("DEBUG" if verbose else settings.log_level)


# Register subcommands
app.command(name="build", help="Build the image pipeline.")(build_cmd)
app.command(name="config", help="Show the configuration surface.")(config_cmd)
app.command(name="dockerfile", help="Render the pipeline as a Dockerfile.")(dockerfile_cmd)
app.command(name="lock", help="Capture version constraints from pip freeze output.")(lock_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
