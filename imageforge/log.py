"""Logging setup for the command-line entry points."""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", *, rich: bool = True) -> None:
    """Install a root handler once.

    The developer CLI logs through Rich to stderr; the container
    entrypoint uses a plain single-line format so container logs stay
    greppable.
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    if rich:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=True
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.addHandler(handler)
    root.setLevel(level.upper())
