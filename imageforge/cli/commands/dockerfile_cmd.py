"""``imageforge dockerfile`` — render a pipeline as a Dockerfile."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from imageforge.config import settings
from imageforge.core.dockerfile import render_dockerfile
from imageforge.pipelines import get_pipeline

console = Console()


def dockerfile_cmd(
    pipeline: str = typer.Option(
        settings.pipeline, "--pipeline", "-p", help="Pipeline definition to render."
    ),
    output: Path = typer.Option(
        None, "--output", "-o", help="Write to this file instead of stdout."
    ),
) -> None:
    """Render the multi-stage Dockerfile for a pipeline."""
    text = render_dockerfile(get_pipeline(pipeline))
    if output is None:
        typer.echo(text, nl=False)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]Wrote[/green] {output}")
