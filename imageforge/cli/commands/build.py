"""``imageforge build`` — run the image pipeline locally.

Executes every stage with the subprocess executor, restoring unchanged
stages from the package cache, and prints the resulting manifest.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from imageforge.config import settings
from imageforge.core.executors import SubprocessExecutor
from imageforge.core.orchestrator import ArtifactMissing, BuildFailure, BuildOrchestrator
from imageforge.core.package_cache import PackageCache
from imageforge.models.stages import StageState
from imageforge.pipelines import get_pipeline

console = Console()
err_console = Console(stderr=True)

_STATE_STYLE = {
    StageState.PASSED: "[green]passed[/green]",
    StageState.FAILED: "[red]failed[/red]",
    StageState.BLOCKED: "[yellow]blocked[/yellow]",
    StageState.RUNNING: "[cyan]running[/cyan]",
    StageState.NOT_STARTED: "[dim]not started[/dim]",
}


def _stage_table(orchestrator: BuildOrchestrator) -> Table:
    table = Table(title=f"Build {orchestrator.build_id}")
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Base image")
    table.add_column("State", justify="center")
    table.add_column("Cache", justify="center")
    for name, state in orchestrator.get_states().items():
        result = orchestrator.get_result(name)
        cached = "hit" if result is not None and result.cache_hit else "-"
        table.add_row(
            name,
            orchestrator.graph.get_stage(name).base_image,
            _STATE_STYLE[state],
            cached,
        )
    return table


def build_cmd(
    pipeline: str = typer.Option(
        settings.pipeline, "--pipeline", "-p", help="Pipeline definition to build."
    ),
    tag: str = typer.Option(settings.image_tag, "--tag", "-t", help="Image tag."),
    work_root: Path = typer.Option(
        settings.work_root, "--work-root", "-w", help="Directory for stage layers."
    ),
    cache_path: Path = typer.Option(
        settings.cache_path, "--cache", "-c", help="Package cache directory."
    ),
    max_workers: int = typer.Option(
        settings.max_workers, "--max-workers", "-j", min=1,
        help="Stages allowed to run concurrently.",
    ),
    no_cache: bool = typer.Option(
        not settings.use_cache, "--no-cache", help="Execute every stage."
    ),
) -> None:
    """Build the image pipeline and tag it on success."""
    definition = get_pipeline(pipeline)
    orchestrator = BuildOrchestrator(
        definition,
        executor=SubprocessExecutor(timeout=settings.command_timeout),
        cache=PackageCache(cache_path),
        work_root=work_root,
        max_workers=max_workers,
        use_cache=not no_cache,
    )

    try:
        manifest = orchestrator.build(tag=tag)
    except BuildFailure as exc:
        console.print(_stage_table(orchestrator))
        err_console.print(f"[bold red]Build failed:[/bold red] {exc}")
        if exc.log:
            err_console.print(Panel(exc.log, title=f"{exc.stage} log", border_style="red"))
        raise typer.Exit(code=1)
    except ArtifactMissing as exc:
        console.print(_stage_table(orchestrator))
        err_console.print(f"[bold red]Missing artifact:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(_stage_table(orchestrator))
    lines = [
        f"[bold green]Tagged {manifest.tag}[/bold green]",
        "",
        f"[bold]Base image:[/bold]  {manifest.base_image}",
        f"[bold]Root fs:[/bold]     {manifest.rootfs}",
        f"[bold]Port:[/bold]        {manifest.exposed_port}",
        f"[bold]Entrypoint:[/bold]  {' '.join(manifest.entrypoint)} {' '.join(manifest.command)}",
    ]
    if manifest.constraints is not None and manifest.constraints.packages:
        locked = ", ".join(f"{p.name}=={p.version}" for p in manifest.constraints.packages)
        lines.append(f"[bold]Locked:[/bold]      {locked}")
    console.print(Panel("\n".join(lines), title="[bold]imageforge[/bold]", border_style="green"))
