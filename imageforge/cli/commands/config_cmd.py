"""``imageforge config`` — show the image's configuration surface.

Lists every declared variable with its scope and default, optionally
filtered by category, and resolves the surface against the current
environment when ``--resolve`` is given.
"""

from __future__ import annotations

import os

import typer
from rich.console import Console
from rich.table import Table

from imageforge.config import settings
from imageforge.core.config_resolver import ConfigResolver
from imageforge.models.config import ConfigCategory, ConfigScope
from imageforge.pipelines import get_pipeline

console = Console()

_SCOPE_STYLE = {
    ConfigScope.BUILD_TIME: "[magenta]build-time[/magenta]",
    ConfigScope.RUNTIME_OVERRIDABLE: "[green]overridable[/green]",
    ConfigScope.BUILD_LOCKED: "[red]locked[/red]",
}


def config_cmd(
    category: str = typer.Option(
        None, "--category", help="Only show variables in this category."
    ),
    pipeline: str = typer.Option(
        settings.pipeline, "--pipeline", "-p", help="Pipeline definition to inspect."
    ),
    resolve: bool = typer.Option(
        False, "--resolve", help="Resolve against the current environment."
    ),
) -> None:
    """Show declared configuration variables, scopes and defaults."""
    surface = get_pipeline(pipeline).surface
    resolver = ConfigResolver(surface)

    if category:
        try:
            variables = surface.by_category(ConfigCategory(category))
        except ValueError:
            choices = ", ".join(c.value for c in ConfigCategory)
            console.print(f"[bold red]Unknown category:[/bold red] {category} ({choices})")
            raise typer.Exit(code=1)
    else:
        variables = list(surface.variables)

    resolved = resolver.resolve(dict(os.environ)) if resolve else None

    table = Table(title=f"Configuration surface ({pipeline})")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Scope", justify="center")
    table.add_column("Resolved value" if resolved else "Default")
    if resolved:
        table.add_column("Source")

    defaults = resolver.build_environment()
    for var in variables:
        row = [var.name, var.category.value, _SCOPE_STYLE[var.scope]]
        if resolved:
            row.append(resolved.get(var.name, ""))
            row.append(resolved.source_of(var.name) or "-")
        else:
            row.append(defaults[var.name])
        table.add_row(*row)

    console.print(table)
    if resolved:
        for message in resolved.diagnostics:
            console.print(f"[yellow]warning:[/yellow] {message}")
