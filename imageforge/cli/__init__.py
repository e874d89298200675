"""imageforge CLI — Typer-based command-line interface.

Provides the ``imageforge`` command for building, inspecting and
rendering image pipelines, and the ``imageforge-entrypoint`` container
start-up command.

All developer-facing output uses Rich for formatted terminal display.
"""
