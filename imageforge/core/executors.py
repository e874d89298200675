"""Pluggable stage executor backends.

Defines the ``StageExecutor`` Protocol that runs the shell commands of a
stage inside its layer, and the default ``SubprocessExecutor``.

Each stage owns an isolated layer directory. Absolute layer paths such as
``/build/dist`` map onto ``{layer}/build/dist``; commands run with the
stage's working directory inside that layer as their cwd.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from imageforge.core.config_resolver import expand_references
from imageforge.core.version_pinner import parse_freeze

logger = logging.getLogger(__name__)


class InstructionFailed(RuntimeError):
    """Raised when a stage command exits non-zero."""

    def __init__(self, command: str, returncode: int, output: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"Command exited with status {returncode}: {command}")


@dataclass
class StageContext:
    """Mutable per-stage execution state: layer, working dir, env, log."""

    stage: str
    layer: Path
    workdir: str = "/"
    env: dict[str, str] = field(default_factory=dict)
    cache_dir: Path | None = None
    log: list[str] = field(default_factory=list)

    def layer_path(self, path: str) -> Path:
        """Map an absolute layer path (or one relative to WORKDIR) onto disk."""
        if not path.startswith("/"):
            path = f"{self.workdir.rstrip('/')}/{path}"
        parts = [p for p in path.split("/") if p not in ("", ".")]
        if ".." in parts:
            raise ValueError(f"Layer path escapes the layer: {path!r}")
        return self.layer.joinpath(*parts)

    @property
    def cwd(self) -> Path:
        return self.layer_path(self.workdir)

    def write_log(self, line: str) -> None:
        self.log.append(line.rstrip("\n"))

    @property
    def log_text(self) -> str:
        return "\n".join(self.log)


@dataclass(frozen=True)
class CommandResult:
    command: str
    returncode: int
    output: str


@runtime_checkable
class StageExecutor(Protocol):
    """Protocol for executing stage commands.

    Any object with ``run(context, command)`` satisfies it; a non-zero
    exit must raise ``InstructionFailed``.
    """

    def run(self, context: StageContext, command: str) -> CommandResult:
        ...


class SubprocessExecutor:
    """Runs stage commands through the local shell, one process per command.

    Parameters
    ----------
    inherit_env:
        Names copied from the calling process environment into every
        command (``PATH`` by default, so tools resolve).
    timeout:
        Per-command timeout in seconds; None waits indefinitely.
    """

    def __init__(
        self,
        inherit_env: tuple[str, ...] = ("PATH", "HOME", "LANG"),
        timeout: float | None = None,
    ) -> None:
        self._inherit = inherit_env
        self._timeout = timeout

    def _environment(self, context: StageContext) -> dict[str, str]:
        env = {k: os.environ[k] for k in self._inherit if k in os.environ}
        for name, value in context.env.items():
            env[name] = expand_references(value, env)
        env["IMAGEFORGE_LAYER"] = str(context.layer)
        if context.cache_dir is not None:
            env["IMAGEFORGE_CACHE_DIR"] = str(context.cache_dir)
        return env

    def run(self, context: StageContext, command: str) -> CommandResult:
        cwd = context.cwd
        cwd.mkdir(parents=True, exist_ok=True)
        logger.debug("[%s] RUN %s (cwd=%s)", context.stage, command, cwd)
        context.write_log(f"$ {command}")
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=self._environment(context),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output if isinstance(exc.output, str) else ""
            context.write_log(output)
            raise InstructionFailed(command, -1, output) from exc
        if proc.stdout:
            context.write_log(proc.stdout)
        if proc.returncode != 0:
            raise InstructionFailed(command, proc.returncode, proc.stdout or "")
        return CommandResult(command=command, returncode=0, output=proc.stdout or "")


class PipPackageManager:
    """``PackageManager`` backed by pip, run through a stage executor.

    Installs honour ``PIP_CONSTRAINT`` from the stage environment, so the
    installer itself also refuses to move locked packages.
    """

    def __init__(
        self, executor: StageExecutor, context: StageContext, python: str = "python3"
    ) -> None:
        self._executor = executor
        self._context = context
        self._python = python

    def installed(self) -> dict[str, str]:
        result = self._executor.run(self._context, f"{self._python} -m pip freeze")
        return parse_freeze(result.output)

    def install(self, requirements: list[str]) -> None:
        args = []
        for req in requirements:
            # "-e ." and "-r file" arrive as one string but are two argv items
            args.extend(shlex.split(req) if req.startswith("-") else [req])
        command = f"{self._python} -m pip install {shlex.join(args)}"
        constraint = self._context.env.get("PIP_CONSTRAINT")
        local = self._context.layer_path(constraint) if constraint else None
        if local is not None and local.exists():
            # The constraints file lives inside the layer, not on the host.
            command = f"PIP_CONSTRAINT={shlex.quote(str(local))} {command}"
        self._executor.run(self._context, command)
