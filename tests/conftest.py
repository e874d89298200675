"""Shared test fixtures for imageforge."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from imageforge.core.executors import CommandResult, InstructionFailed, StageContext
from imageforge.core.package_cache import PackageCache
from imageforge.models.artifacts import ArtifactReference
from imageforge.models.config import (
    ConfigCategory,
    ConfigScope,
    ConfigSurface,
    ConfigVariable,
)
from imageforge.models.pipeline import PipelineDefinition
from imageforge.models.stages import BuildStage, Instruction


# ---------------------------------------------------------------------------
# Protocol fakes
# ---------------------------------------------------------------------------


class ScriptedExecutor:
    """StageExecutor that runs Python callbacks instead of shell commands.

    ``scripts`` maps a command to a callable receiving the StageContext;
    commands listed in ``fail`` raise InstructionFailed.
    """

    def __init__(
        self,
        scripts: dict[str, Callable[[StageContext], str | None]] | None = None,
        fail: tuple[str, ...] = (),
    ) -> None:
        self.scripts = scripts or {}
        self.fail = set(fail)
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def run(self, context: StageContext, command: str) -> CommandResult:
        with self._lock:
            self.calls.append((context.stage, command))
        context.write_log(f"$ {command}")
        if command in self.fail:
            context.write_log("boom")
            raise InstructionFailed(command, 1, "boom")
        action = self.scripts.get(command)
        output = (action(context) if action is not None else None) or ""
        return CommandResult(command=command, returncode=0, output=output)

    def commands_for(self, stage: str) -> list[str]:
        return [cmd for name, cmd in self.calls if name == stage]


def write_file(path: str, text: str = "x") -> Callable[[StageContext], None]:
    """Script action: create *path* inside the running stage's layer."""

    def _action(ctx: StageContext) -> None:
        target = ctx.layer_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)

    return _action


class FakePackageManager:
    """PackageManager over an in-memory ``name -> version`` mapping."""

    def __init__(self, installed: dict[str, str] | None = None) -> None:
        self.packages = dict(installed or {})
        self.install_calls: list[list[str]] = []

    def installed(self) -> dict[str, str]:
        return dict(self.packages)

    def install(self, requirements: list[str]) -> None:
        self.install_calls.append(list(requirements))
        for req in requirements:
            if "==" in req:
                name, version = req.split("==", 1)
                self.packages[name.strip()] = version.strip()


class FakeHost:
    """HostOps that records calls instead of touching the real system."""

    class Exec(Exception):
        """Stands in for the process being replaced."""

    def __init__(
        self,
        owners: dict[str, tuple[int, int]] | None = None,
        fail_on: tuple[str, ...] = (),
    ) -> None:
        self.owners = dict(owners or {})
        self.fail_on = set(fail_on)
        self.calls: list[tuple] = []
        self.uid = 0
        self.gid = 0
        self.exec_args: tuple | None = None

    def makedirs(self, path: str) -> None:
        self.calls.append(("makedirs", path))
        if "makedirs" in self.fail_on:
            raise PermissionError(13, "Permission denied", path)
        self.owners.setdefault(path, (0, 0))

    def owner(self, path: str) -> tuple[int, int]:
        return self.owners[path]

    def chown(self, path: str, uid: int, gid: int) -> None:
        self.calls.append(("chown", path, uid, gid))
        if "chown" in self.fail_on:
            raise PermissionError(1, "Operation not permitted", path)
        self.owners[path] = (uid, gid)

    def switch_user(self, uid: int, gid: int) -> None:
        self.calls.append(("switch_user", uid, gid))
        if "switch_user" in self.fail_on:
            raise PermissionError(1, "Operation not permitted")
        self.uid, self.gid = uid, gid

    def exec(self, argv, env, cwd):
        self.calls.append(("exec", tuple(argv)))
        if "exec" in self.fail_on:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        self.exec_args = (tuple(argv), dict(env), cwd)
        raise FakeHost.Exec()

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for build artifacts."""
    return tmp_path


@pytest.fixture
def cache(tmp_dir: Path) -> PackageCache:
    """Provide a fresh PackageCache in a temp directory."""
    return PackageCache(tmp_dir / "cache")


@pytest.fixture
def package_manager() -> FakePackageManager:
    """A base image with the ROCm torch stack installed."""
    return FakePackageManager(
        {"torch": "2.9.1", "torchvision": "0.24.0", "numpy": "2.1.0"}
    )


@pytest.fixture
def pm_factory(package_manager: FakePackageManager):
    """PackageManagerFactory handing out the shared fake manager."""
    return lambda executor, context: package_manager


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def small_surface() -> ConfigSurface:
    """A compact configuration surface covering every scope."""
    return ConfigSurface(
        variables=(
            ConfigVariable(
                name="PIP_CONSTRAINT",
                value="/etc/constraints.txt",
                scope=ConfigScope.BUILD_LOCKED,
                category=ConfigCategory.PYTHON,
            ),
            ConfigVariable(
                name="APP_DIR", value="/app", scope=ConfigScope.BUILD_LOCKED,
                category=ConfigCategory.PATHS,
            ),
            ConfigVariable(name="DATA_DIR", value="${APP_DIR}/data", category=ConfigCategory.PATHS),
            ConfigVariable(name="PORT", value="9090", category=ConfigCategory.SERVICE),
            ConfigVariable(
                name="BUILD_JOBS", value="4", scope=ConfigScope.BUILD_TIME,
            ),
            ConfigVariable(
                name="TILED_DECODE", value="false", category=ConfigCategory.FEATURES,
            ),
        )
    )


WEB_DIST = ArtifactReference(
    producing_stage="web",
    source_path="/build/dist",
    consuming_stage="app",
    dest_path="/app/static",
)


@pytest.fixture
def make_pipeline(small_surface: ConfigSurface) -> Callable[..., PipelineDefinition]:
    """Factory fixture: a two-stage web -> app pipeline."""

    def _factory(
        web_instructions: tuple[Instruction, ...] | None = None,
        app_instructions: tuple[Instruction, ...] | None = None,
        web_outputs: frozenset[str] = frozenset({"/build/dist"}),
        extra_stages: tuple[BuildStage, ...] = (),
    ) -> PipelineDefinition:
        web = BuildStage(
            name="web",
            base_image="node:22-slim",
            instructions=web_instructions
            if web_instructions is not None
            else (Instruction.workdir("/build"), Instruction.run("build-web")),
            outputs=web_outputs,
        )
        app = BuildStage(
            name="app",
            base_image="rocm/pytorch:latest",
            instructions=app_instructions
            if app_instructions is not None
            else (
                Instruction.lock("torch", "torchvision"),
                Instruction.install("-e ."),
                Instruction.copy_artifact(WEB_DIST),
                Instruction.env("EXTRA_PATH", "/opt/bin"),
            ),
            outputs=frozenset({"/app"}),
        )
        return PipelineDefinition(
            name="demo",
            stages=(web, app) + extra_stages,
            final_stage="app",
            surface=small_surface,
            port_variable="PORT",
            entrypoint=("imageforge-entrypoint",),
            command=("serve",),
        )

    return _factory


@pytest.fixture
def web_executor() -> ScriptedExecutor:
    """Executor whose web build writes an index page into /build/dist."""
    return ScriptedExecutor({"build-web": write_file("/build/dist/index.html", "<html/>")})


@pytest.fixture
def make_executor() -> type[ScriptedExecutor]:
    """The ScriptedExecutor class, for tests that script their own commands."""
    return ScriptedExecutor


@pytest.fixture
def layer_file() -> Callable[[str, str], Callable[[StageContext], None]]:
    """The ``write_file`` script action factory."""
    return write_file


@pytest.fixture
def web_dist() -> ArtifactReference:
    """The web -> app artifact reference used by ``make_pipeline``."""
    return WEB_DIST
