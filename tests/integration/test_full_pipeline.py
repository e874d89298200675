"""Integration tests — a real shell build feeding a real bootstrap.

Stages run through SubprocessExecutor in temp layers; the bootstrap uses
PosixHost against temp directories with only ``exec`` intercepted.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from imageforge.bootstrap import PosixHost, bootstrap
from imageforge.core.executors import SubprocessExecutor
from imageforge.core.orchestrator import BuildFailure, BuildOrchestrator
from imageforge.core.package_cache import PackageCache
from imageforge.models.stages import Instruction, StageState


class _Replaced(Exception):
    pass


class RecordingPosixHost(PosixHost):
    """Real filesystem and identity calls; exec is recorded instead."""

    def __init__(self) -> None:
        self.exec_args = None

    def exec(self, argv, env, cwd):
        self.exec_args = (argv, env, cwd)
        raise _Replaced()


@pytest.fixture
def shell_pipeline(make_pipeline, web_dist):
    return make_pipeline(
        web_instructions=(
            Instruction.env("NODE_ENV", "production"),
            Instruction.workdir("/build"),
            Instruction.run("mkdir -p dist && echo \"<html>$NODE_ENV</html>\" > dist/index.html"),
            Instruction.run(
                "echo stored > ../pnpm/store/marker", cache_mounts=("/pnpm/store",)
            ),
        ),
        app_instructions=(
            Instruction.lock("torch"),
            Instruction.workdir("/app"),
            Instruction.install("-e ."),
            Instruction.copy_artifact(web_dist),
            Instruction.run("test -f static/index.html && cp static/index.html copied.html"),
            Instruction.env("EXTRA_PATH", "/opt/bin"),
        ),
    )


class TestShellBuild:
    def test_build_with_subprocess_executor(
        self, shell_pipeline, tmp_dir: Path, cache: PackageCache, pm_factory
    ):
        orch = BuildOrchestrator(
            shell_pipeline,
            executor=SubprocessExecutor(),
            cache=cache,
            work_root=tmp_dir / "work",
            package_manager_factory=pm_factory,
        )
        manifest = orch.build(tag="it")

        rootfs = Path(manifest.rootfs)
        assert (rootfs / "app" / "copied.html").read_text().strip() == "<html>production</html>"
        assert (rootfs / "etc" / "constraints.txt").read_text() == "torch==2.9.1\n"
        assert manifest.exposed_port == 9090
        assert set(orch.get_states().values()) == {StageState.PASSED}

    def test_cache_mount_persists_outside_layer(
        self, shell_pipeline, tmp_dir: Path, cache: PackageCache, pm_factory
    ):
        orch = BuildOrchestrator(
            shell_pipeline,
            executor=SubprocessExecutor(),
            cache=cache,
            work_root=tmp_dir / "work",
            package_manager_factory=pm_factory,
        )
        orch.build()
        assert (cache.base_path / "mounts" / "pnpm_store" / "marker").read_text().strip() == "stored"

    def test_rebuild_hits_cache(self, shell_pipeline, tmp_dir: Path, cache: PackageCache, pm_factory):
        for work in ("work1", "work2"):
            orch = BuildOrchestrator(
                shell_pipeline,
                executor=SubprocessExecutor(),
                cache=cache,
                work_root=tmp_dir / work,
                package_manager_factory=pm_factory,
            )
            manifest = orch.build()
        assert orch.get_result("web").cache_hit
        assert orch.get_result("app").cache_hit
        assert (Path(manifest.rootfs) / "app" / "copied.html").exists()
        assert (Path(manifest.rootfs) / "etc" / "constraints.txt").read_text() == "torch==2.9.1\n"

    def test_failing_command_discards_build(
        self, make_pipeline, tmp_dir: Path, cache: PackageCache, pm_factory
    ):
        pipeline = make_pipeline(
            web_instructions=(Instruction.run("echo compiling; exit 7"),),
        )
        orch = BuildOrchestrator(
            pipeline,
            executor=SubprocessExecutor(),
            cache=cache,
            work_root=tmp_dir / "work",
            package_manager_factory=pm_factory,
        )
        with pytest.raises(BuildFailure) as excinfo:
            orch.build()
        assert "compiling" in excinfo.value.log
        assert not orch.build_root.exists()
        assert orch.get_state("app") == StageState.BLOCKED


class TestBootstrapOnHost:
    def test_prepares_directories_and_hands_off(self, tmp_dir: Path):
        """Runtime PORT and outputs dir reach the service; the dir is created."""
        root = tmp_dir / "invokeai"
        outputs = tmp_dir / "data" / "outputs"
        env = {
            "CONTAINER_UID": str(os.getuid()),
            "CONTAINER_GID": str(os.getgid()),
            "INVOKEAI_ROOT": str(root),
            "INVOKEAI_OUTPUTS_DIR": str(outputs),
            "INVOKEAI_MODELS_DIR": str(root / "models"),
            "INVOKEAI_PROFILES_DIR": str(root / "profiles"),
            "INVOKEAI_PORT": "9090",
        }
        host = RecordingPosixHost()
        with pytest.raises(_Replaced):
            bootstrap("invokeai-web", env, host=host)

        assert outputs.is_dir()
        assert outputs.stat().st_uid == os.getuid()
        argv, service_env, cwd = host.exec_args
        assert argv == ("invokeai-web",)
        assert service_env["INVOKEAI_PORT"] == "9090"
        assert cwd == str(root)

    def test_second_start_is_idempotent(self, tmp_dir: Path):
        env = {
            "CONTAINER_UID": str(os.getuid()),
            "CONTAINER_GID": str(os.getgid()),
            "INVOKEAI_ROOT": str(tmp_dir / "root"),
            "INVOKEAI_OUTPUTS_DIR": str(tmp_dir / "root" / "outputs"),
            "INVOKEAI_MODELS_DIR": str(tmp_dir / "root" / "models"),
            "INVOKEAI_PROFILES_DIR": str(tmp_dir / "root" / "profiles"),
        }
        for _ in range(2):
            with pytest.raises(_Replaced):
                bootstrap("invokeai-web", env, host=RecordingPosixHost())
        assert (tmp_dir / "root" / "outputs").is_dir()
