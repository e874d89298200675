"""Build orchestrator — runs a pipeline's stages and assembles the image.

The Orchestrator wires together the StageGraph, PackageCache,
ConfigResolver, DependencyLock and a StageExecutor. Stages run in
topological waves; members of one wave share no artifact edge and run
concurrently. A failing stage aborts the build: later waves never start,
every layer of the build is removed and no manifest is produced.
"""

from __future__ import annotations

import json
import logging
import shutil
import tarfile
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

from imageforge.core.config_resolver import ConfigResolver, expand_references
from imageforge.core.executors import (
    InstructionFailed,
    PipPackageManager,
    StageContext,
    StageExecutor,
    SubprocessExecutor,
)
from imageforge.core.hasher import canonical_json_bytes, compute_stage_cache_key
from imageforge.core.package_cache import CacheIntegrityError, PackageCache
from imageforge.core.stage_graph import StageGraph
from imageforge.core.version_pinner import (
    DependencyLock,
    LockError,
    PackageManager,
    PinViolation,
    capture_constraints,
)
from imageforge.models.artifacts import ArtifactReference, ImageManifest
from imageforge.models.pipeline import PipelineDefinition
from imageforge.models.stages import (
    VALID_TRANSITIONS,
    BuildStage,
    Instruction,
    InstructionKind,
    StageResult,
    StageState,
)
from imageforge.models.versioning import LockConstraints

logger = logging.getLogger(__name__)

PackageManagerFactory = Callable[[StageExecutor, StageContext], PackageManager]


class BuildFailure(RuntimeError):
    """Raised when a stage instruction fails; the whole build is aborted."""

    def __init__(self, stage: str, log: str = "", reason: str = "") -> None:
        self.stage = stage
        self.log = log
        super().__init__(f"Stage {stage!r} failed" + (f": {reason}" if reason else ""))


class ArtifactMissing(RuntimeError):
    """Raised when an artifact reference cannot be resolved."""


class InvalidStageTransition(RuntimeError):
    """Raised when a stage state change is not allowed."""


class BuildOrchestrator:
    """Executes a ``PipelineDefinition`` once.

    Parameters
    ----------
    pipeline:
        The stages and image contract to build.
    executor:
        Runs ``run`` instructions. Defaults to ``SubprocessExecutor``.
    cache:
        Shared package/layer cache. Without one, every stage executes.
    work_root:
        Directory under which this build's layers are created.
    max_workers:
        Upper bound on stages running at the same time.
    use_cache:
        Restore unchanged stages from the cache instead of executing them.
    package_manager_factory:
        Builds the installer used by ``lock`` and ``install`` instructions.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        executor: StageExecutor | None = None,
        cache: PackageCache | None = None,
        work_root: Path = Path(".imageforge/work"),
        max_workers: int = 2,
        use_cache: bool = True,
        package_manager_factory: PackageManagerFactory | None = None,
        build_id: str | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.graph = StageGraph(pipeline.stages)
        self.resolver = ConfigResolver(pipeline.surface)
        self.executor: StageExecutor = executor or SubprocessExecutor()
        self.cache = cache
        self.use_cache = use_cache and cache is not None
        self.max_workers = max(1, max_workers)
        self._pm_factory = package_manager_factory or PipPackageManager

        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.build_id = build_id or f"if-{ts}-{uuid.uuid4().hex[:6]}"
        self.build_root = Path(work_root) / self.build_id

        self._lock = threading.Lock()
        self._states: dict[str, StageState] = {
            name: StageState.NOT_STARTED for name in self.graph.stage_names
        }
        self._results: dict[str, StageResult] = {}
        self._contexts: dict[str, StageContext] = {}
        self._constraints: dict[str, LockConstraints] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _transition(self, name: str, target: StageState) -> None:
        with self._lock:
            current = self._states[name]
            if target not in VALID_TRANSITIONS[current]:
                raise InvalidStageTransition(
                    f"Cannot move {name} from {current.value} to {target.value}"
                )
            self._states[name] = target
            if target == StageState.FAILED:
                blocked = self.graph.cascade_block(name, self._states)
                if blocked:
                    logger.info("Blocked by %s: %s", name, ", ".join(blocked))

    def get_states(self) -> dict[str, StageState]:
        with self._lock:
            return dict(self._states)

    def get_state(self, name: str) -> StageState:
        with self._lock:
            return self._states[name]

    def get_result(self, name: str) -> StageResult | None:
        return self._results.get(name)

    def constraints_for(self, name: str) -> LockConstraints | None:
        return self._constraints.get(name)

    def layer_dir(self, name: str) -> Path:
        return self.build_root / "layers" / name

    # ------------------------------------------------------------------
    # Artifact contract
    # ------------------------------------------------------------------

    def validate_contract(self) -> None:
        """Check every artifact reference against its producer's declared outputs.

        Runs before any stage executes, so a bad reference fails the
        build without spending time on earlier stages.
        """
        for name in self.graph.stage_names:
            for ref in self.graph.get_edges(name):
                producer = self.graph.get_stage(ref.producing_stage)
                if not producer.declares_output(ref.source_path):
                    raise ArtifactMissing(
                        f"{ref.describe()}: {ref.source_path} is not a declared "
                        f"output of stage {producer.name!r}"
                    )

    def resolve_artifact(self, ref: ArtifactReference) -> Path:
        """Return the on-disk source of *ref*, or raise ``ArtifactMissing``.

        The producer must be upstream of the consumer, must have PASSED,
        must declare the source path and must actually have created it.
        """
        if ref.producing_stage not in self._states or ref.consuming_stage not in self._states:
            raise ArtifactMissing(f"{ref.describe()}: unknown stage")
        if not self.graph.is_reachable(ref.producing_stage, ref.consuming_stage):
            raise ArtifactMissing(
                f"{ref.describe()}: no declared edge from {ref.producing_stage!r} "
                f"to {ref.consuming_stage!r}"
            )
        state = self.get_state(ref.producing_stage)
        if state != StageState.PASSED:
            raise ArtifactMissing(
                f"{ref.describe()}: stage {ref.producing_stage!r} has not completed "
                f"(state={state.value})"
            )
        producer = self.graph.get_stage(ref.producing_stage)
        if not producer.declares_output(ref.source_path):
            raise ArtifactMissing(
                f"{ref.describe()}: {ref.source_path} was never declared as an output"
            )
        source = self._contexts[ref.producing_stage].layer_path(ref.source_path)
        if not source.exists():
            raise ArtifactMissing(
                f"{ref.describe()}: stage {ref.producing_stage!r} did not create "
                f"{ref.source_path}"
            )
        return source

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _initial_env(self, stage: BuildStage) -> dict[str, str]:
        if stage.name == self.pipeline.final_stage:
            return self.resolver.build_environment()
        return {}

    def _input_digests(self, cache: PackageCache, name: str) -> dict[str, str]:
        return {
            ref.describe(): cache.put_tree(self.resolve_artifact(ref)).digest
            for ref in self.graph.get_edges(name)
        }

    def run_stage(self, name: str) -> StageResult:
        """Execute one stage and return its result.

        Raises
        ------
        ArtifactMissing
            If a producer this stage copies from has not PASSED. The stage
            stays NOT_STARTED.
        BuildFailure
            If any instruction fails. The stage is FAILED and its
            dependents BLOCKED.
        """
        stage = self.graph.get_stage(name)
        for ref in self.graph.get_edges(name):
            self.resolve_artifact(ref)

        self._transition(name, StageState.RUNNING)
        ctx = StageContext(
            stage=name,
            layer=self.layer_dir(name),
            env=self._initial_env(stage),
            cache_dir=self.cache.base_path if self.cache is not None else None,
        )
        self._contexts[name] = ctx
        logger.info("[%s] FROM %s", name, stage.base_image)

        cache = self.cache if self.use_cache else None
        try:
            self._reset_layer(ctx)
            cache_key = ""
            if cache is not None:
                cache_key = compute_stage_cache_key(
                    stage, self._input_digests(cache, name), ctx.env
                )
                if self._restore(cache, stage, ctx, cache_key):
                    return self._finish(name, ctx, cache_key, cache_hit=True)
            for instruction in stage.instructions:
                self._apply(stage, ctx, instruction)
            if cache is not None:
                self._publish(cache, stage, ctx, cache_key)
        except ArtifactMissing:
            self._transition(name, StageState.FAILED)
            raise
        except (
            InstructionFailed, PinViolation, LockError, CacheIntegrityError,
            tarfile.TarError, OSError, ValueError,
        ) as exc:
            self._transition(name, StageState.FAILED)
            ctx.write_log(f"error: {exc}")
            logger.error("[%s] failed: %s", name, exc)
            raise BuildFailure(name, ctx.log_text, str(exc)) from exc

        return self._finish(name, ctx, cache_key, cache_hit=False)

    @staticmethod
    def _reset_layer(ctx: StageContext) -> None:
        if ctx.layer.exists():
            shutil.rmtree(ctx.layer)
        ctx.layer.mkdir(parents=True)

    def _finish(
        self, name: str, ctx: StageContext, cache_key: str, *, cache_hit: bool
    ) -> StageResult:
        digests = {}
        if self.cache is not None:
            for output in sorted(self.graph.get_stage(name).outputs):
                path = ctx.layer_path(output)
                if path.exists():
                    digests[output] = self.cache.put_tree(path).digest
        self._transition(name, StageState.PASSED)
        result = StageResult(
            stage=name,
            state=StageState.PASSED,
            log=ctx.log_text,
            cache_hit=cache_hit,
            cache_key=cache_key,
            layer_path=ctx.layer,
            output_digests=digests,
        )
        self._results[name] = result
        logger.info("[%s] passed%s", name, " (cached)" if cache_hit else "")
        return result

    def _apply(self, stage: BuildStage, ctx: StageContext, ins: Instruction) -> None:
        if ins.kind == InstructionKind.RUN:
            self._run(ctx, ins)
        elif ins.kind == InstructionKind.ENV:
            ctx.env[ins.name] = expand_references(ins.value, ctx.env)
        elif ins.kind == InstructionKind.WORKDIR:
            ctx.workdir = ins.path if ins.path.startswith("/") else (
                f"{ctx.workdir.rstrip('/')}/{ins.path}"
            )
            ctx.cwd.mkdir(parents=True, exist_ok=True)
        elif ins.kind == InstructionKind.COPY_ARTIFACT:
            if ins.artifact is None:
                raise ValueError("copy_artifact instruction has no artifact reference")
            self._copy(ctx, ins.artifact)
        elif ins.kind == InstructionKind.WRITE_FILE:
            target = ctx.layer_path(ins.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(ins.value, encoding="utf-8")
            ctx.write_log(f"# write {ins.path}")
        elif ins.kind == InstructionKind.LOCK:
            self._lock_packages(stage, ctx, ins.packages)
        elif ins.kind == InstructionKind.INSTALL:
            lock = DependencyLock(self._constraints.get(stage.name, LockConstraints()))
            ctx.write_log(f"# install {' '.join(ins.requirements)}")
            lock.install(self._pm_factory(self.executor, ctx), ins.requirements)

    def _run(self, ctx: StageContext, ins: Instruction) -> None:
        if not ins.cache_mounts or self.cache is None:
            self.executor.run(ctx, ins.command)
            return
        # Cache mounts are visible only while the command runs.
        mounted: list[Path] = []
        try:
            for target in ins.cache_mounts:
                link = ctx.layer_path(target)
                shared = self.cache.base_path / "mounts" / target.strip("/").replace("/", "_")
                shared.mkdir(parents=True, exist_ok=True)
                link.parent.mkdir(parents=True, exist_ok=True)
                link.symlink_to(shared, target_is_directory=True)
                mounted.append(link)
            self.executor.run(ctx, ins.command)
        finally:
            for link in mounted:
                link.unlink()

    def _copy(self, ctx: StageContext, ref: ArtifactReference) -> None:
        source = self.resolve_artifact(ref)
        dest = ctx.layer_path(ref.dest_path)
        ctx.write_log(f"# copy {ref.describe()}")
        if source.is_dir():
            shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)

    def _lock_packages(
        self, stage: BuildStage, ctx: StageContext, packages: tuple[str, ...]
    ) -> None:
        manager = self._pm_factory(self.executor, ctx)
        captured = capture_constraints(manager.installed(), packages)
        previous = self._constraints.get(stage.name)
        if previous is not None:
            # Earlier locks stay authoritative; a relock only adds packages.
            extra = tuple(p for p in captured.packages if p.name not in previous)
            captured = LockConstraints(packages=previous.packages + extra)
        self._constraints[stage.name] = captured
        ctx.write_log(f"# lock {' '.join(packages)}")
        self._write_constraints(ctx, captured)

    @staticmethod
    def _write_constraints(ctx: StageContext, constraints: LockConstraints) -> None:
        constraint_file = ctx.env.get("PIP_CONSTRAINT")
        if constraint_file:
            path = ctx.layer_path(constraint_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(constraints.render(), encoding="utf-8")

    # ------------------------------------------------------------------
    # Stage cache
    # ------------------------------------------------------------------

    def _publish(
        self, cache: PackageCache, stage: BuildStage, ctx: StageContext, cache_key: str
    ) -> None:
        outputs = {}
        for output in sorted(stage.outputs):
            path = ctx.layer_path(output)
            if path.exists():
                outputs[output] = cache.put_tree(path).digest
        constraints = self._constraints.get(stage.name)
        index = {
            "stage": stage.name,
            "outputs": outputs,
            "constraints": constraints.model_dump(mode="json") if constraints else None,
        }
        entry = cache.put(canonical_json_bytes(index))
        cache.bind(cache_key, entry.digest)

    def _restore(
        self, cache: PackageCache, stage: BuildStage, ctx: StageContext, cache_key: str
    ) -> bool:
        digest = cache.lookup(cache_key)
        if digest is None or not cache.verify(digest):
            return False
        index = json.loads(cache.get(digest))
        try:
            for output, tree_digest in index["outputs"].items():
                cache.extract_tree(tree_digest, ctx.layer_path(output).parent)
        except tarfile.TarError as exc:
            # Outputs that cannot be safely extracted (absolute or escaping
            # links) are rebuilt instead of restored.
            logger.warning(
                "[%s] cache entry %s not restorable: %s", stage.name, cache_key[:12], exc
            )
            ctx.write_log(f"# cache entry not restorable: {exc}")
            self._reset_layer(ctx)
            return False
        # ENV and WORKDIR have no layer side effects; replay them for the manifest.
        for ins in stage.instructions:
            if ins.kind in (InstructionKind.ENV, InstructionKind.WORKDIR):
                self._apply(stage, ctx, ins)
        if index.get("constraints"):
            constraints = LockConstraints.model_validate(index["constraints"])
            self._constraints[stage.name] = constraints
            self._write_constraints(ctx, constraints)
        ctx.write_log(f"# restored from cache {cache_key[:12]}")
        return True

    # ------------------------------------------------------------------
    # Whole build
    # ------------------------------------------------------------------

    def _run_wave(self, wave: list[str]) -> None:
        if len(wave) == 1 or self.max_workers == 1:
            for name in wave:
                self.run_stage(name)
            return
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(wave))) as pool:
            futures = [pool.submit(self.run_stage, name) for name in wave]
        # Every member has finished; surface the first failure in wave order.
        for future in futures:
            future.result()

    def discard_layers(self) -> None:
        """Remove every layer of this build."""
        if self.build_root.exists():
            shutil.rmtree(self.build_root, ignore_errors=True)
        if self.build_root.exists():
            logger.error("Could not remove build directory %s", self.build_root)

    def build(self, tag: str | None = None) -> ImageManifest:
        """Run every stage and return the tagged image manifest.

        Raises ``BuildFailure`` or ``ArtifactMissing``; in both cases no
        layer of this build is left behind and nothing is tagged.
        """
        logger.info(
            "Building %s (%d stages, build %s)",
            self.pipeline.name, len(self.graph.stage_names), self.build_id,
        )
        try:
            self.validate_contract()
            for wave in self.graph.waves():
                self._run_wave(wave)
        except Exception:
            self.discard_layers()
            raise

        manifest = self._assemble(tag or self.pipeline.default_tag)
        for name in self.graph.stage_names:
            if name != self.pipeline.final_stage:
                shutil.rmtree(self.layer_dir(name), ignore_errors=True)
        logger.info("Tagged %s", manifest.tag)
        return manifest

    def _assemble(self, tag: str) -> ImageManifest:
        final = self.pipeline.final
        env = self.resolver.image_environment()
        final_ctx = self._contexts[final.name]
        for name, value in final_ctx.env.items():
            if name not in self.pipeline.surface:
                env[name] = value
        port = None
        if self.pipeline.port_variable:
            port = int(env[self.pipeline.port_variable])
        result = self._results[final.name]
        return ImageManifest(
            tag=f"{self.pipeline.name}:{tag}",
            base_image=final.base_image,
            final_stage=final.name,
            environment=env,
            exposed_port=port,
            entrypoint=self.pipeline.entrypoint,
            command=self.pipeline.command,
            constraints=self._constraints.get(final.name),
            rootfs=str(self.layer_dir(final.name)),
            layer_digests=result.output_digests,
        )
