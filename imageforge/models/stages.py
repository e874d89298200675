"""Build stage models — stages, instructions and their state machine."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from imageforge.models.artifacts import ArtifactReference


class StageState(str, Enum):
    """Execution state of a build stage within one build."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    PASSED = "passed"


# Terminal states have no outgoing transitions; a build is never resumed.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {StageState.RUNNING, StageState.BLOCKED},
    StageState.RUNNING: {StageState.PASSED, StageState.FAILED},
    StageState.BLOCKED: set(),
    StageState.FAILED: set(),
    StageState.PASSED: set(),
}


class InstructionKind(str, Enum):
    """The instruction vocabulary of a build stage."""

    RUN = "run"
    ENV = "env"
    WORKDIR = "workdir"
    COPY_ARTIFACT = "copy_artifact"
    LOCK = "lock"
    INSTALL = "install"
    WRITE_FILE = "write_file"


class Instruction(BaseModel):
    """One step of a build stage.

    Only the fields relevant to ``kind`` are populated; the constructors
    below are the intended way to build instructions.
    """

    model_config = ConfigDict(frozen=True)

    kind: InstructionKind
    command: str = ""
    name: str = ""
    value: str = ""
    path: str = ""
    artifact: ArtifactReference | None = None
    packages: tuple[str, ...] = ()
    requirements: tuple[str, ...] = ()
    cache_mounts: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_payload(self) -> Instruction:
        if self.kind == InstructionKind.RUN and not self.command:
            raise ValueError("run instruction requires a command")
        if self.kind == InstructionKind.ENV and not self.name:
            raise ValueError("env instruction requires a name")
        if self.kind == InstructionKind.WORKDIR and not self.path:
            raise ValueError("workdir instruction requires a path")
        if self.kind == InstructionKind.COPY_ARTIFACT and self.artifact is None:
            raise ValueError("copy_artifact instruction requires an artifact reference")
        if self.kind == InstructionKind.LOCK and not self.packages:
            raise ValueError("lock instruction requires at least one package")
        if self.kind == InstructionKind.INSTALL and not self.requirements:
            raise ValueError("install instruction requires requirements")
        if self.kind == InstructionKind.WRITE_FILE and not self.path:
            raise ValueError("write_file instruction requires a path")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def run(cls, command: str, *, cache_mounts: tuple[str, ...] = ()) -> Instruction:
        return cls(kind=InstructionKind.RUN, command=command, cache_mounts=cache_mounts)

    @classmethod
    def env(cls, name: str, value: str) -> Instruction:
        return cls(kind=InstructionKind.ENV, name=name, value=value)

    @classmethod
    def workdir(cls, path: str) -> Instruction:
        return cls(kind=InstructionKind.WORKDIR, path=path)

    @classmethod
    def copy_artifact(cls, artifact: ArtifactReference) -> Instruction:
        return cls(kind=InstructionKind.COPY_ARTIFACT, artifact=artifact)

    @classmethod
    def lock(cls, *packages: str) -> Instruction:
        """Snapshot the installed versions of *packages* as constraints."""
        return cls(kind=InstructionKind.LOCK, packages=tuple(packages))

    @classmethod
    def install(cls, *requirements: str) -> Instruction:
        return cls(kind=InstructionKind.INSTALL, requirements=tuple(requirements))

    @classmethod
    def write_file(cls, path: str, content: str) -> Instruction:
        """Place a file with literal *content* at *path* in the layer."""
        return cls(kind=InstructionKind.WRITE_FILE, path=path, value=content)


class BuildStage(BaseModel):
    """A named build stage producing an isolated filesystem layer.

    ``outputs`` are the layer paths other stages may copy from. A path
    that is not declared here can never be the source of an artifact
    reference, even if the stage happens to create it.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    base_image: str
    instructions: tuple[Instruction, ...] = ()
    outputs: frozenset[str] = Field(default_factory=frozenset)

    @model_validator(mode="after")
    def _check_artifacts(self) -> BuildStage:
        for ref in self.artifact_edges():
            if ref.consuming_stage != self.name:
                raise ValueError(
                    f"Stage {self.name!r} copies an artifact addressed to "
                    f"{ref.consuming_stage!r}"
                )
        return self

    def artifact_edges(self) -> list[ArtifactReference]:
        """Return the artifact references this stage consumes, in order."""
        return [
            ins.artifact
            for ins in self.instructions
            if ins.kind == InstructionKind.COPY_ARTIFACT and ins.artifact is not None
        ]

    def declares_output(self, path: str) -> bool:
        """Whether *path* is a declared output or lies beneath one."""
        target = Path(path)
        for output in self.outputs:
            out = Path(output)
            if target == out or out in target.parents:
                return True
        return False


class StageResult(BaseModel):
    """Outcome of executing one stage."""

    model_config = ConfigDict(frozen=True)

    stage: str
    state: StageState
    log: str = ""
    cache_hit: bool = False
    cache_key: str = ""
    layer_path: Path | None = None
    output_digests: dict[str, str] = {}
