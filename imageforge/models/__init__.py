"""imageforge data models — all Pydantic v2, all frozen (immutable)."""

from imageforge.models.artifacts import ArtifactReference, CacheEntry, ImageManifest
from imageforge.models.config import (
    ConfigCategory,
    ConfigScope,
    ConfigSurface,
    ConfigVariable,
    UserContext,
    UserSource,
)
from imageforge.models.pipeline import PipelineDefinition
from imageforge.models.stages import (
    VALID_TRANSITIONS,
    BuildStage,
    Instruction,
    InstructionKind,
    StageResult,
    StageState,
)
from imageforge.models.versioning import LockConstraints, LockedPackage

__all__ = [
    # artifacts
    "ArtifactReference",
    "CacheEntry",
    "ImageManifest",
    # config
    "ConfigCategory",
    "ConfigScope",
    "ConfigSurface",
    "ConfigVariable",
    "UserContext",
    "UserSource",
    # pipeline
    "PipelineDefinition",
    # stages
    "BuildStage",
    "Instruction",
    "InstructionKind",
    "StageResult",
    "StageState",
    "VALID_TRANSITIONS",
    # versioning
    "LockConstraints",
    "LockedPackage",
]
