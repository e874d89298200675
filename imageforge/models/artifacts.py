"""Artifact models — inter-stage copy contracts and the final image manifest."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imageforge.models.versioning import LockConstraints


class ArtifactReference(BaseModel):
    """A declared copy of ``source_path`` in one stage to ``dest_path`` in another.

    Paths are absolute paths inside the respective stage layers, exactly
    as they would appear in a ``COPY --from=<stage>`` instruction.
    """

    model_config = ConfigDict(frozen=True)

    producing_stage: str
    source_path: str
    consuming_stage: str
    dest_path: str

    @field_validator("source_path", "dest_path")
    @classmethod
    def _layer_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Layer path must be absolute: {value!r}")
        if ".." in value.split("/"):
            raise ValueError(f"Layer path must not contain '..': {value!r}")
        return value.rstrip("/") or "/"

    def describe(self) -> str:
        return (
            f"{self.producing_stage}:{self.source_path} -> "
            f"{self.consuming_stage}:{self.dest_path}"
        )


class CacheEntry(BaseModel):
    """Metadata for a blob stored in the package cache."""

    model_config = ConfigDict(frozen=True)

    digest: str  # "sha256:<hex>"
    size_bytes: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ImageManifest(BaseModel):
    """The tagged result of a successful build.

    A manifest only exists when every stage passed; there is no partial
    manifest for a failed build.
    """

    model_config = ConfigDict(frozen=True)

    tag: str
    base_image: str
    final_stage: str
    environment: dict[str, str] = {}
    exposed_port: int | None = None
    entrypoint: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    constraints: LockConstraints | None = None
    rootfs: str = ""
    layer_digests: dict[str, str] = {}
    built_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
