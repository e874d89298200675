"""Pipeline definition model — the stages plus the image they assemble into."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator

from imageforge.models.config import ConfigSurface
from imageforge.models.stages import BuildStage


class PipelineDefinition(BaseModel):
    """A complete image build: stages, final stage, and runtime contract.

    ``surface`` is frozen into the final stage's environment; the
    ``port_variable`` names the surface variable whose value is exposed.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    stages: tuple[BuildStage, ...]
    final_stage: str
    surface: ConfigSurface = ConfigSurface()
    port_variable: str = ""
    entrypoint: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    default_tag: str = "latest"

    @model_validator(mode="after")
    def _check_stages(self) -> PipelineDefinition:
        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate stage names in pipeline {self.name!r}")
        if self.final_stage not in names:
            raise ValueError(
                f"Final stage {self.final_stage!r} is not defined in pipeline {self.name!r}"
            )
        if self.port_variable and self.port_variable not in self.surface:
            raise ValueError(
                f"Port variable {self.port_variable!r} is not part of the surface"
            )
        return self

    def stage(self, name: str) -> BuildStage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def final(self) -> BuildStage:
        return self.stage(self.final_stage)
