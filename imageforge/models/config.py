"""Configuration surface models — scoped variables and process identity."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class ConfigScope(str, Enum):
    """When a variable may be set, and by whom."""

    BUILD_TIME = "build_time"
    RUNTIME_OVERRIDABLE = "runtime_overridable"
    BUILD_LOCKED = "build_locked"


class ConfigCategory(str, Enum):
    DEVICE = "device"
    MEMORY = "memory"
    RUNTIME = "runtime"
    PYTHON = "python"
    PATHS = "paths"
    SERVICE = "service"
    FEATURES = "features"
    IDENTITY = "identity"


class ConfigVariable(BaseModel):
    """A single environment variable with its declared scope."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    scope: ConfigScope = ConfigScope.RUNTIME_OVERRIDABLE
    category: ConfigCategory = ConfigCategory.RUNTIME
    description: str = ""

    @field_validator("name")
    @classmethod
    def _env_name(cls, value: str) -> str:
        if not value or not (value[0].isalpha() or value[0] == "_"):
            raise ValueError(f"Invalid environment variable name: {value!r}")
        if not all(c.isalnum() or c == "_" for c in value):
            raise ValueError(f"Invalid environment variable name: {value!r}")
        return value


class ConfigSurface(BaseModel):
    """Ordered, immutable set of configuration variables.

    Declaration order matters: ``${NAME}`` references are expanded
    against variables declared earlier.
    """

    model_config = ConfigDict(frozen=True)

    variables: tuple[ConfigVariable, ...] = ()

    @model_validator(mode="after")
    def _unique_names(self) -> ConfigSurface:
        seen: set[str] = set()
        for var in self.variables:
            if var.name in seen:
                raise ValueError(f"Duplicate configuration variable: {var.name}")
            seen.add(var.name)
        return self

    def get(self, name: str) -> ConfigVariable | None:
        for var in self.variables:
            if var.name == name:
                return var
        return None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def names(self) -> list[str]:
        return [var.name for var in self.variables]

    def by_category(self, category: ConfigCategory) -> list[ConfigVariable]:
        return [var for var in self.variables if var.category == category]

    def with_variable(self, variable: ConfigVariable) -> ConfigSurface:
        """Return a new surface with *variable* added or replaced in place."""
        if variable.name in self:
            updated = tuple(
                variable if var.name == variable.name else var
                for var in self.variables
            )
        else:
            updated = self.variables + (variable,)
        return ConfigSurface(variables=updated)

    def build_environment(self) -> dict[str, str]:
        """The raw build-time values, in declaration order (unexpanded)."""
        return {var.name: var.value for var in self.variables}


class UserSource(str, Enum):
    RUNTIME_OVERRIDE = "runtime_override"
    DEFAULT = "default"


class UserContext(BaseModel):
    """Effective process identity for one container start. Never persisted."""

    model_config = ConfigDict(frozen=True)

    uid: int
    gid: int
    source: UserSource = UserSource.DEFAULT

    @field_validator("uid", "gid")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("uid/gid must be non-negative")
        return value

    @property
    def is_privileged(self) -> bool:
        return self.uid == 0
