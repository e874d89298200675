"""Dependency lock model — captured package versions that must not drift."""

from __future__ import annotations

from packaging.utils import canonicalize_name
from pydantic import BaseModel, ConfigDict, field_validator


class LockedPackage(BaseModel):
    """A single package pinned to the exact version found in the base image."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str

    @field_validator("name")
    @classmethod
    def _canonical(cls, value: str) -> str:
        return canonicalize_name(value)


class LockConstraints(BaseModel):
    """Immutable constraint record, equivalent to a pip constraints file."""

    model_config = ConfigDict(frozen=True)

    packages: tuple[LockedPackage, ...] = ()

    def version_of(self, name: str) -> str | None:
        """Return the locked version of *name*, or None if it is not locked."""
        wanted = canonicalize_name(name)
        for pkg in self.packages:
            if pkg.name == wanted:
                return pkg.version
        return None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.version_of(name) is not None

    def render(self) -> str:
        """Render as pip constraints file text (``name==version`` per line)."""
        return "".join(f"{pkg.name}=={pkg.version}\n" for pkg in self.packages)
