"""Bootstrap action types.

A bootstrap plan is an ordered list of actions. ``ExecReplace`` is
terminal: it replaces the process image, so nothing after it can run and
it must be the last action of every plan.
"""

from __future__ import annotations

from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, field_validator


class InvalidBootstrapPlan(ValueError):
    """Raised when a plan does not end in exactly one ExecReplace."""


class PrepareDirectory(BaseModel):
    """Create ``path`` if missing and make ``uid:gid`` its owner."""

    model_config = ConfigDict(frozen=True)
    terminal: ClassVar[bool] = False

    path: str
    uid: int
    gid: int


class DropPrivileges(BaseModel):
    """Switch the current process to ``uid:gid``."""

    model_config = ConfigDict(frozen=True)
    terminal: ClassVar[bool] = False

    uid: int
    gid: int

    @field_validator("uid")
    @classmethod
    def _unprivileged(cls, value: int) -> int:
        if value == 0:
            raise ValueError("DropPrivileges to uid 0 is not a privilege drop")
        return value


class ExecReplace(BaseModel):
    """Replace the current process with ``argv``. Never returns."""

    model_config = ConfigDict(frozen=True)
    terminal: ClassVar[bool] = True

    argv: tuple[str, ...]
    env: dict[str, str] = {}
    cwd: str | None = None

    @field_validator("argv")
    @classmethod
    def _non_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value or not value[0]:
            raise ValueError("ExecReplace needs a program to run")
        return value


BootstrapAction = Union[PrepareDirectory, DropPrivileges, ExecReplace]


def validate_plan(actions: list[BootstrapAction]) -> None:
    """Check that exactly one terminal action exists and that it comes last."""
    terminals = [i for i, action in enumerate(actions) if action.terminal]
    if len(terminals) != 1:
        raise InvalidBootstrapPlan(
            f"A bootstrap plan needs exactly one ExecReplace, found {len(terminals)}"
        )
    if terminals[0] != len(actions) - 1:
        raise InvalidBootstrapPlan("ExecReplace must be the last bootstrap action")
    drops = [i for i, action in enumerate(actions) if isinstance(action, DropPrivileges)]
    prepares = [i for i, action in enumerate(actions) if isinstance(action, PrepareDirectory)]
    if drops and prepares and max(prepares) > min(drops):
        raise InvalidBootstrapPlan(
            "Directories must be prepared before privileges are dropped"
        )
