"""Dependency locking — captures base-image package versions and enforces them.

The runtime base image ships a pre-built GPU build of the ML framework.
Once those versions are captured, an install step that would move any of
them to another version is rejected with ``PinViolation`` instead of
being resolved silently by the installer.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from imageforge.models.versioning import LockConstraints, LockedPackage

logger = logging.getLogger(__name__)

# ``name==version`` lines as printed by ``pip freeze``
_FREEZE_LINE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*==\s*([^\s;#]+)")


class LockError(RuntimeError):
    """Raised when constraints cannot be captured."""


class PinViolation(RuntimeError):
    """Raised when an install step would change a locked package's version."""

    def __init__(self, package: str, locked: str, requested: str) -> None:
        self.package = package
        self.locked = locked
        self.requested = requested
        super().__init__(
            f"{package} is locked at {locked}; install step requested {requested!r}"
        )


@runtime_checkable
class PackageManager(Protocol):
    """What the lock needs from an installer: read and change the installed set."""

    def installed(self) -> dict[str, str]:
        """Return canonical package name -> installed version."""
        ...

    def install(self, requirements: list[str]) -> None:
        """Install *requirements*; raise on failure."""
        ...


def parse_freeze(text: str) -> dict[str, str]:
    """Parse ``pip freeze`` output into canonical name -> version.

    Direct URL references (``name @ url``), editable installs and
    comments carry no comparable version and are skipped.
    """
    installed: dict[str, str] = {}
    for line in text.splitlines():
        match = _FREEZE_LINE.match(line)
        if match:
            installed[canonicalize_name(match.group(1))] = match.group(2)
    return installed


def capture_constraints(
    installed: Mapping[str, str],
    packages: Iterable[str],
    *,
    strict: bool = False,
) -> LockConstraints:
    """Snapshot the installed version of each named package.

    A named package that is not installed is skipped with a warning, or
    raises ``LockError`` when *strict* is set.
    """
    normalized = {canonicalize_name(k): v for k, v in installed.items()}
    locked: list[LockedPackage] = []
    for name in packages:
        key = canonicalize_name(name)
        version = normalized.get(key)
        if version is None:
            if strict:
                raise LockError(f"Cannot lock {name}: it is not installed")
            logger.warning("Package %s is not installed; nothing to lock", name)
            continue
        locked.append(LockedPackage(name=key, version=version))
    constraints = LockConstraints(packages=tuple(locked))
    logger.info(
        "Locked %s",
        ", ".join(f"{p.name}=={p.version}" for p in constraints.packages) or "nothing",
    )
    return constraints


class DependencyLock:
    """Enforces a captured ``LockConstraints`` record on install steps.

    Parameters
    ----------
    constraints:
        The record captured from the base image. It is never modified.
    """

    def __init__(self, constraints: LockConstraints) -> None:
        self._constraints = constraints

    @property
    def constraints(self) -> LockConstraints:
        return self._constraints

    def _violates(self, req: Requirement, locked: str) -> bool:
        if req.url:
            # A direct reference replaces the installed distribution.
            return True
        if not req.specifier:
            return False
        try:
            version = Version(locked)
        except InvalidVersion:
            return str(req.specifier) != f"=={locked}"
        return not req.specifier.contains(version, prereleases=True)

    def check_install(self, requirements: Iterable[str]) -> list[str]:
        """Validate an install step against the lock.

        Returns the requirements that still need installing: requests for
        a locked package that its locked version already satisfies are
        dropped as no-ops. Lines that are not PEP 508 requirements
        (``-e .``, ``-r file``) are passed through; the installer's
        constraints file guards those.

        Raises
        ------
        PinViolation
            On the first requirement that would move a locked package.
        """
        remaining: list[str] = []
        for raw in requirements:
            try:
                req = Requirement(raw)
            except InvalidRequirement:
                remaining.append(raw)
                continue
            if req.marker is not None and not req.marker.evaluate():
                continue
            locked = self._constraints.version_of(req.name)
            if locked is None:
                remaining.append(raw)
                continue
            if self._violates(req, locked):
                raise PinViolation(canonicalize_name(req.name), locked, raw)
            logger.debug("%s already satisfied by locked %s", raw, locked)
        return remaining

    def install(self, manager: PackageManager, requirements: Iterable[str]) -> list[str]:
        """Check *requirements*, then install whatever is left.

        Nothing is installed when the check fails, so the installed set
        is unchanged after a ``PinViolation``.
        """
        remaining = self.check_install(list(requirements))
        if remaining:
            manager.install(remaining)
        return remaining

    def verify_installed(self, manager: PackageManager) -> list[str]:
        """Compare the manager's installed set against the lock.

        Returns drift descriptions; empty means every locked package is
        still at its captured version.
        """
        installed = {canonicalize_name(k): v for k, v in manager.installed().items()}
        drifts = []
        for pkg in self._constraints.packages:
            current = installed.get(pkg.name)
            if current != pkg.version:
                drifts.append(f"{pkg.name}: locked={pkg.version!r}, installed={current!r}")
        return drifts
