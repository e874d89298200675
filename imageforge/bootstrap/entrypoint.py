"""Container bootstrap — identity remapping, directory ownership, exec handoff.

Runs once per container start, before the service binds its port:

1. Resolve the effective uid/gid (``CONTAINER_UID``/``CONTAINER_GID``,
   falling back to the image default).
2. Create every required directory and make the resolved identity own it.
3. Drop privileges unless the resolved uid is 0.
4. Replace this process with the service command.

Steps 2 and 3 are fatal on any error: the service is never started.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import NoReturn, Protocol, runtime_checkable

from imageforge.bootstrap.actions import (
    BootstrapAction,
    DropPrivileges,
    ExecReplace,
    PrepareDirectory,
    validate_plan,
)
from imageforge.core.config_resolver import (
    REQUIRED_DIRECTORY_VARIABLES,
    SOURCE_RUNTIME,
    ConfigResolver,
    ResolvedConfig,
)
from imageforge.models.config import ConfigSurface, UserContext, UserSource

logger = logging.getLogger(__name__)

DEFAULT_UID = 0
UID_VARIABLE = "CONTAINER_UID"
GID_VARIABLE = "CONTAINER_GID"
WORKDIR_VARIABLE = "INVOKEAI_ROOT"


class BootstrapPermissionFailure(RuntimeError):
    """Raised when a directory cannot be prepared or the identity cannot be switched."""


class ServiceLaunchError(RuntimeError):
    """Raised when the service command itself cannot be executed."""


@runtime_checkable
class HostOps(Protocol):
    """The operating-system calls the bootstrap needs."""

    def makedirs(self, path: str) -> None: ...

    def owner(self, path: str) -> tuple[int, int]: ...

    def chown(self, path: str, uid: int, gid: int) -> None: ...

    def switch_user(self, uid: int, gid: int) -> None: ...

    def exec(self, argv: tuple[str, ...], env: dict[str, str], cwd: str | None) -> NoReturn: ...


class PosixHost:
    """``HostOps`` backed by the real process and filesystem."""

    def makedirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def owner(self, path: str) -> tuple[int, int]:
        st = os.stat(path)
        return st.st_uid, st.st_gid

    def chown(self, path: str, uid: int, gid: int) -> None:
        os.chown(path, uid, gid)

    def switch_user(self, uid: int, gid: int) -> None:
        if os.geteuid() == uid and os.getegid() == gid:
            return
        # Group first: once the uid is dropped the gid can no longer change.
        os.setgroups([])
        os.setgid(gid)
        os.setuid(uid)

    def exec(self, argv: tuple[str, ...], env: dict[str, str], cwd: str | None) -> NoReturn:
        if cwd:
            os.chdir(cwd)
        os.execvpe(argv[0], list(argv), env)


def _parse_id(name: str, raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise BootstrapPermissionFailure(f"{name}={raw!r} is not a numeric id") from None
    if value < 0:
        raise BootstrapPermissionFailure(f"{name}={raw!r} must not be negative")
    return value


def resolve_user(config: ResolvedConfig) -> UserContext:
    """Resolve the identity the service should run as."""
    raw_uid = config.get(UID_VARIABLE)
    overridden = config.source_of(UID_VARIABLE) == SOURCE_RUNTIME
    uid = _parse_id(UID_VARIABLE, raw_uid) if raw_uid else DEFAULT_UID

    raw_gid = (config.get(GID_VARIABLE) or "").strip()
    if raw_gid and config.source_of(GID_VARIABLE) == SOURCE_RUNTIME:
        overridden = True
    gid = _parse_id(GID_VARIABLE, raw_gid) if raw_gid else uid

    return UserContext(
        uid=uid,
        gid=gid,
        source=UserSource.RUNTIME_OVERRIDE if overridden else UserSource.DEFAULT,
    )


def required_directories(config: ResolvedConfig) -> list[str]:
    """Install root, outputs, models and profiles; duplicates dropped, order kept."""
    paths: list[str] = []
    for name in REQUIRED_DIRECTORY_VARIABLES:
        path = config.get(name)
        if path and path not in paths:
            paths.append(path)
    return paths


def plan_bootstrap(config: ResolvedConfig, command: str) -> list[BootstrapAction]:
    """Build the ordered action list for one container start."""
    user = resolve_user(config)
    logger.info(
        "Running as uid=%d gid=%d (%s)", user.uid, user.gid, user.source.value
    )
    actions: list[BootstrapAction] = [
        PrepareDirectory(path=path, uid=user.uid, gid=user.gid)
        for path in required_directories(config)
    ]
    if not user.is_privileged:
        actions.append(DropPrivileges(uid=user.uid, gid=user.gid))
    actions.append(
        ExecReplace(
            argv=(command,),
            env=config.as_environment(),
            cwd=config.get(WORKDIR_VARIABLE),
        )
    )
    validate_plan(actions)
    return actions


class Bootstrap:
    """Executes a bootstrap plan against a ``HostOps`` implementation.

    Parameters
    ----------
    host:
        Defaults to ``PosixHost``.
    """

    def __init__(self, host: HostOps | None = None) -> None:
        self._host = host or PosixHost()

    def _prepare(self, action: PrepareDirectory) -> None:
        try:
            self._host.makedirs(action.path)
            if self._host.owner(action.path) != (action.uid, action.gid):
                self._host.chown(action.path, action.uid, action.gid)
                logger.info("Owned %s by %d:%d", action.path, action.uid, action.gid)
        except OSError as exc:
            raise BootstrapPermissionFailure(
                f"cannot prepare {action.path} for {action.uid}:{action.gid}: {exc}"
            ) from exc

    def _drop(self, action: DropPrivileges) -> None:
        try:
            self._host.switch_user(action.uid, action.gid)
        except OSError as exc:
            raise BootstrapPermissionFailure(
                f"cannot switch to uid={action.uid} gid={action.gid}: {exc}"
            ) from exc

    def run(self, actions: list[BootstrapAction]) -> NoReturn:
        """Perform every action; the last one replaces the process."""
        validate_plan(actions)
        for action in actions:
            if isinstance(action, PrepareDirectory):
                self._prepare(action)
            elif isinstance(action, DropPrivileges):
                self._drop(action)
            elif isinstance(action, ExecReplace):
                logger.info("exec %s", " ".join(action.argv))
                try:
                    self._host.exec(action.argv, action.env, action.cwd)
                except OSError as exc:
                    raise ServiceLaunchError(
                        f"cannot execute {action.argv[0]}: {exc}"
                    ) from exc
        # Only reachable with a HostOps whose exec returns (test doubles).
        raise ServiceLaunchError("exec returned control to the bootstrap")


def bootstrap(
    command: str,
    runtime_env: Mapping[str, str],
    *,
    surface: ConfigSurface | None = None,
    host: HostOps | None = None,
) -> NoReturn:
    """Resolve configuration, prepare the container and exec *command*."""
    config = ConfigResolver(surface).resolve(runtime_env)
    Bootstrap(host).run(plan_bootstrap(config, command))
