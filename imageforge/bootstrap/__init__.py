"""Container start-up: identity remapping, directory ownership and exec handoff."""

from imageforge.bootstrap.actions import (
    BootstrapAction,
    DropPrivileges,
    ExecReplace,
    InvalidBootstrapPlan,
    PrepareDirectory,
    validate_plan,
)
from imageforge.bootstrap.entrypoint import (
    Bootstrap,
    BootstrapPermissionFailure,
    HostOps,
    PosixHost,
    ServiceLaunchError,
    bootstrap,
    plan_bootstrap,
    resolve_user,
)

__all__ = [
    "Bootstrap",
    "BootstrapAction",
    "BootstrapPermissionFailure",
    "DropPrivileges",
    "ExecReplace",
    "HostOps",
    "InvalidBootstrapPlan",
    "PosixHost",
    "PrepareDirectory",
    "ServiceLaunchError",
    "bootstrap",
    "plan_bootstrap",
    "resolve_user",
    "validate_plan",
]
