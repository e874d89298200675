"""Configuration resolver — the image's environment surface and its precedence.

The surface is a flat, ordered set of scoped variables. It is built once,
frozen into the final stage at build time, and resolved again at every
container start against the runtime-supplied environment:

- ``runtime_overridable``: exported into the image; a runtime value wins.
- ``build_time``: applied while building only; a runtime value passes through.
- ``build_locked``: exported into the image; a runtime value is ignored
  and a diagnostic is recorded. These are unreachable at
  runtime.

Nothing here reads ``os.environ``; callers pass the runtime mapping in.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

from imageforge.models.config import (
    ConfigCategory,
    ConfigScope,
    ConfigSurface,
    ConfigVariable,
)

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

SOURCE_BUILD = "build"
SOURCE_RUNTIME = "runtime"
SOURCE_PASSTHROUGH = "passthrough"


class ConfigValueError(ValueError):
    """Raised when a configuration value cannot be interpreted."""


def parse_bool(name: str, value: str) -> bool:
    """Interpret a feature toggle value."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigValueError(f"{name}={value!r} is not a boolean toggle")


def expand_references(value: str, values: Mapping[str, str]) -> str:
    """Replace ``${NAME}`` with ``values[NAME]``; unknown names are kept as-is."""
    return _REFERENCE.sub(lambda m: values.get(m.group(1), m.group(0)), value)


def _var(
    name: str,
    value: str,
    category: ConfigCategory,
    scope: ConfigScope = ConfigScope.RUNTIME_OVERRIDABLE,
    description: str = "",
) -> ConfigVariable:
    return ConfigVariable(
        name=name, value=value, scope=scope, category=category, description=description
    )


_D = ConfigCategory.DEVICE
_M = ConfigCategory.MEMORY
_R = ConfigCategory.RUNTIME
_PY = ConfigCategory.PYTHON
_P = ConfigCategory.PATHS
_S = ConfigCategory.SERVICE
_F = ConfigCategory.FEATURES
_I = ConfigCategory.IDENTITY
_LOCKED = ConfigScope.BUILD_LOCKED

ALLOC_CONF = "max_split_size_mb:256"
STARTUP_SCRIPT = "/app/fixes/disable_cudnn.py"

DEFAULT_VARIABLES: tuple[ConfigVariable, ...] = (
    # Device targeting
    _var("HSA_OVERRIDE_GFX_VERSION", "11.5.1", _D, description="GPU ISA override"),
    _var("PYTORCH_ROCM_ARCH", "gfx1151", _D, _LOCKED, "Architecture the base build targets"),
    _var("HIP_VISIBLE_DEVICES", "0", _D, description="Visible HIP devices"),
    _var("CUDA_VISIBLE_DEVICES", "", _D, description="Hide CUDA paths"),
    # Memory tuning
    _var("PYTORCH_ALLOC_CONF", ALLOC_CONF, _M),
    _var("PYTORCH_HIP_ALLOC_CONF", ALLOC_CONF, _M),
    _var("PYTORCH_CUDA_ALLOC_CONF", ALLOC_CONF, _M),
    _var("HSA_DISABLE_FRAGMENT_ALLOCATOR", "1", _M),
    # Kernel libraries
    _var("ROCBLAS_USE_HIPBLASLT", "1", _R),
    # Kernel autotuning hangs VAE decoding on gfx1151.
    _var("PYTORCH_TUNABLEOP_ENABLED", "0", _R),
    _var("MIOPEN_FIND_MODE", "FAST", _R),
    _var("ROCM_SOFT_SKIP_GPU_CHECK", "1", _R),
    # Python behaviour
    _var("PYTHONUNBUFFERED", "1", _PY),
    _var("PYTHONDONTWRITEBYTECODE", "1", _PY),
    # MIOpen convolutions make VAE decoding crawl on ROCm 7.
    _var("PYTHONSTARTUP", STARTUP_SCRIPT, _PY, description="Disables cuDNN/MIOpen"),
    _var("PIP_CONSTRAINT", "/etc/base_constraints.txt", _PY, _LOCKED,
         "Constraints captured from the base image"),
    # Paths
    _var("INVOKEAI_DIR", "/app/invokeai", _P, _LOCKED, "Application checkout"),
    _var("INVOKEAI_ROOT", "${INVOKEAI_DIR}", _P, description="Install root"),
    _var("INVOKEAI_OUTPUTS_DIR", "/app/invokeai/outputs", _P),
    _var("INVOKEAI_MODELS_DIR", "/app/invokeai/models", _P),
    _var("INVOKEAI_PROFILES_DIR", "/app/invokeai/profiles", _P),
    # Service
    _var("INVOKEAI_HOST", "0.0.0.0", _S),
    _var("INVOKEAI_PORT", "9090", _S),
    _var("INVOKEAI_DEVICE_WORKING_MEM_GB", "4", _M),
    _var("INVOKEAI_PYTORCH_CUDA_ALLOC_CONF", ALLOC_CONF, _M),
    _var("INVOKEAI_TORCH_ROCM_AOTRITON_ENABLE_EXPERIMENTAL", "1", _R),
    # Feature toggles
    _var("INVOKEAI_FORCE_TILED_DECODE", "false", _F),
    _var("INVOKEAI_ENABLE_PARTIAL_LOADING", "false", _F),
    _var("INVOKEAI_KEEP_RAM_COPY_OF_WEIGHTS", "false", _F),
    # Identity remapping
    _var("CONTAINER_UID", "0", _I, description="uid the service runs as"),
    # Empty means "same as the uid". A ${CONTAINER_UID} reference would be
    # expanded once at build time and pin the gid to the build-time uid.
    _var("CONTAINER_GID", "", _I, description="gid the service runs as; empty follows the uid"),
)

# Directories the entrypoint prepares, in order.
REQUIRED_DIRECTORY_VARIABLES: tuple[str, ...] = (
    "INVOKEAI_ROOT",
    "INVOKEAI_OUTPUTS_DIR",
    "INVOKEAI_MODELS_DIR",
    "INVOKEAI_PROFILES_DIR",
)


def default_surface() -> ConfigSurface:
    """The configuration surface shipped with the ROCm InvokeAI image."""
    return ConfigSurface(variables=DEFAULT_VARIABLES)


class ResolvedConfig(BaseModel):
    """Effective configuration for one build or one container start."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, str]
    sources: dict[str, str] = {}
    diagnostics: tuple[str, ...] = ()

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.values.get(name, default)

    def __getitem__(self, name: str) -> str:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def source_of(self, name: str) -> str | None:
        return self.sources.get(name)

    def get_bool(self, name: str) -> bool:
        return parse_bool(name, self.values.get(name, ""))

    def get_int(self, name: str) -> int:
        raw = self.values.get(name, "")
        try:
            return int(raw)
        except ValueError:
            raise ConfigValueError(f"{name}={raw!r} is not an integer") from None

    def as_environment(self) -> dict[str, str]:
        """A fresh copy suitable for a child process environment."""
        return dict(self.values)


class ConfigResolver:
    """Applies scope precedence to a ``ConfigSurface``.

    Parameters
    ----------
    surface:
        The immutable surface. It is never modified; overrides only
        affect the ``ResolvedConfig`` returned by :meth:`resolve`.
    """

    def __init__(self, surface: ConfigSurface | None = None) -> None:
        self._surface = surface or default_surface()

    @property
    def surface(self) -> ConfigSurface:
        return self._surface

    def build_environment(self) -> dict[str, str]:
        """Every declared variable, expanded, as seen by build stages."""
        values: dict[str, str] = {}
        for var in self._surface.variables:
            values[var.name] = expand_references(var.value, values)
        return values

    def image_environment(self) -> dict[str, str]:
        """The variables frozen into the final image (build-time-only excluded)."""
        build_env = self.build_environment()
        return {
            var.name: build_env[var.name]
            for var in self._surface.variables
            if var.scope != ConfigScope.BUILD_TIME
        }

    def resolve(self, runtime_env: Mapping[str, str] | None = None) -> ResolvedConfig:
        """Resolve the surface against a runtime-supplied environment.

        Runtime names that the surface does not declare are passed
        through untouched, since the service reads its own variables.
        """
        runtime_env = dict(runtime_env or {})
        raw: dict[str, str] = {}
        sources: dict[str, str] = {}
        diagnostics: list[str] = []

        for var in self._surface.variables:
            supplied = runtime_env.get(var.name)
            if var.scope == ConfigScope.BUILD_LOCKED:
                raw[var.name] = var.value
                sources[var.name] = SOURCE_BUILD
                if supplied is not None and supplied != var.value:
                    message = (
                        f"{var.name} is locked at build time to {var.value!r}; "
                        f"ignoring runtime value {supplied!r}"
                    )
                    logger.warning("%s", message)
                    diagnostics.append(message)
            elif supplied is not None:
                raw[var.name] = supplied
                sources[var.name] = SOURCE_RUNTIME
            elif var.scope == ConfigScope.RUNTIME_OVERRIDABLE:
                raw[var.name] = var.value
                sources[var.name] = SOURCE_BUILD

        values: dict[str, str] = {}
        for name, value in runtime_env.items():
            if name not in self._surface:
                values[name] = value
                sources[name] = SOURCE_PASSTHROUGH
        for var in self._surface.variables:
            if var.name in raw:
                values[var.name] = expand_references(raw[var.name], values)

        for var in self._surface.by_category(ConfigCategory.FEATURES):
            if var.name in values:
                parse_bool(var.name, values[var.name])

        return ResolvedConfig(
            values=values, sources=sources, diagnostics=tuple(diagnostics)
        )
