"""Tool configuration — env-driven settings for the imageforge CLI.

Reads from a .env file and IMAGEFORGE_* environment variables. This is
the configuration of the build tool itself; the image's own runtime
surface lives in ``imageforge.core.config_resolver``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Build tool settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export IMAGEFORGE_LOG_LEVEL=DEBUG
        export IMAGEFORGE_CACHE_PATH=/var/cache/imageforge
        export IMAGEFORGE_MAX_WORKERS=4
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="IMAGEFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Build
    pipeline: str = "invokeai-rocm"
    work_root: Path = Path(".imageforge/work")
    cache_path: Path = Path(".imageforge/cache")
    use_cache: bool = True
    max_workers: int = 2
    image_tag: str = "latest"
    command_timeout: float | None = None


# Module-level singleton — import as `from imageforge.config import settings`
settings = ForgeSettings()
