"""Tests for tool settings — env-driven ForgeSettings."""

from __future__ import annotations

from pathlib import Path

from imageforge.config import ForgeSettings


class TestForgeSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("IMAGEFORGE_MAX_WORKERS", raising=False)
        config = ForgeSettings(_env_file=None)
        assert config.log_level == "INFO"
        assert config.pipeline == "invokeai-rocm"
        assert config.max_workers == 2
        assert config.use_cache is True

    def test_default_paths(self):
        config = ForgeSettings(_env_file=None)
        assert config.work_root == Path(".imageforge/work")
        assert config.cache_path == Path(".imageforge/cache")

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("IMAGEFORGE_MAX_WORKERS", "6")
        monkeypatch.setenv("IMAGEFORGE_USE_CACHE", "false")
        monkeypatch.setenv("IMAGEFORGE_CACHE_PATH", "/var/cache/imageforge")
        config = ForgeSettings(_env_file=None)
        assert config.max_workers == 6
        assert config.use_cache is False
        assert config.cache_path == Path("/var/cache/imageforge")

    def test_unrelated_env_ignored(self, monkeypatch):
        monkeypatch.setenv("IMAGEFORGE_NOT_A_SETTING", "x")
        ForgeSettings(_env_file=None)
