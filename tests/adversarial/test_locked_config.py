"""Adversarial tests — runtime attempts to change build-locked configuration.

These tests verify that:
1. Locked values survive any runtime override, including expansion tricks
2. Each ignored override yields exactly one diagnostic
3. Overrides never reach the service environment
"""

from __future__ import annotations

import pytest

from imageforge.core.config_resolver import SOURCE_BUILD, ConfigResolver


@pytest.fixture
def resolver() -> ConfigResolver:
    return ConfigResolver()


class TestLockedOverrides:
    @pytest.mark.parametrize("name,attempt", [
        ("PYTORCH_ROCM_ARCH", "gfx1100"),
        ("PIP_CONSTRAINT", "/dev/null"),
        ("INVOKEAI_DIR", "/tmp/evil"),
    ])
    def test_override_ignored(self, resolver: ConfigResolver, name: str, attempt: str):
        build_value = resolver.build_environment()[name]
        resolved = resolver.resolve({name: attempt})
        assert resolved[name] == build_value
        assert resolved.source_of(name) == SOURCE_BUILD
        assert len(resolved.diagnostics) == 1

    def test_multiple_overrides_one_diagnostic_each(self, resolver: ConfigResolver):
        resolved = resolver.resolve({
            "PYTORCH_ROCM_ARCH": "gfx1100",
            "PIP_CONSTRAINT": "/dev/null",
        })
        assert len(resolved.diagnostics) == 2

    def test_dependent_variables_use_locked_value(self, resolver: ConfigResolver):
        """INVOKEAI_ROOT defaults to ${INVOKEAI_DIR}; overriding the lock must not move it."""
        resolved = resolver.resolve({"INVOKEAI_DIR": "/tmp/evil"})
        assert resolved["INVOKEAI_ROOT"] == "/app/invokeai"

    def test_reference_to_locked_name_in_runtime_value(self, resolver: ConfigResolver):
        resolved = resolver.resolve({
            "INVOKEAI_DIR": "/tmp/evil",
            "INVOKEAI_MODELS_DIR": "${INVOKEAI_DIR}/models",
        })
        assert resolved["INVOKEAI_MODELS_DIR"] == "/app/invokeai/models"

    def test_override_never_reaches_service(self, fake_host):
        from imageforge.bootstrap import bootstrap

        with pytest.raises(fake_host.Exec):
            bootstrap("svc", {"PIP_CONSTRAINT": "/dev/null"}, host=fake_host)
        _, env, _ = fake_host.exec_args
        assert env["PIP_CONSTRAINT"] == "/etc/base_constraints.txt"
