"""Tests for Dockerfile rendering and the shipped pipeline definition."""

from __future__ import annotations

import pytest

from imageforge import __version__
from imageforge.core.dockerfile import render_dockerfile, render_instruction
from imageforge.models.stages import Instruction, InstructionKind
from imageforge.pipelines import (
    APP_STAGE,
    LOCKED_PACKAGES,
    WEB_STAGE,
    get_pipeline,
    invokeai_rocm_pipeline,
)


@pytest.fixture
def dockerfile() -> str:
    return render_dockerfile(invokeai_rocm_pipeline())


class TestRenderInstruction:
    def test_run_with_cache_mount(self):
        line = render_instruction(Instruction.run("pnpm install", cache_mounts=("/pnpm/store",)))
        assert line == "RUN --mount=type=cache,target=/pnpm/store pnpm install"

    def test_env_quoting(self):
        assert render_instruction(Instruction.env("A", "")) == 'ENV A=""'
        assert render_instruction(Instruction.env("A", "${B}:/x")) == "ENV A=${B}:/x"
        assert render_instruction(Instruction.env("A", "two words")) == 'ENV A="two words"'

    def test_lock_becomes_freeze_filter(self):
        line = render_instruction(Instruction.lock("torch", "Triton"))
        assert line == "RUN pip freeze | grep -iE '^(torch|triton)==' > ${PIP_CONSTRAINT}"

    def test_install(self):
        assert render_instruction(Instruction.install("-e .")) == "RUN pip install -e ."

    def test_write_file_is_heredoc_copy(self):
        line = render_instruction(Instruction.write_file("/opt/x.sh", "echo ${HOME}\n"))
        assert line == 'COPY <<"IMAGEFORGE_EOF" /opt/x.sh\necho ${HOME}\nIMAGEFORGE_EOF'

    def test_write_file_delimiter_avoids_content(self):
        line = render_instruction(Instruction.write_file("/opt/x", "IMAGEFORGE_EOF"))
        assert line.startswith('COPY <<"IMAGEFORGE_EOF_" /opt/x\n')
        assert line.endswith("\nIMAGEFORGE_EOF_")

    def test_copy_without_reference_raises(self):
        broken = Instruction.model_construct(kind=InstructionKind.COPY_ARTIFACT, artifact=None)
        with pytest.raises(ValueError, match="no artifact reference"):
            render_instruction(broken)


class TestRenderDockerfile:
    def test_header(self, dockerfile: str):
        assert dockerfile.startswith("# syntax=docker/dockerfile:1\n")

    def test_producer_stage_first(self, dockerfile: str):
        web = dockerfile.index(f"AS {WEB_STAGE}")
        app = dockerfile.index(f"AS {APP_STAGE}")
        assert web < app

    def test_artifact_copy(self, dockerfile: str):
        assert (
            "COPY --from=web-builder /build/dist /app/invokeai/invokeai/frontend/web/dist"
            in dockerfile
        )

    def test_surface_in_final_stage(self, dockerfile: str):
        final = dockerfile[dockerfile.index(f"AS {APP_STAGE}"):]
        assert "ENV PYTORCH_TUNABLEOP_ENABLED=0" in final
        assert "ENV PIP_CONSTRAINT=/etc/base_constraints.txt" in final
        assert 'ENV CUDA_VISIBLE_DEVICES=""' in final
        assert "ENV INVOKEAI_ROOT=${INVOKEAI_DIR}" in final
        # constraints file location is set before the lock runs
        assert final.index("ENV PIP_CONSTRAINT") < final.index("RUN pip freeze")

    def test_runtime_contract(self, dockerfile: str):
        assert "EXPOSE 9090" in dockerfile
        assert 'ENTRYPOINT ["imageforge-entrypoint"]' in dockerfile
        assert dockerfile.rstrip().endswith('CMD ["invokeai-web"]')

    def test_build_time_variables_are_args(self, make_pipeline):
        text = render_dockerfile(make_pipeline())
        assert "ARG BUILD_JOBS=4" in text
        assert "ENV BUILD_JOBS" not in text


class TestShippedPipeline:
    def test_registry(self):
        assert get_pipeline("invokeai-rocm").name == "invokeai-rocm"
        with pytest.raises(KeyError, match="available"):
            get_pipeline("cuda")

    def test_lock_runs_before_any_install(self):
        app = invokeai_rocm_pipeline().stage(APP_STAGE)
        kinds = [ins.kind for ins in app.instructions]
        assert kinds[0] == InstructionKind.LOCK
        assert app.instructions[0].packages == LOCKED_PACKAGES
        assert kinds.index(InstructionKind.INSTALL) > 0

    def test_pyproject_pins_relaxed_before_install(self):
        app = invokeai_rocm_pipeline().stage(APP_STAGE)
        commands = [ins.command for ins in app.instructions]
        sed = next(i for i, c in enumerate(commands) if c.startswith("sed -i"))
        install = next(
            i for i, ins in enumerate(app.instructions) if ins.kind == InstructionKind.INSTALL
        )
        assert sed < install
        assert "torch>=2.9.0" in commands[sed]

    def test_final_stage_and_port(self):
        pipeline = invokeai_rocm_pipeline()
        assert pipeline.final_stage == APP_STAGE
        assert pipeline.port_variable == "INVOKEAI_PORT"
        assert pipeline.stage(WEB_STAGE).outputs == frozenset({"/build/dist"})

    def test_startup_script_lands_where_pythonstartup_points(self, dockerfile: str):
        pipeline = invokeai_rocm_pipeline()
        startup = pipeline.surface.get("PYTHONSTARTUP")
        assert startup is not None
        assert f"ENV PYTHONSTARTUP={startup.value}" in dockerfile
        assert f'COPY <<"IMAGEFORGE_EOF" {startup.value}\n' in dockerfile
        assert "torch.backends.cudnn.enabled = False" in dockerfile
        assert pipeline.stage(APP_STAGE).declares_output(startup.value)

    def test_gid_is_not_baked_into_image(self, dockerfile: str):
        assert 'ENV CONTAINER_GID=""' in dockerfile
        assert "${CONTAINER_UID}" not in dockerfile

    def test_entrypoint_distribution_is_pinned(self):
        app = invokeai_rocm_pipeline().stage(APP_STAGE)
        installs = [
            req
            for ins in app.instructions
            if ins.kind == InstructionKind.INSTALL
            for req in ins.requirements
        ]
        assert f"imageforge=={__version__}" in installs
        assert "imageforge" not in installs
