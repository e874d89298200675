"""Shipped pipeline definitions.

``invokeai-rocm`` builds the InvokeAI web frontend in a Node stage, then
installs InvokeAI on top of the ROCm PyTorch base image with the base's
torch stack locked, and copies the built frontend in.
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable

from imageforge import __version__
from imageforge.core.config_resolver import STARTUP_SCRIPT, default_surface
from imageforge.models.artifacts import ArtifactReference
from imageforge.models.config import ConfigSurface
from imageforge.models.pipeline import PipelineDefinition
from imageforge.models.stages import BuildStage, Instruction

INVOKEAI_REPO = "https://github.com/invoke-ai/InvokeAI.git"
NODE_IMAGE = "docker.io/node:22-slim"
ROCM_PYTORCH_IMAGE = "rocm/pytorch:rocm7.1.1_ubuntu24.04_py3.12_pytorch_release_2.9.1"

WEB_STAGE = "web-builder"
APP_STAGE = "app"

LOCKED_PACKAGES = ("torch", "torchvision", "torchaudio", "triton")

# InvokeAI pins a CUDA/ROCm 6 torch; relax it so the base image's build satisfies it.
PYPROJECT_RELAXATIONS = (
    ('"torch~=2.7.0",', '"torch>=2.9.0",'),
    ('"torch==2.7.1+rocm6.3",', '"torch>=2.9.1",'),
    ('"torchvision==0.22.1+rocm6.3",', '"torchvision",'),
)

SYSTEM_PACKAGES = (
    "git", "curl", "wget", "libglib2.0-0", "gosu", "libgl1", "libglx-mesa0",
    "build-essential", "libopencv-dev", "libstdc++-10-dev",
)

# Loaded through PYTHONSTARTUP. Turning cuDNN off keeps torch away from
# MIOpen convolutions, which make VAE decoding crawl on ROCm 7.
DISABLE_CUDNN_SCRIPT = """\
import torch

torch.backends.cudnn.enabled = False
"""


def _sed_expressions() -> str:
    return " ".join(
        f"-e 's/{old}/{new}/'" for old, new in PYPROJECT_RELAXATIONS
    )


def web_builder_stage(repo: str = INVOKEAI_REPO) -> BuildStage:
    return BuildStage(
        name=WEB_STAGE,
        base_image=NODE_IMAGE,
        instructions=(
            Instruction.env("PNPM_HOME", "/pnpm"),
            Instruction.env("PATH", "${PNPM_HOME}:${PATH}"),
            Instruction.run("corepack use pnpm@8.x"),
            Instruction.run("corepack enable"),
            Instruction.run(
                "apt update && apt install -y --no-install-recommends ca-certificates git"
            ),
            Instruction.workdir("/build"),
            Instruction.run(f"git clone --depth 1 {repo} /tmp/invokeai"),
            Instruction.run("cp -r /tmp/invokeai/invokeai/frontend/web/* ./"),
            Instruction.run("rm -rf /tmp/invokeai"),
            Instruction.run("pnpm install --frozen-lockfile", cache_mounts=("/pnpm/store",)),
            Instruction.run("npx vite build"),
        ),
        outputs=frozenset({"/build/dist"}),
    )


def app_stage(surface: ConfigSurface, repo: str = INVOKEAI_REPO) -> BuildStage:
    app_dir = surface.get("INVOKEAI_DIR")
    root = app_dir.value if app_dir is not None else "/app/invokeai"
    startup = surface.get("PYTHONSTARTUP")
    startup_path = startup.value if startup is not None else STARTUP_SCRIPT
    return BuildStage(
        name=APP_STAGE,
        base_image=ROCM_PYTORCH_IMAGE,
        instructions=(
            Instruction.lock(*LOCKED_PACKAGES),
            Instruction.run(
                "apt update && apt install -y --no-install-recommends "
                + " ".join(SYSTEM_PACKAGES)
            ),
            Instruction.run("rm -rf /var/lib/apt/lists/*"),
            Instruction.write_file(startup_path, DISABLE_CUDNN_SCRIPT),
            Instruction.run(f"mkdir -p {root}"),
            Instruction.run(f"git clone --depth 1 {repo} {root}"),
            Instruction.workdir(root),
            Instruction.run(f"sed -i {_sed_expressions()} pyproject.toml"),
            Instruction.install("-e ."),
            # Provides the imageforge-entrypoint console script.
            Instruction.install(f"imageforge=={__version__}"),
            Instruction.copy_artifact(
                ArtifactReference(
                    producing_stage=WEB_STAGE,
                    source_path="/build/dist",
                    consuming_stage=APP_STAGE,
                    dest_path=f"{root}/invokeai/frontend/web/dist",
                )
            ),
            Instruction.env("PATH", "/home/appuser/.local/bin:${PATH}"),
            Instruction.run("pip cache purge"),
        ),
        outputs=frozenset({root, posixpath.dirname(startup_path)}),
    )


def invokeai_rocm_pipeline(surface: ConfigSurface | None = None) -> PipelineDefinition:
    """The InvokeAI image for ROCm GPUs, entrypoint included."""
    surface = surface or default_surface()
    return PipelineDefinition(
        name="invokeai-rocm",
        stages=(web_builder_stage(), app_stage(surface)),
        final_stage=APP_STAGE,
        surface=surface,
        port_variable="INVOKEAI_PORT",
        entrypoint=("imageforge-entrypoint",),
        command=("invokeai-web",),
    )


PIPELINES: dict[str, Callable[[], PipelineDefinition]] = {
    "invokeai-rocm": invokeai_rocm_pipeline,
}


def get_pipeline(name: str) -> PipelineDefinition:
    try:
        factory = PIPELINES[name]
    except KeyError:
        raise KeyError(
            f"Unknown pipeline {name!r}; available: {', '.join(sorted(PIPELINES))}"
        ) from None
    return factory()
