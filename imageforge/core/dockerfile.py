"""Render a ``PipelineDefinition`` as a multi-stage Dockerfile.

Each stage becomes a ``FROM <base> AS <name>`` block; artifact references
become ``COPY --from=``; a ``lock`` becomes a ``pip freeze`` into the
constraints file named by ``PIP_CONSTRAINT``; a ``write_file`` becomes a
heredoc ``COPY``; the configuration surface is emitted as ``ENV`` lines
at the top of the final stage.
"""

from __future__ import annotations

import json
import re
import shlex

from packaging.utils import canonicalize_name

from imageforge.core.config_resolver import ConfigResolver
from imageforge.core.stage_graph import StageGraph
from imageforge.models.config import ConfigScope
from imageforge.models.pipeline import PipelineDefinition
from imageforge.models.stages import BuildStage, Instruction, InstructionKind

_HEADER = "# syntax=docker/dockerfile:1"


def _quote_env(value: str) -> str:
    if value == "":
        return '""'
    if re.fullmatch(r"[A-Za-z0-9_./:,=+@${}-]+", value):
        return value
    return json.dumps(value)


def _freeze_filter(packages: tuple[str, ...]) -> str:
    names = "|".join(re.escape(canonicalize_name(p)) for p in packages)
    return f"pip freeze | grep -iE '^({names})==' > ${{PIP_CONSTRAINT}}"


def _heredoc_copy(path: str, content: str) -> str:
    # A quoted delimiter keeps ${...} in the content literal.
    delimiter = "IMAGEFORGE_EOF"
    while delimiter in content.splitlines():
        delimiter += "_"
    body = content if content.endswith("\n") or not content else content + "\n"
    return f'COPY <<"{delimiter}" {path}\n{body}{delimiter}'


def render_instruction(ins: Instruction) -> str:
    if ins.kind == InstructionKind.RUN:
        mounts = "".join(
            f"--mount=type=cache,target={target} " for target in ins.cache_mounts
        )
        return f"RUN {mounts}{ins.command}"
    if ins.kind == InstructionKind.ENV:
        return f"ENV {ins.name}={_quote_env(ins.value)}"
    if ins.kind == InstructionKind.WORKDIR:
        return f"WORKDIR {ins.path}"
    if ins.kind == InstructionKind.COPY_ARTIFACT:
        ref = ins.artifact
        if ref is None:
            raise ValueError("copy_artifact instruction has no artifact reference")
        return f"COPY --from={ref.producing_stage} {ref.source_path} {ref.dest_path}"
    if ins.kind == InstructionKind.LOCK:
        return f"RUN {_freeze_filter(ins.packages)}"
    if ins.kind == InstructionKind.INSTALL:
        args: list[str] = []
        for req in ins.requirements:
            args.extend(shlex.split(req) if req.startswith("-") else [req])
        return f"RUN pip install {shlex.join(args)}"
    if ins.kind == InstructionKind.WRITE_FILE:
        return _heredoc_copy(ins.path, ins.value)
    raise ValueError(f"Unsupported instruction kind: {ins.kind}")


def render_stage(stage: BuildStage, env_lines: list[str] | None = None) -> list[str]:
    lines = [f"FROM {stage.base_image} AS {stage.name}"]
    lines.extend(env_lines or [])
    lines.extend(render_instruction(ins) for ins in stage.instructions)
    return lines


def render_dockerfile(pipeline: PipelineDefinition) -> str:
    """Return Dockerfile text equivalent to *pipeline*.

    Build-time-only variables become ``ARG`` so they do not persist into
    the image; everything else becomes ``ENV``.
    """
    resolver = ConfigResolver(pipeline.surface)
    env_lines = []
    for var in pipeline.surface.variables:
        if var.scope == ConfigScope.BUILD_TIME:
            env_lines.append(f"ARG {var.name}={_quote_env(var.value)}")
        else:
            env_lines.append(f"ENV {var.name}={_quote_env(var.value)}")

    # The last FROM block is the image; every other stage precedes it.
    order = [n for n in StageGraph(pipeline.stages).topological_order()
             if n != pipeline.final_stage]
    order.append(pipeline.final_stage)

    blocks = [_HEADER, ""]
    for name in order:
        is_final = name == pipeline.final_stage
        blocks.extend(render_stage(pipeline.stage(name), env_lines if is_final else None))
        blocks.append("")

    if pipeline.port_variable:
        blocks.append(f"EXPOSE {resolver.build_environment()[pipeline.port_variable]}")
    if pipeline.entrypoint:
        blocks.append(f"ENTRYPOINT {json.dumps(list(pipeline.entrypoint))}")
    if pipeline.command:
        blocks.append(f"CMD {json.dumps(list(pipeline.command))}")
    return "\n".join(blocks) + "\n"
