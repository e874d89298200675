"""imageforge: cached multi-stage image builds with locked GPU dependencies.

Builds the InvokeAI ROCm image as a DAG of isolated stages:
  - Content-addressed package cache shared between builds
  - Dependency lock that keeps the base image's GPU wheels in place
  - Scoped configuration surface (build-time, overridable, locked)
  - Container entrypoint that remaps identity and fixes ownership
"""

__version__ = "0.1.0"

from imageforge.core.orchestrator import BuildOrchestrator
from imageforge.pipelines import get_pipeline
from imageforge.cli.app import app as cli

__all__ = ["BuildOrchestrator", "get_pipeline", "cli", "__version__"]
