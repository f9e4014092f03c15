"""Build module.

This module handles:
- Artifact naming and the existence-based skip gate
- Toolchain catalogs and compiler version resolution
- Containerized build execution
- The run controller and failure report
"""

from probe_builder.builds.cache_key import ArtifactKey, is_built, list_artifacts
from probe_builder.builds.runner import BuildExecutionError, BuildResult, run_build
from probe_builder.builds.service import (
    RunContext,
    render_failure_report,
    run,
    run_custom,
)
from probe_builder.builds.toolchain import (
    BuilderVariant,
    ToolchainCatalog,
    ToolchainError,
    load_catalog,
    resolve,
)

__all__ = [
    "ArtifactKey",
    "BuildExecutionError",
    "BuildResult",
    "BuilderVariant",
    "RunContext",
    "ToolchainCatalog",
    "ToolchainError",
    "is_built",
    "list_artifacts",
    "load_catalog",
    "render_failure_report",
    "resolve",
    "run",
    "run_custom",
]
