"""Kernel acquisition module.

This module handles:
- Downloading kernel packages with bounded concurrency
- Parsing distribution-specific package filenames
- Unpacking packages idempotently into per-release directories
- Deriving build targets (release, headers, config hashes) per family
"""

from probe_builder.kernels.fetch import DownloadError, fetch_kernels, read_url_list
from probe_builder.kernels.filenames import FilenameParseError
from probe_builder.kernels.pipeline import (
    DistroPipeline,
    KernelPackageSet,
    PipelineError,
)
from probe_builder.kernels.registry import (
    PIPELINES,
    get_custom_pipeline,
    get_pipeline,
)

__all__ = [
    "PIPELINES",
    "DistroPipeline",
    "DownloadError",
    "FilenameParseError",
    "KernelPackageSet",
    "PipelineError",
    "fetch_kernels",
    "get_custom_pipeline",
    "get_pipeline",
    "read_url_list",
]
