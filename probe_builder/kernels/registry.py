"""Pipeline registry keyed by distribution family."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.coreos import CoreosPipeline
from probe_builder.kernels.custom import CustomPipeline
from probe_builder.kernels.debian import DebianPipeline
from probe_builder.kernels.pipeline import DistroPipeline
from probe_builder.kernels.rpm import RpmPipeline
from probe_builder.kernels.ubuntu import UbuntuPipeline
from probe_builder.types import Family

PIPELINES: dict[Family, type[DistroPipeline]] = {
    Family.UBUNTU: UbuntuPipeline,
    Family.DEBIAN: DebianPipeline,
    Family.CENTOS: RpmPipeline,
    Family.COREOS: CoreosPipeline,
}


def get_pipeline(family: Family, work_dir: Path, arch: str) -> DistroPipeline:
    """Return the pipeline of a regular family.

    Raises:
        ValueError: For the custom family, which needs get_custom_pipeline.
    """
    try:
        pipeline_cls = PIPELINES[family]
    except KeyError:
        raise ValueError(f"No pipeline registered for {family.value}") from None
    return pipeline_cls(work_dir, arch)


def get_custom_pipeline(
    base: Family,
    archives: Iterable[Path],
    work_dir: Path,
    arch: str,
    builder_override: str | None = None,
) -> CustomPipeline:
    """Return a pipeline for operator-supplied archives of a base family."""
    return CustomPipeline(
        get_pipeline(base, work_dir, arch),
        archives,
        builder_override=builder_override,
    )


__all__ = ["PIPELINES", "get_custom_pipeline", "get_pipeline"]
