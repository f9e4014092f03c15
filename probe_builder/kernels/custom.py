"""Custom kernel pipeline.

Operator-supplied archives that follow the conventions of one of the
regular families. Nothing is fetched; targets are labelled as custom and may
carry an explicit builder variant.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.pipeline import DistroPipeline, KernelPackageSet
from probe_builder.types import BuildTarget, Family


class CustomPipeline(DistroPipeline):
    """Pipeline delegating naming and layout to a base family."""

    family = Family.CUSTOM

    def __init__(
        self,
        base: DistroPipeline,
        archives: Iterable[Path],
        builder_override: str | None = None,
    ) -> None:
        super().__init__(base.work_dir, base.arch)
        self.base = base
        self.archives = [Path(a) for a in archives]
        self.builder_override = builder_override

    @property
    def builder_distro(self) -> str:  # type: ignore[override]
        return self.base.builder_distro

    @property
    def archive_suffixes(self) -> tuple[str, ...]:  # type: ignore[override]
        return self.base.archive_suffixes

    def discover_archives(self, directory: Path | None = None) -> list[Path]:
        return list(self.archives)

    def release_dir(self, package_set: KernelPackageSet) -> Path:
        return self.work_dir / "custom" / f"{self.base.family.value}-{package_set.key}"

    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        return self.base.group(archives)

    def extract(self, archive: Path, dest_dir: Path) -> None:
        self.base.extract(archive, dest_dir)

    def derive_target(self, package_set: KernelPackageSet, root: Path) -> BuildTarget:
        target = self.base.derive_target(package_set, root)
        return dataclasses.replace(
            target,
            family=Family.CUSTOM,
            builder_override=self.builder_override,
        )

    def prepare_headers(self, target: BuildTarget) -> None:
        self.base.prepare_headers(target)


__all__ = ["CustomPipeline"]
