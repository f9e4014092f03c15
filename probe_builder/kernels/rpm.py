"""RPM kernel pipeline (CentOS, RHEL, Fedora, Oracle UEK).

A target is the kernel-devel package of a release, optionally accompanied
by the kernel package itself, which carries /boot/config-<release>.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.extract import extract_rpm
from probe_builder.kernels.filenames import FilenameParseError, parse_rpm_package
from probe_builder.kernels.pipeline import (
    DistroPipeline,
    KernelPackageSet,
    first_existing,
)
from probe_builder.types import BuildTarget, Family

logger = logging.getLogger(__name__)


class RpmPipeline(DistroPipeline):
    """Pipeline for RPM-packaged kernels."""

    family = Family.CENTOS
    builder_distro = "centos"
    archive_suffixes = (".rpm",)

    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        by_release: dict[str, list[Path]] = defaultdict(list)
        has_devel: set[str] = set()

        for archive in archives:
            try:
                package = parse_rpm_package(archive.name)
            except FilenameParseError as e:
                logger.warning("Ignoring %s: %s", archive.name, e)
                continue
            by_release[package.release].append(archive)
            if package.is_devel:
                has_devel.add(package.release)

        sets: list[KernelPackageSet] = []
        for release, paths in sorted(by_release.items()):
            if release not in has_devel:
                logger.warning("No kernel-devel package for %s, skipping", release)
                continue
            sets.append(
                KernelPackageSet(
                    key=release,
                    kernel_release=release,
                    version_full=release,
                    archives=sorted(paths),
                )
            )
        return sets

    def extract(self, archive: Path, dest_dir: Path) -> None:
        extract_rpm(archive, dest_dir)

    def derive_target(self, package_set: KernelPackageSet, root: Path) -> BuildTarget:
        release = package_set.kernel_release or ""
        headers = root / "usr" / "src" / "kernels" / release
        config = first_existing(
            [
                headers / ".config",
                root / "boot" / f"config-{release}",
                root / "lib" / "modules" / release / "config",
            ]
        )
        return self._target(
            kernel_release=release,
            version_full=package_set.version_full,
            root=root,
            headers_path=headers,
            config_path=config or headers / ".config",
        )


__all__ = ["RpmPipeline"]
