"""Ubuntu kernel pipeline.

Ubuntu ships a kernel as a flavor-independent headers package
(linux-headers-R_R.U_all.deb) plus per-flavor headers and image packages
(linux-headers-R-generic_R.U_amd64.deb). Every flavor becomes its own target;
all flavors of one release/update share an unpack directory.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.extract import extract_deb
from probe_builder.kernels.filenames import FilenameParseError, parse_ubuntu_package
from probe_builder.kernels.pipeline import DistroPipeline, KernelPackageSet
from probe_builder.types import BuildTarget, Family

logger = logging.getLogger(__name__)


class UbuntuPipeline(DistroPipeline):
    """Pipeline for Ubuntu .deb kernels."""

    family = Family.UBUNTU
    builder_distro = "ubuntu"
    archive_suffixes = (".deb",)

    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        flavored: dict[tuple[str, str, str], list[Path]] = defaultdict(list)
        common: dict[tuple[str, str], list[Path]] = defaultdict(list)

        for archive in archives:
            try:
                package = parse_ubuntu_package(archive.name)
            except FilenameParseError as e:
                logger.warning("Ignoring %s: %s", archive.name, e)
                continue
            if package.flavor is None:
                common[(package.release, package.update)].append(archive)
            else:
                flavored[(package.release, package.update, package.flavor)].append(
                    archive
                )

        sets: list[KernelPackageSet] = []
        for (release, update, flavor), paths in sorted(flavored.items()):
            # Common headers first: the flavor tree links into it
            shared = common.get((release, update), [])
            sets.append(
                KernelPackageSet(
                    key=f"{release}-{update}",
                    kernel_release=f"{release}-{flavor}",
                    version_full=f"{release}.{update}",
                    archives=sorted(shared) + sorted(paths),
                )
            )

        orphans = set(common) - {(r, u) for r, u, _ in flavored}
        for release, update in sorted(orphans):
            logger.warning(
                "No flavor packages for Ubuntu %s.%s, ignoring common headers",
                release,
                update,
            )
        return sets

    def extract(self, archive: Path, dest_dir: Path) -> None:
        extract_deb(archive, dest_dir)

    def derive_target(self, package_set: KernelPackageSet, root: Path) -> BuildTarget:
        release = package_set.kernel_release or ""
        headers = root / "usr" / "src" / f"linux-headers-{release}"
        return self._target(
            kernel_release=release,
            version_full=package_set.version_full,
            root=root,
            headers_path=headers,
            config_path=headers / ".config",
        )


__all__ = ["UbuntuPipeline"]
