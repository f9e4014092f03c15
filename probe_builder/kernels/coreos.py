"""CoreOS kernel pipeline.

CoreOS publishes a developer container disk image per release. The kernel
build tree and the shipped kernel config are copied out of the image; the
image itself is discarded afterwards. The build tree's .config may differ
from the shipped one, so both are hashed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.extract import (
    copy_path,
    decompress_bz2,
    mounted_image,
)
from probe_builder.kernels.filenames import FilenameParseError, parse_coreos_image
from probe_builder.kernels.pipeline import (
    DistroPipeline,
    KernelPackageSet,
    PipelineError,
    first_existing,
)
from probe_builder.types import BuildTarget, Family

logger = logging.getLogger(__name__)

# Locations inside the developer container image
IMAGE_MODULE_DIRS = ("usr/lib64/modules", "usr/lib/modules", "lib/modules")
IMAGE_CONFIG = "usr/boot/config"

ORIGINAL_CONFIG_NAME = "config_orig"
MODULES_DIR_NAME = "modules"


class CoreosPipeline(DistroPipeline):
    """Pipeline for CoreOS developer container images."""

    family = Family.COREOS
    builder_distro = "fedora"
    archive_suffixes = (".bin.bz2",)
    serial_fetch = True

    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        sets: list[KernelPackageSet] = []
        for archive in sorted(archives):
            try:
                image = parse_coreos_image(archive.name)
            except FilenameParseError as e:
                logger.warning("Ignoring %s: %s", archive.name, e)
                continue
            # The kernel release is only known once the image is unpacked
            sets.append(
                KernelPackageSet(
                    key=image.version,
                    kernel_release=None,
                    version_full=image.version,
                    archives=[archive],
                )
            )
        return sets

    def extract(self, archive: Path, dest_dir: Path) -> None:
        image = decompress_bz2(archive, dest_dir / archive.name.removesuffix(".bz2"))
        try:
            with mounted_image(image) as mnt:
                modules = first_existing(mnt / d for d in IMAGE_MODULE_DIRS)
                if modules is None:
                    raise PipelineError(
                        f"No kernel modules directory in {archive.name}",
                        code="missing_headers",
                    )
                for release_dir in sorted(modules.iterdir()):
                    build = release_dir / "build"
                    if build.exists():
                        copy_path(
                            build,
                            dest_dir / MODULES_DIR_NAME / release_dir.name / "build",
                        )
                copy_path(mnt / IMAGE_CONFIG, dest_dir / ORIGINAL_CONFIG_NAME)
        finally:
            image.unlink(missing_ok=True)

    def derive_target(self, package_set: KernelPackageSet, root: Path) -> BuildTarget:
        modules = root / MODULES_DIR_NAME
        releases = (
            sorted(d.name for d in modules.iterdir() if d.is_dir())
            if modules.is_dir()
            else []
        )
        if len(releases) != 1:
            raise PipelineError(
                f"Expected one kernel in CoreOS {package_set.version_full}, "
                f"found {len(releases)}",
                code="unexpected_layout",
            )

        release = releases[0]
        headers = modules / release / "build"
        return self._target(
            kernel_release=release,
            version_full=package_set.version_full,
            root=root,
            headers_path=headers,
            config_path=headers / ".config",
            orig_config_path=root / ORIGINAL_CONFIG_NAME,
        )


__all__ = ["CoreosPipeline"]
