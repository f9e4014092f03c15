"""Debian kernel pipeline.

Debian splits a kernel's build tree across three packages: the flavor
headers (linux-headers-R-amd64), the shared headers (linux-headers-R-common)
and the build scripts (linux-kbuild-M.m). The flavor Makefile includes the
common one by its absolute install path under /usr/src, so after unpacking
that path is rewritten to where the tree is mounted in the builder.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from probe_builder.kernels.extract import extract_deb
from probe_builder.kernels.filenames import FilenameParseError, parse_debian_package
from probe_builder.kernels.pipeline import (
    CONTAINER_KERNEL_ROOT,
    DistroPipeline,
    KernelPackageSet,
)
from probe_builder.types import BuildTarget, Family

logger = logging.getLogger(__name__)

ORIGINAL_MAKEFILE_SUFFIX = ".orig"
KBUILD_TREES = ("scripts", "tools")


class DebianPipeline(DistroPipeline):
    """Pipeline for Debian .deb kernels."""

    family = Family.DEBIAN
    builder_distro = "debian"
    archive_suffixes = (".deb",)

    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        flavored: dict[tuple[str, str, str], list[Path]] = defaultdict(list)
        shared: dict[str, list[Path]] = defaultdict(list)

        for archive in archives:
            try:
                package = parse_debian_package(archive.name)
            except FilenameParseError as e:
                logger.warning("Ignoring %s: %s", archive.name, e)
                continue
            if package.is_kbuild or package.is_common or package.flavor is None:
                shared[package.package_version].append(archive)
            else:
                key = (package.package_version, package.release, package.flavor)
                flavored[key].append(archive)

        sets: list[KernelPackageSet] = []
        for (version, release, flavor), paths in sorted(flavored.items()):
            sets.append(
                KernelPackageSet(
                    key=version,
                    kernel_release=f"{release}-{flavor}",
                    version_full=version,
                    archives=sorted(shared.get(version, [])) + sorted(paths),
                )
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

    def prepare_headers(self, target: BuildTarget) -> None:
        patch_makefile(target.headers_path / "Makefile")
        link_kbuild_trees(target.source_root)


def patch_makefile(makefile: Path, mount_root: str = CONTAINER_KERNEL_ROOT) -> bool:
    """Point a flavor Makefile's /usr/src references into the mounted tree.

    The unmodified file is kept beside it with a .orig suffix; its presence
    marks the patch as applied.

    Args:
        makefile: Flavor headers Makefile.
        mount_root: Where the unpacked tree is mounted in the builder.

    Returns:
        True if the file was patched, False if it already was or has no
        /usr/src references.
    """
    original = makefile.with_name(makefile.name + ORIGINAL_MAKEFILE_SUFFIX)
    if original.exists() or not makefile.is_file():
        return False

    content = makefile.read_text(encoding="utf-8", errors="surrogateescape")
    if "/usr/src/" not in content:
        return False

    shutil.copy2(makefile, original)
    patched = content.replace("/usr/src/", f"{mount_root.rstrip('/')}/usr/src/")
    makefile.write_text(patched, encoding="utf-8", errors="surrogateescape")
    logger.info("Patched %s", makefile)
    return True


def link_kbuild_trees(root: Path) -> list[Path]:
    """Link linux-kbuild scripts/tools into common headers missing them.

    Returns:
        The links created.
    """
    created: list[Path] = []
    kbuild_dirs = sorted((root / "usr" / "lib").glob("linux-kbuild-*"))
    if not kbuild_dirs:
        return created

    for common in sorted((root / "usr" / "src").glob("linux-headers-*-common")):
        for tree in KBUILD_TREES:
            link = common / tree
            source = kbuild_dirs[-1] / tree
            if link.exists() or link.is_symlink() or not source.is_dir():
                continue
            link.symlink_to(os.path.relpath(source, common))
            created.append(link)
            logger.debug("Linked %s -> %s", link, source)
    return created


__all__ = ["DebianPipeline", "link_kbuild_trees", "patch_makefile"]
