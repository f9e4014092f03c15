"""Distribution pipeline base class.

A pipeline turns the kernel packages of one distribution family into build
targets in three steps:

1. unpack: idempotent extraction into a deterministic per-release directory
2. derive_target: kernel release, headers path and configuration hashes
3. prepare_headers: family-specific fixups of the unpacked tree

Errors in any step concern one target only; the run controller records them
and moves on to the next package set.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from probe_builder.kernels.extract import unpack_once
from probe_builder.types import BuildTarget, Family

logger = logging.getLogger(__name__)

# Mount point of the unpacked kernel tree inside the builder container
CONTAINER_KERNEL_ROOT = "/build/kernel"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class PipelineError(Exception):
    """Raised when an unpacked kernel does not have the expected layout."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class KernelPackageSet:
    """The archives that together make up one target kernel.

    Attributes:
        key: Directory-safe identifier of the per-release unpack directory.
        kernel_release: Release string, if known from the filenames.
        version_full: Full package version the archives belong to.
        archives: Archive paths, unpacked in order.
    """

    key: str
    kernel_release: str | None
    version_full: str
    archives: list[Path] = field(default_factory=list)

    @property
    def label(self) -> str:
        """Human-readable identifier."""
        return self.kernel_release or self.version_full


def compute_config_hash(config_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute the MD5 of a kernel configuration file.

    Args:
        config_path: Path to the .config file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        MD5 hex digest.

    Raises:
        PipelineError: If the file does not exist.
    """
    if not config_path.is_file():
        raise PipelineError(
            f"Kernel config not found: {config_path}",
            code="missing_config",
        )
    md5 = hashlib.md5()
    with config_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            md5.update(chunk)
    return md5.hexdigest()


def require_headers(headers_path: Path) -> Path:
    """Return headers_path if it is a directory, raise PipelineError otherwise."""
    if not headers_path.is_dir():
        raise PipelineError(
            f"Kernel headers not found: {headers_path}",
            code="missing_headers",
        )
    return headers_path


def first_existing(paths: Iterable[Path]) -> Path | None:
    """Return the first path that exists."""
    for path in paths:
        if path.exists():
            return path
    return None


class DistroPipeline(ABC):
    """Acquisition and normalization conventions of one distribution family."""

    family: ClassVar[Family]
    builder_distro: ClassVar[str]
    archive_suffixes: ClassVar[tuple[str, ...]]
    # Fetch with a single worker regardless of the configured concurrency
    serial_fetch: ClassVar[bool] = False

    def __init__(self, work_dir: Path, arch: str) -> None:
        self.work_dir = work_dir
        self.arch = arch

    @property
    def download_dir(self) -> Path:
        """Directory the family's archives are downloaded to."""
        return self.work_dir / self.family.value

    def discover_archives(self, directory: Path | None = None) -> list[Path]:
        """List the family's archives present on disk."""
        directory = directory or self.download_dir
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.is_file() and path.name.endswith(self.archive_suffixes)
        )

    def release_dir(self, package_set: KernelPackageSet) -> Path:
        """Deterministic unpack directory of a package set."""
        name = self.family.value
        return self.work_dir / name / f"{name}-{package_set.key}"

    @abstractmethod
    def group(self, archives: Iterable[Path]) -> list[KernelPackageSet]:
        """Group archives into one package set per target kernel.

        Archives whose names do not follow the family's convention are
        logged and left out.
        """

    @abstractmethod
    def extract(self, archive: Path, dest_dir: Path) -> None:
        """Extract one archive into dest_dir."""

    def unpack(self, package_set: KernelPackageSet) -> Path:
        """Unpack every archive of a set, skipping those already unpacked.

        Returns:
            The per-release directory holding the unpacked tree.
        """
        root = self.release_dir(package_set)
        for archive in package_set.archives:
            unpack_once(archive, root, self.extract)
        return root

    @abstractmethod
    def derive_target(self, package_set: KernelPackageSet, root: Path) -> BuildTarget:
        """Derive the build target from an unpacked package set.

        Raises:
            PipelineError: If headers or configuration are missing.
        """

    def prepare_headers(self, target: BuildTarget) -> None:
        """Apply family-specific fixups to the unpacked headers."""

    def prepare(self, package_set: KernelPackageSet) -> BuildTarget:
        """Run unpack, derive_target and prepare_headers for one set."""
        root = self.unpack(package_set)
        target = self.derive_target(package_set, root)
        self.prepare_headers(target)
        return target

    def _target(
        self,
        kernel_release: str,
        version_full: str,
        root: Path,
        headers_path: Path,
        config_path: Path,
        orig_config_path: Path | None = None,
    ) -> BuildTarget:
        """Build a target, hashing the configuration file(s)."""
        require_headers(headers_path)
        config_hash = compute_config_hash(config_path)
        orig_hash = (
            compute_config_hash(orig_config_path)
            if orig_config_path is not None
            else config_hash
        )
        return BuildTarget(
            family=self.family,
            kernel_release=kernel_release,
            kernel_version_full=version_full,
            arch=self.arch,
            config_hash=config_hash,
            orig_config_hash=orig_hash,
            headers_path=headers_path,
            source_root=root,
            builder_distro=self.builder_distro,
        )


__all__ = [
    "CONTAINER_KERNEL_ROOT",
    "DistroPipeline",
    "KernelPackageSet",
    "PipelineError",
    "compute_config_hash",
    "first_existing",
    "require_headers",
]
