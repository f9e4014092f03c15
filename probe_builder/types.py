"""Shared type definitions for probe_builder.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Family(str, Enum):
    """Distribution family sharing acquisition and unpacking conventions."""

    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    CENTOS = "centos"
    COREOS = "coreos"
    CUSTOM = "custom"


# Families crawled and built by an "all families" run
FETCHED_FAMILIES = (Family.UBUNTU, Family.CENTOS, Family.COREOS, Family.DEBIAN)


class BuildStatus(str, Enum):
    """Outcome of one target."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class BuildTarget:
    """One unit of work: a kernel to build the probe against.

    Attributes:
        family: Distribution family the kernel came from.
        kernel_release: Release string as reported by `uname -r`; used in
            artifact names and passed to the builder.
        kernel_version_full: Full package version the kernel was unpacked from.
        arch: Target architecture.
        config_hash: MD5 of the kernel's build configuration.
        orig_config_hash: MD5 of the configuration as shipped, which differs
            from config_hash only when the tree was reconfigured after unpack.
        headers_path: Kernel headers / build directory.
        source_root: Per-release directory the packages were unpacked into;
            headers_path lies inside it.
        builder_distro: Builder distro whose toolchain catalog applies.
        builder_override: Explicit builder variant bypassing version matching.
    """

    family: Family
    kernel_release: str
    kernel_version_full: str
    arch: str
    config_hash: str
    orig_config_hash: str
    headers_path: Path
    source_root: Path
    builder_distro: str
    builder_override: str | None = None

    @property
    def label(self) -> str:
        """Short human-readable identifier."""
        return f"{self.family.value} {self.kernel_release} [{self.config_hash}]"


@dataclass
class BuildOutcome:
    """Result of processing one target."""

    target: BuildTarget | None
    status: BuildStatus
    label: str
    log_excerpt: str = ""
    builder: str | None = None
    artifacts: list[str] = field(default_factory=list)


@dataclass
class FetchOutcome:
    """Result of one kernel package download."""

    family: Family
    url: str
    success: bool
    path: Path | None = None
    error: str | None = None


__all__ = [
    "BuildOutcome",
    "BuildStatus",
    "BuildTarget",
    "FETCHED_FAMILIES",
    "Family",
    "FetchOutcome",
]
