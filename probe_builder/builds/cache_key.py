"""Artifact naming and the build skip gate.

An artifact is identified by probe name, probe version, architecture,
kernel release and kernel config hash. The config hash rather than the
release alone is what keys the cache: distributions occasionally rebuild a
release with a different configuration.

There is no index. Whether a target is built is decided by looking at the
output directory before every attempt, so an interrupted run leaves nothing
that a later run would mistake for a finished artifact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from probe_builder.types import BuildTarget

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".ko"


@dataclass(frozen=True)
class ArtifactKey:
    """Identity of one built probe.

    Attributes:
        probe_name: Name of the kernel module.
        probe_version: Version of the kernel module.
        arch: Target architecture.
        kernel_release: Kernel release string.
        config_hash: Kernel config hash the module was built against.
    """

    probe_name: str
    probe_version: str
    arch: str
    kernel_release: str
    config_hash: str

    @property
    def filename(self) -> str:
        """Artifact filename."""
        return (
            f"{self.probe_name}-{self.probe_version}-{self.arch}-"
            f"{self.kernel_release}-{self.config_hash}{ARTIFACT_SUFFIX}"
        )

    def path(self, output_dir: Path) -> Path:
        """Artifact location in an output directory."""
        return output_dir / self.filename


def artifact_keys(
    target: BuildTarget,
    probe_name: str,
    probe_version: str,
) -> list[ArtifactKey]:
    """Return the artifacts a target is expected to produce.

    One per distinct config hash: the primary hash, and the original hash
    when it differs.
    """
    hashes = [target.config_hash]
    if target.orig_config_hash != target.config_hash:
        hashes.append(target.orig_config_hash)
    return [
        ArtifactKey(
            probe_name=probe_name,
            probe_version=probe_version,
            arch=target.arch,
            kernel_release=target.kernel_release,
            config_hash=config_hash,
        )
        for config_hash in hashes
    ]


def missing_artifacts(
    target: BuildTarget,
    output_dir: Path,
    probe_name: str,
    probe_version: str,
) -> list[ArtifactKey]:
    """Return the expected artifacts not present in the output directory."""
    return [
        key
        for key in artifact_keys(target, probe_name, probe_version)
        if not key.path(output_dir).is_file()
    ]


def is_built(
    target: BuildTarget,
    output_dir: Path,
    probe_name: str,
    probe_version: str,
) -> bool:
    """Whether artifacts for both config hashes already exist.

    Args:
        target: Build target.
        output_dir: Artifact directory.
        probe_name: Name of the kernel module.
        probe_version: Version of the kernel module.

    Returns:
        True if the target can be skipped.
    """
    missing = missing_artifacts(target, output_dir, probe_name, probe_version)
    if missing:
        logger.debug(
            "%s needs building, missing %s",
            target.label,
            ", ".join(k.filename for k in missing),
        )
        return False
    return True


def list_artifacts(output_dir: Path) -> list[Path]:
    """List artifacts in an output directory."""
    if not output_dir.is_dir():
        return []
    return sorted(output_dir.glob(f"*{ARTIFACT_SUFFIX}"))


__all__ = [
    "ARTIFACT_SUFFIX",
    "ArtifactKey",
    "artifact_keys",
    "is_built",
    "list_artifacts",
    "missing_artifacts",
]
