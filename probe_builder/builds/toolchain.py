"""Toolchain catalog and resolution.

This module handles:
- Discovering builder variants from Dockerfile.<distro>-gcc<version> files
- Reading the compiler version a kernel was built with
- Mapping that version to the closest available builder variant
- Deterministic image and container names per variant

Versions are compared numerically, component by component: 10.0 is newer
than 9.2.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from probe_builder.kernels.filenames import parse_compiler_version
from probe_builder.types import BuildTarget

logger = logging.getLogger(__name__)

DOCKERFILE_RE = re.compile(
    r"^Dockerfile\.(?P<distro>[a-z0-9_]+)-gcc(?P<version>\d+(?:\.\d+)*)$"
)

IMAGE_NAME = "probe-builder"

# Kernel build metadata recording the compiler, in lookup order
COMPILE_H = Path("include") / "generated" / "compile.h"
LINUX_COMPILER_RE = re.compile(r'^#define LINUX_COMPILER "(?P<banner>[^"]*)"', re.M)
CC_VERSION_TEXT_RE = re.compile(r'^CONFIG_CC_VERSION_TEXT="(?P<banner>[^"]*)"', re.M)
GCC_VERSION_RE = re.compile(r"^CONFIG_GCC_VERSION=(?P<packed>\d+)", re.M)

_CONTAINER_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class ToolchainError(Exception):
    """Raised when no builder can be chosen for a target."""

    def __init__(self, message: str, code: str = "toolchain_error") -> None:
        super().__init__(message)
        self.code = code


def version_key(version: str) -> tuple[int, ...]:
    """Return a dotted numeric version as a tuple of ints.

    Raises:
        ValueError: If a component is not numeric.
    """
    return tuple(int(part) for part in version.split("."))


def _comparable(required: tuple[int, ...], length: int) -> tuple[int, ...]:
    """Truncate or zero-pad a version key to a candidate's precision."""
    return (required + (0,) * length)[:length]


@dataclass(frozen=True)
class BuilderVariant:
    """A containerized toolchain pinned to one compiler version."""

    distro: str
    compiler_version: str
    dockerfile: Path

    @property
    def name(self) -> str:
        """Variant name, e.g. centos-gcc4.8."""
        return f"{self.distro}-gcc{self.compiler_version}"

    @property
    def key(self) -> tuple[int, ...]:
        """Numeric sort key."""
        return version_key(self.compiler_version)


@dataclass(frozen=True)
class ToolchainCatalog:
    """Builder variants of one base distro, ordered by compiler version."""

    distro: str
    variants: tuple[BuilderVariant, ...] = ()

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.variants, key=lambda v: v.key))
        object.__setattr__(self, "variants", ordered)

    @property
    def versions(self) -> list[str]:
        """Available compiler versions in ascending order."""
        return [v.compiler_version for v in self.variants]

    def get(self, name: str) -> BuilderVariant | None:
        """Look up a variant by name."""
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None

    def __len__(self) -> int:
        return len(self.variants)


def parse_dockerfile_name(filename: str) -> tuple[str, str] | None:
    """Return (distro, compiler version) of a builder definition filename."""
    match = DOCKERFILE_RE.match(filename)
    if not match:
        return None
    return match["distro"], match["version"]


def discover_variants(builder_dir: Path) -> list[BuilderVariant]:
    """List every builder variant defined in a directory."""
    if not builder_dir.is_dir():
        logger.warning("Builder directory does not exist: %s", builder_dir)
        return []

    variants: list[BuilderVariant] = []
    for path in sorted(builder_dir.iterdir()):
        parsed = parse_dockerfile_name(path.name)
        if parsed is None or not path.is_file():
            continue
        distro, version = parsed
        variants.append(
            BuilderVariant(distro=distro, compiler_version=version, dockerfile=path)
        )
    return variants


def load_catalog(builder_dir: Path, distro: str) -> ToolchainCatalog:
    """Load the catalog of one base distro.

    Args:
        builder_dir: Directory of builder definitions.
        distro: Base distro, e.g. centos.

    Returns:
        ToolchainCatalog, possibly empty.
    """
    variants = [v for v in discover_variants(builder_dir) if v.distro == distro]
    catalog = ToolchainCatalog(distro=distro, variants=tuple(variants))
    logger.debug("Toolchain catalog for %s: %s", distro, catalog.versions)
    return catalog


def select_version(required: str, candidates: Iterable[str]) -> str:
    """Pick the candidate compiler version closest to a required one.

    An exact match wins. Failing that, a candidate equal at its own
    precision matches (4.8 matches a required 4.8.5), the most precise one
    first. Otherwise the oldest newer candidate is taken, then the newest
    older one.

    Args:
        required: Dotted version the kernel was built with.
        candidates: Available dotted versions.

    Returns:
        The selected candidate.

    Raises:
        ToolchainError: If there are no candidates.
    """
    pool = sorted(set(candidates), key=version_key)
    if not pool:
        raise ToolchainError(
            f"No toolchain available for compiler {required}",
            code="empty_catalog",
        )

    wanted = version_key(required)
    for candidate in pool:
        key = version_key(candidate)
        width = max(len(key), len(wanted))
        if _comparable(key, width) == _comparable(wanted, width):
            return candidate

    older: list[str] = []
    newer: list[str] = []
    prefix: list[str] = []
    for candidate in pool:
        key = version_key(candidate)
        target = _comparable(wanted, len(key))
        if key == target:
            prefix.append(candidate)
        elif key < target:
            older.append(candidate)
        else:
            newer.append(candidate)

    if prefix:
        return max(prefix, key=lambda c: len(version_key(c)))
    if newer:
        return newer[0]
    return older[-1]


def resolve(required: str, catalog: ToolchainCatalog) -> BuilderVariant:
    """Map a compiler version to a builder variant of a catalog.

    Raises:
        ToolchainError: If the catalog is empty.
    """
    if not len(catalog):
        raise ToolchainError(
            f"No builders defined for {catalog.distro}",
            code="empty_catalog",
        )
    version = select_version(required, catalog.versions)
    for variant in catalog.variants:
        if variant.compiler_version == version:
            return variant
    # select_version only returns catalog versions
    raise ToolchainError(f"Lost track of {version}", code="internal_error")


def kernel_compiler_version(headers_path: Path) -> str:
    """Return the compiler version a kernel was built with.

    Looks at include/generated/compile.h, then the .config compiler
    banner, then the packed CONFIG_GCC_VERSION.

    Raises:
        ToolchainError: If none of them is present or readable.
    """
    compile_h = headers_path / COMPILE_H
    if compile_h.is_file():
        match = LINUX_COMPILER_RE.search(compile_h.read_text(errors="replace"))
        if match:
            version = parse_compiler_version(match["banner"])
            if version:
                return version

    config = headers_path / ".config"
    if config.is_file():
        text = config.read_text(errors="replace")
        match = CC_VERSION_TEXT_RE.search(text)
        if match:
            version = parse_compiler_version(match["banner"])
            if version:
                return version
        match = GCC_VERSION_RE.search(text)
        if match:
            version = parse_compiler_version(match["packed"])
            if version:
                return version

    raise ToolchainError(
        f"Cannot determine the compiler version of {headers_path}",
        code="compiler_unknown",
    )


def resolve_for_target(target: BuildTarget, catalog: ToolchainCatalog) -> BuilderVariant:
    """Choose the builder variant for a target.

    An explicit builder override wins; otherwise the kernel's own compiler
    version is matched against the catalog.

    Raises:
        ToolchainError: For an unknown override, an empty catalog or an
            undeterminable compiler version.
    """
    if target.builder_override:
        variant = catalog.get(target.builder_override)
        if variant is None:
            raise ToolchainError(
                f"Builder {target.builder_override} is not defined for {catalog.distro}",
                code="unknown_builder",
            )
        return variant

    if not len(catalog):
        raise ToolchainError(
            f"No builders defined for {catalog.distro}",
            code="empty_catalog",
        )

    required = kernel_compiler_version(target.headers_path)
    variant = resolve(required, catalog)
    logger.info(
        "Kernel %s built with gcc %s, using builder %s",
        target.kernel_release,
        required,
        variant.name,
    )
    return variant


def image_reference(variant: BuilderVariant, prefix: str | None = None) -> str:
    """Image tag of a variant, prefixed with a registry when pulling."""
    return f"{prefix or ''}{IMAGE_NAME}:{variant.name}"


def container_name(variant: BuilderVariant) -> str:
    """Deterministic container name of a variant."""
    return _CONTAINER_NAME_UNSAFE.sub("-", f"{IMAGE_NAME}-{variant.name}")


__all__ = [
    "BuilderVariant",
    "ToolchainCatalog",
    "ToolchainError",
    "container_name",
    "discover_variants",
    "image_reference",
    "kernel_compiler_version",
    "load_catalog",
    "parse_dockerfile_name",
    "resolve",
    "resolve_for_target",
    "select_version",
    "version_key",
]
