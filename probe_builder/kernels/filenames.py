"""Kernel package filename parsers.

One small parser per naming convention. Each returns a frozen dataclass
describing the package or raises FilenameParseError; none of them return
partial results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


class FilenameParseError(ValueError):
    """Raised when a filename does not follow its family's convention."""

    def __init__(self, filename: str, convention: str, code: str = "parse_error"):
        super().__init__(f"{filename!r} is not a valid {convention} filename")
        self.filename = filename
        self.convention = convention
        self.code = code


UBUNTU_PACKAGE_RE = re.compile(
    r"^(?P<package>linux(?:-[a-z0-9.]+)*?-"
    r"(?:headers|image|image-unsigned|modules|modules-extra))"
    r"-(?P<release>\d+\.\d+\.\d+-\d+)"
    r"(?:-(?P<flavor>[a-z][a-z0-9-]*))?"
    r"_(?P=release)\.(?P<update>\d+)[^_]*"
    r"_(?P<arch>[a-z0-9]+)\.deb$"
)

DEBIAN_PACKAGE_RE = re.compile(
    r"^(?P<package>linux-(?:headers|image))"
    r"-(?P<release>\d+\.\d+\.\d+-(?:\d+\.bpo\.)?\d+)"
    r"-(?P<flavor>[a-z0-9][a-z0-9-]*?)(?:-unsigned)?"
    r"_(?P<version>[^_]+)_(?P<arch>[a-z0-9]+)\.deb$"
)

DEBIAN_KBUILD_RE = re.compile(
    r"^linux-kbuild-(?P<series>\d+\.\d+)_(?P<version>[^_]+)_(?P<arch>[a-z0-9]+)\.deb$"
)

# Longest prefix first so kernel-devel- never matches as kernel-
RPM_PREFIXES = (
    "kernel-uek-devel-",
    "kernel-devel-",
    "kernel-core-",
    "kernel-uek-",
    "kernel-",
)

COREOS_IMAGE_RE = re.compile(
    r"^coreos_developer_container\.(?P<version>\d+(?:\.\d+)*)\.bin\.bz2$"
)

COMPILER_BANNER_RES = (
    re.compile(r"gcc version (?P<version>\d+(?:\.\d+)+)"),
    re.compile(r"gcc(?:-\d+)? \([^)]*\) (?P<version>\d+(?:\.\d+)+)"),
)


@dataclass(frozen=True)
class UbuntuPackage:
    """A parsed Ubuntu kernel .deb filename."""

    package: str
    release: str
    update: str
    flavor: str | None
    arch: str

    @property
    def full_version(self) -> str:
        """Release including flavor, e.g. 3.13.0-24-generic."""
        if self.flavor:
            return f"{self.release}-{self.flavor}"
        return self.release

    @property
    def is_common(self) -> bool:
        """Whether this is the flavor-independent headers package."""
        return self.flavor is None


@dataclass(frozen=True)
class DebianPackage:
    """A parsed Debian kernel .deb filename."""

    package: str
    release: str
    flavor: str | None
    package_version: str
    arch: str

    @property
    def full_version(self) -> str:
        """Release including flavor, e.g. 4.9.0-8-amd64."""
        if self.flavor:
            return f"{self.release}-{self.flavor}"
        return self.release

    @property
    def is_kbuild(self) -> bool:
        """Whether this is the linux-kbuild package."""
        return self.package == "linux-kbuild"

    @property
    def is_common(self) -> bool:
        """Whether this is the flavor-independent headers package."""
        return self.flavor == "common"


@dataclass(frozen=True)
class RpmPackage:
    """A parsed kernel RPM filename."""

    package: str
    release: str

    @property
    def is_devel(self) -> bool:
        """Whether the package carries the kernel build tree."""
        return self.package.endswith("-devel")


@dataclass(frozen=True)
class CoreosImage:
    """A parsed CoreOS developer container image filename."""

    version: str


def parse_ubuntu_package(filename: str) -> UbuntuPackage:
    """Parse an Ubuntu kernel package filename.

    Args:
        filename: Basename such as
            linux-image-3.13.0-24-generic_3.13.0-24.47_amd64.deb.

    Returns:
        UbuntuPackage with release, update, flavor and arch.

    Raises:
        FilenameParseError: If the name does not follow the convention.
    """
    match = UBUNTU_PACKAGE_RE.match(filename)
    if not match:
        raise FilenameParseError(filename, "Ubuntu kernel package")
    return UbuntuPackage(
        package=match["package"],
        release=match["release"],
        update=match["update"],
        flavor=match["flavor"],
        arch=match["arch"],
    )


def parse_debian_package(filename: str) -> DebianPackage:
    """Parse a Debian kernel package filename.

    Handles linux-headers-*, linux-image-* (signed and unsigned) and
    linux-kbuild-M.m packages.

    Raises:
        FilenameParseError: If the name does not follow the convention.
    """
    match = DEBIAN_KBUILD_RE.match(filename)
    if match:
        return DebianPackage(
            package="linux-kbuild",
            release=match["series"],
            flavor=None,
            package_version=match["version"],
            arch=match["arch"],
        )
    match = DEBIAN_PACKAGE_RE.match(filename)
    if not match:
        raise FilenameParseError(filename, "Debian kernel package")
    return DebianPackage(
        package=match["package"],
        release=match["release"],
        flavor=match["flavor"],
        package_version=match["version"],
        arch=match["arch"],
    )


def parse_rpm_package(filename: str) -> RpmPackage:
    """Parse a kernel RPM filename.

    The release is the basename with the kernel package prefix and the
    .rpm suffix removed, e.g. kernel-devel-3.10.0-123.el7.x86_64.rpm gives
    3.10.0-123.el7.x86_64.

    Raises:
        FilenameParseError: If the name does not follow the convention.
    """
    if not filename.endswith(".rpm"):
        raise FilenameParseError(filename, "kernel RPM")
    stem = filename[: -len(".rpm")]
    for prefix in RPM_PREFIXES:
        if stem.startswith(prefix):
            release = stem[len(prefix) :]
            if release[:1].isdigit():
                return RpmPackage(package=prefix.rstrip("-"), release=release)
    raise FilenameParseError(filename, "kernel RPM")


def parse_coreos_image(filename: str) -> CoreosImage:
    """Parse a CoreOS developer container image filename.

    Raises:
        FilenameParseError: If the name does not follow the convention.
    """
    match = COREOS_IMAGE_RE.match(filename)
    if not match:
        raise FilenameParseError(filename, "CoreOS developer container")
    return CoreosImage(version=match["version"])


def coreos_image_filename(version: str) -> str:
    """Return the local filename a CoreOS image of a version is stored under."""
    return f"coreos_developer_container.{version}.bin.bz2"


def parse_compiler_version(text: str) -> str | None:
    """Extract a dotted compiler version from kernel build metadata.

    Accepts a compiler banner ("gcc version 4.8.5 (GCC)",
    "gcc (Debian 8.3.0-6) 8.3.0") or a packed CONFIG_GCC_VERSION value
    (80300 means 8.3.0).

    Returns:
        Dotted version string, or None if nothing recognizable was found.
    """
    for pattern in COMPILER_BANNER_RES:
        match = pattern.search(text)
        if match:
            return match["version"]

    packed = text.strip().strip('"')
    if packed.isdigit() and len(packed) >= 5:
        number = int(packed)
        return f"{number // 10000}.{number // 100 % 100}.{number % 100}"

    return None


__all__ = [
    "CoreosImage",
    "DebianPackage",
    "FilenameParseError",
    "RpmPackage",
    "UbuntuPackage",
    "coreos_image_filename",
    "parse_compiler_version",
    "parse_coreos_image",
    "parse_debian_package",
    "parse_rpm_package",
    "parse_ubuntu_package",
]
