"""Archive extraction helpers.

Kernel packages are unpacked with the distribution's own tools (dpkg-deb,
rpm2cpio/cpio, a loop mount for CoreOS images), invoked as subprocesses with
list arguments. Every extraction is guarded by a per-archive marker file so
that unpacking the same archive twice is a no-op.
"""

from __future__ import annotations

import bz2
import json
import logging
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Chunk size for streaming decompression (bytes)
DECOMPRESS_CHUNK_SIZE = 1024 * 1024

# Default sector size when the partition table does not report one
SECTOR_SIZE = 512


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        """Initialize ExtractionError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


Extractor = Callable[[Path, Path], None]


def marker_path(dest_dir: Path, archive: Path) -> Path:
    """Return the marker file recording that an archive was unpacked."""
    return dest_dir / f".{archive.name}.unpacked"


def unpack_once(archive: Path, dest_dir: Path, extractor: Extractor) -> bool:
    """Unpack an archive unless its marker says it already was.

    The marker is written only after the extractor returns, so an
    interrupted extraction is redone on the next run.

    Args:
        archive: Archive to unpack.
        dest_dir: Per-release directory receiving the contents.
        extractor: Callable doing the actual extraction.

    Returns:
        True if the archive was extracted, False if it was skipped.
    """
    marker = marker_path(dest_dir, archive)
    if marker.exists():
        logger.debug("Already unpacked %s in %s", archive.name, dest_dir)
        return False

    dest_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Unpacking %s to %s", archive.name, dest_dir)
    extractor(archive, dest_dir)
    marker.touch()
    return True


def _run(cmd: Sequence[str], cwd: Path | None = None) -> str:
    """Run an extraction tool, raising ExtractionError on failure."""
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            list(cmd),
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise ExtractionError(
            f"Failed to run {cmd[0]}: {e}",
            code="tool_missing",
        ) from e

    if result.returncode != 0:
        raise ExtractionError(
            f"{cmd[0]} failed with exit code {result.returncode}: {result.stderr.strip()}",
            code="tool_error",
        )
    return result.stdout


def extract_deb(archive: Path, dest_dir: Path) -> None:
    """Extract the data of a .deb package into dest_dir."""
    _run(["dpkg-deb", "-x", str(archive), str(dest_dir)])


def extract_rpm(archive: Path, dest_dir: Path) -> None:
    """Extract the payload of an RPM package into dest_dir."""
    try:
        with subprocess.Popen(
            ["rpm2cpio", str(archive.resolve())],
            stdout=subprocess.PIPE,
        ) as rpm2cpio:
            cpio = subprocess.run(
                ["cpio", "-idm", "--quiet"],
                stdin=rpm2cpio.stdout,
                cwd=dest_dir,
                capture_output=True,
                text=True,
                check=False,
            )
            if rpm2cpio.stdout is not None:
                rpm2cpio.stdout.close()
            rpm2cpio_code = rpm2cpio.wait()
    except OSError as e:
        raise ExtractionError(
            f"Failed to extract {archive.name}: {e}",
            code="tool_missing",
        ) from e

    if rpm2cpio_code != 0 or cpio.returncode != 0:
        raise ExtractionError(
            f"Failed to extract {archive.name}: {cpio.stderr.strip()}",
            code="tool_error",
        )


def decompress_bz2(archive: Path, dest_path: Path) -> Path:
    """Decompress a .bz2 file, leaving the original in place."""
    logger.info("Decompressing %s", archive.name)
    try:
        with bz2.open(archive, "rb") as src, dest_path.open("wb") as dst:
            shutil.copyfileobj(src, dst, DECOMPRESS_CHUNK_SIZE)
    except (OSError, EOFError) as e:
        dest_path.unlink(missing_ok=True)
        raise ExtractionError(
            f"Failed to decompress {archive.name}: {e}",
            code="decompress_error",
        ) from e
    return dest_path


def partition_offset(image: Path) -> int:
    """Return the byte offset of the first partition of a disk image."""
    output = _run(["sfdisk", "--json", str(image)])
    try:
        table = json.loads(output)["partitiontable"]
        start = int(table["partitions"][0]["start"])
        sector_size = int(table.get("sectorsize", SECTOR_SIZE))
    except (ValueError, KeyError, IndexError) as e:
        raise ExtractionError(
            f"Unreadable partition table in {image.name}",
            code="partition_error",
        ) from e
    return start * sector_size


@contextmanager
def mounted_image(image: Path, offset: int | None = None) -> Iterator[Path]:
    """Mount a disk image read-only through a loop device.

    Args:
        image: Raw disk image.
        offset: Byte offset of the filesystem; read from the partition
            table when not given.

    Yields:
        Mount point of the image.

    Raises:
        ExtractionError: If mounting fails.
    """
    if offset is None:
        offset = partition_offset(image)

    with tempfile.TemporaryDirectory(prefix="probe-builder-mnt-") as mnt:
        _run(["mount", "-o", f"loop,ro,offset={offset}", str(image), mnt])
        try:
            yield Path(mnt)
        finally:
            _run(["umount", mnt])


def copy_path(source: Path, dest: Path) -> None:
    """Copy a file or tree, following symlinks, preserving attributes."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    _run(["cp", "-aL", str(source), str(dest)])


__all__ = [
    "ExtractionError",
    "copy_path",
    "decompress_bz2",
    "extract_deb",
    "extract_rpm",
    "marker_path",
    "mounted_image",
    "partition_offset",
    "unpack_once",
]
