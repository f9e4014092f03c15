"""Containerized build runner.

This module handles:
- Building or pulling toolchain images, at most once per run per image
- Composing the `docker run` invocation and its environment
- Removing stale containers left by a crashed previous run
- Executing builds with combined output captured to a transient log
- Pruning dangling images after an image build
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
from collections import deque
from collections.abc import MutableSet
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from probe_builder.builds.toolchain import BuilderVariant
from probe_builder.kernels.pipeline import CONTAINER_KERNEL_ROOT
from probe_builder.types import BuildTarget

logger = logging.getLogger(__name__)

# Mount points inside the builder container
CONTAINER_PROBE_DIR = "/build/probe"
CONTAINER_OUTPUT_DIR = "/build/output"

# Timeout for housekeeping commands (seconds)
HOUSEKEEPING_TIMEOUT = 120


class BuildExecutionError(Exception):
    """Raised when a build or image operation cannot be carried out."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class BuildResult:
    """Result of a containerized build.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Container exit code.
        log_path: Path to the transient build log.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


def probe_device_name(probe_name: str) -> str:
    """Device name of a probe: its name up to the first dash."""
    return probe_name.split("-", 1)[0]


def compose_environment(
    target: BuildTarget,
    probe_name: str,
    probe_version: str,
) -> dict[str, str]:
    """Compose the environment passed to the builder container.

    Args:
        target: Build target.
        probe_name: Name of the kernel module.
        probe_version: Version of the kernel module.

    Returns:
        Environment variables, with paths as seen inside the container.
    """
    headers = target.headers_path.relative_to(target.source_root).as_posix()
    return {
        "PROBE_NAME": probe_name,
        "PROBE_VERSION": probe_version,
        "PROBE_DEVICE_NAME": probe_device_name(probe_name),
        "OUTPUT": CONTAINER_OUTPUT_DIR,
        "KERNELDIR": f"{CONTAINER_KERNEL_ROOT}/{headers}",
        "KERNEL_RELEASE": target.kernel_release,
        "HASH": target.config_hash,
        "HASH_ORIG": target.orig_config_hash,
        "ARCH": target.arch,
    }


def compose_run_command(
    target: BuildTarget,
    image: str,
    name: str,
    probe_source_dir: Path,
    output_dir: Path,
    env: dict[str, str],
    docker: str = "docker",
) -> list[str]:
    """Compose the `docker run` command for one build.

    The probe source and the unpacked kernel tree are mounted read/write,
    the output directory receives the artifacts.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [docker, "run", "--rm", "--privileged", "--name", name]
    cmd += ["-v", f"{probe_source_dir.resolve()}:{CONTAINER_PROBE_DIR}"]
    cmd += ["-v", f"{target.source_root.resolve()}:{CONTAINER_KERNEL_ROOT}"]
    cmd += ["-v", f"{output_dir.resolve()}:{CONTAINER_OUTPUT_DIR}"]
    for key, value in sorted(env.items()):
        cmd += ["-e", f"{key}={value}"]
    cmd.append(image)
    return cmd


def compose_image_command(
    variant: BuilderVariant,
    image: str,
    pull: bool,
    docker: str = "docker",
) -> list[str]:
    """Compose the command that makes a toolchain image available."""
    if pull:
        return [docker, "pull", image]
    return [
        docker,
        "build",
        "-t",
        image,
        "-f",
        str(variant.dockerfile),
        str(variant.dockerfile.parent),
    ]


def _housekeeping(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    """Run a short container runtime command."""
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=HOUSEKEEPING_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise BuildExecutionError(
            f"Failed to run {shlex.join(cmd)}: {e}",
            code="execution_error",
        ) from e


def remove_stale_container(name: str, docker: str = "docker") -> None:
    """Force-remove a container of the given name if one exists."""
    result = _housekeeping([docker, "rm", "-f", name])
    if result.returncode == 0:
        logger.debug("Removed stale container %s", name)


def prune_dangling_images(docker: str = "docker") -> None:
    """Remove untagged images left behind by rebuilt tags."""
    result = _housekeeping([docker, "image", "prune", "-f"])
    if result.returncode != 0:
        logger.warning("Failed to prune dangling images: %s", result.stderr.strip())


def ensure_image(
    variant: BuilderVariant,
    image: str,
    built_images: MutableSet[str],
    pull: bool = False,
    docker: str = "docker",
) -> bool:
    """Build or pull a toolchain image unless this run already did.

    Args:
        variant: Builder variant the image is made from.
        image: Image reference.
        built_images: Images made available so far in this run; updated.
        pull: Pull from a registry instead of building.
        docker: Container runtime executable.

    Returns:
        True if the image was built or pulled, False if memoized.

    Raises:
        BuildExecutionError: If the build or pull fails.
    """
    if image in built_images:
        return False

    cmd = compose_image_command(variant, image, pull, docker)
    logger.info("%s toolchain image %s", "Pulling" if pull else "Building", image)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to run {docker}: {e}",
            code="execution_error",
        ) from e

    if result.returncode != 0:
        raise BuildExecutionError(
            f"Could not make image {image} available: {result.stderr.strip()}",
            exit_code=result.returncode,
            code="image_error",
        )

    built_images.add(image)
    if not pull:
        prune_dangling_images(docker)
    return True


def run_build(
    target: BuildTarget,
    image: str,
    name: str,
    probe_name: str,
    probe_version: str,
    probe_source_dir: Path,
    output_dir: Path,
    docker: str = "docker",
    timeout: int | None = None,
    log_dir: Path | None = None,
) -> BuildResult:
    """Execute one containerized build.

    Args:
        target: Build target.
        image: Toolchain image reference.
        name: Container name.
        probe_name: Name of the kernel module.
        probe_version: Version of the kernel module.
        probe_source_dir: Module source tree.
        output_dir: Artifact directory.
        docker: Container runtime executable.
        timeout: Build timeout in seconds (None = no timeout).
        log_dir: Directory for the transient log (system default if None).

    Returns:
        BuildResult with execution details.

    Raises:
        BuildExecutionError: If the build times out or cannot be started.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    remove_stale_container(name, docker)

    env = compose_environment(target, probe_name, probe_version)
    cmd = compose_run_command(
        target, image, name, probe_source_dir, output_dir, env, docker
    )
    cmd_str = shlex.join(cmd)
    logger.info("Building %s with %s", target.label, image)
    logger.debug("Executing: %s", cmd_str)

    with tempfile.NamedTemporaryFile(
        mode="w",
        prefix="probe-build-",
        suffix=".log",
        dir=log_dir,
        delete=False,
    ) as log_file:
        log_path = Path(log_file.name)
        started_at = datetime.now(timezone.utc)
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            result = subprocess.run(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
            remove_stale_container(name, docker)
            raise BuildExecutionError(
                f"Build timed out after {timeout} seconds",
                exit_code=-1,
                code="build_timeout",
                log_path=log_path,
            ) from e
        except OSError as e:
            raise BuildExecutionError(
                f"Failed to execute build: {e}",
                code="execution_error",
                log_path=log_path,
            ) from e

        finished_at = datetime.now(timezone.utc)
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {result.returncode}\n")

    success = result.returncode == 0
    error_message = None
    if not success:
        error_message = f"Build failed with exit code {result.returncode}"
        logger.error("%s: %s", target.label, error_message)

    return BuildResult(
        success=success,
        exit_code=result.returncode,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def read_log_excerpt(log_path: Path, max_lines: int) -> str:
    """Return the last max_lines lines of a log."""
    if not log_path.is_file():
        return ""
    with log_path.open(encoding="utf-8", errors="replace") as f:
        return "".join(deque(f, maxlen=max_lines))


__all__ = [
    "CONTAINER_OUTPUT_DIR",
    "CONTAINER_PROBE_DIR",
    "BuildExecutionError",
    "BuildResult",
    "compose_environment",
    "compose_image_command",
    "compose_run_command",
    "ensure_image",
    "probe_device_name",
    "prune_dangling_images",
    "read_log_excerpt",
    "run_build",
]
