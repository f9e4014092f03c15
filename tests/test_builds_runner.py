"""Tests for builds/runner.py module.

Tests command composition and execution.
Uses mocked subprocess for container runtime calls.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from probe_builder.builds.runner import (
    BuildExecutionError,
    compose_environment,
    compose_image_command,
    compose_run_command,
    ensure_image,
    probe_device_name,
    read_log_excerpt,
    run_build,
)
from probe_builder.builds.toolchain import BuilderVariant
from probe_builder.types import BuildTarget, Family


@pytest.fixture
def target(tmp_path: Path) -> BuildTarget:
    root = tmp_path / "ubuntu-4.15.0-20-21"
    headers = root / "usr/src/linux-headers-4.15.0-20-generic"
    headers.mkdir(parents=True)
    return BuildTarget(
        family=Family.UBUNTU,
        kernel_release="4.15.0-20-generic",
        kernel_version_full="4.15.0-20.21",
        arch="x86_64",
        config_hash="a" * 32,
        orig_config_hash="b" * 32,
        headers_path=headers,
        source_root=root,
        builder_distro="ubuntu",
    )


@pytest.fixture
def variant(tmp_path: Path) -> BuilderVariant:
    dockerfile = tmp_path / "builder" / "Dockerfile.ubuntu-gcc7.5"
    dockerfile.parent.mkdir()
    dockerfile.write_text("FROM ubuntu:18.04\n")
    return BuilderVariant(distro="ubuntu", compiler_version="7.5", dockerfile=dockerfile)


def completed(returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    result.stderr = stderr
    return result


class TestComposeEnvironment:
    """Tests for the container environment contract."""

    def test_device_name(self):
        """Device name is the probe name up to the first dash."""
        assert probe_device_name("falco-probe") == "falco"
        assert probe_device_name("sysdig") == "sysdig"

    def test_environment(self, target):
        """Should pass container paths and both hashes."""
        env = compose_environment(target, "falco-probe", "0.26.1")

        assert env == {
            "PROBE_NAME": "falco-probe",
            "PROBE_VERSION": "0.26.1",
            "PROBE_DEVICE_NAME": "falco",
            "OUTPUT": "/build/output",
            "KERNELDIR": "/build/kernel/usr/src/linux-headers-4.15.0-20-generic",
            "KERNEL_RELEASE": "4.15.0-20-generic",
            "HASH": "a" * 32,
            "HASH_ORIG": "b" * 32,
            "ARCH": "x86_64",
        }


class TestComposeCommands:
    """Tests for docker command composition."""

    def test_run_command(self, target, tmp_path):
        """Should mount source, kernel tree and output and pass the env."""
        cmd = compose_run_command(
            target,
            "probe-builder:ubuntu-gcc7.5",
            "probe-builder-ubuntu-gcc7.5",
            tmp_path / "src",
            tmp_path / "out",
            {"A": "1"},
        )

        assert cmd[:4] == ["docker", "run", "--rm", "--privileged"]
        assert cmd[cmd.index("--name") + 1] == "probe-builder-ubuntu-gcc7.5"
        mounts = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-v"]
        assert mounts == [
            f"{(tmp_path / 'src').resolve()}:/build/probe",
            f"{target.source_root.resolve()}:/build/kernel",
            f"{(tmp_path / 'out').resolve()}:/build/output",
        ]
        assert ["-e", "A=1"] == cmd[-3:-1]
        assert cmd[-1] == "probe-builder:ubuntu-gcc7.5"

    def test_image_command_build(self, variant):
        """Builds from the variant's Dockerfile."""
        cmd = compose_image_command(variant, "probe-builder:ubuntu-gcc7.5", pull=False)
        assert cmd == [
            "docker",
            "build",
            "-t",
            "probe-builder:ubuntu-gcc7.5",
            "-f",
            str(variant.dockerfile),
            str(variant.dockerfile.parent),
        ]

    def test_image_command_pull(self, variant):
        """Pulls when a registry prefix is in use."""
        cmd = compose_image_command(variant, "reg/probe-builder:x", pull=True, docker="podman")
        assert cmd == ["podman", "pull", "reg/probe-builder:x"]


class TestEnsureImage:
    """Tests for ensure_image function."""

    def test_builds_once_per_run(self, variant):
        """A second request for the same image is memoized."""
        built: set[str] = set()
        with patch("probe_builder.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = completed()
            assert ensure_image(variant, "probe-builder:ubuntu-gcc7.5", built) is True
            assert ensure_image(variant, "probe-builder:ubuntu-gcc7.5", built) is False

        commands = [c.args[0][1:3] for c in mock_run.call_args_list]
        assert commands == [["build", "-t"], ["image", "prune"]]
        assert built == {"probe-builder:ubuntu-gcc7.5"}

    def test_pull_does_not_prune(self, variant):
        """Pulled images leave nothing dangling."""
        with patch("probe_builder.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = completed()
            ensure_image(variant, "reg/probe-builder:ubuntu-gcc7.5", set(), pull=True)

        assert mock_run.call_count == 1

    def test_failure(self, variant):
        """A failed build raises and is not memoized."""
        built: set[str] = set()
        with patch("probe_builder.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = completed(1, "no space left on device")
            with pytest.raises(BuildExecutionError) as exc_info:
                ensure_image(variant, "probe-builder:ubuntu-gcc7.5", built)

        assert exc_info.value.code == "image_error"
        assert "no space left" in str(exc_info.value)
        assert built == set()


class TestRunBuild:
    """Tests for run_build function."""

    def _run(self, target, tmp_path, side_effect, timeout=None):
        with patch("probe_builder.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = side_effect
            result = run_build(
                target,
                "probe-builder:ubuntu-gcc7.5",
                "probe-builder-ubuntu-gcc7.5",
                "falco-probe",
                "0.26.1",
                tmp_path / "src",
                tmp_path / "out",
                timeout=timeout,
                log_dir=tmp_path,
            )
        return result, mock_run

    def test_success(self, target, tmp_path):
        """Exit status 0 maps to success, after removing a stale container."""

        def fake_run(cmd, **kwargs):
            if cmd[1] == "run":
                kwargs["stdout"].write("make: Entering directory\n")
            return completed(0)

        result, mock_run = self._run(target, tmp_path, fake_run)

        assert result.success
        assert result.exit_code == 0
        first = mock_run.call_args_list[0].args[0]
        assert first == ["docker", "rm", "-f", "probe-builder-ubuntu-gcc7.5"]
        log = result.log_path.read_text()
        assert "# Command: docker run" in log
        assert "make: Entering directory" in log
        assert "# Exit code: 0" in log
        assert (tmp_path / "out").is_dir()

    def test_failure(self, target, tmp_path):
        """A non-zero exit maps to failure with the log kept for the report."""

        def fake_run(cmd, **kwargs):
            if cmd[1] == "run":
                kwargs["stdout"].write("error: implicit declaration\n")
                return completed(2)
            return completed(1)

        result, _ = self._run(target, tmp_path, fake_run)

        assert not result.success
        assert result.exit_code == 2
        assert "exit code 2" in result.error_message
        assert "implicit declaration" in read_log_excerpt(result.log_path, 10)

    def test_timeout(self, target, tmp_path):
        """A timeout removes the container and raises with the log path."""
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd[1])
            if cmd[1] == "run":
                raise subprocess.TimeoutExpired(cmd, 60)
            return completed(0)

        with pytest.raises(BuildExecutionError) as exc_info:
            self._run(target, tmp_path, fake_run, timeout=60)

        assert exc_info.value.code == "build_timeout"
        assert exc_info.value.log_path.is_file()
        assert calls == ["rm", "run", "rm"]

    def test_missing_runtime(self, target, tmp_path):
        """A missing docker binary is a BuildExecutionError."""
        with pytest.raises(BuildExecutionError) as exc_info:
            self._run(target, tmp_path, FileNotFoundError("docker"))
        assert exc_info.value.code == "execution_error"


class TestReadLogExcerpt:
    """Tests for read_log_excerpt function."""

    def test_tail(self, tmp_path):
        """Should keep the last lines only."""
        log = tmp_path / "build.log"
        log.write_text("".join(f"line {i}\n" for i in range(10)))
        assert read_log_excerpt(log, 2) == "line 8\nline 9\n"

    def test_missing(self, tmp_path):
        """A missing log gives an empty excerpt."""
        assert read_log_excerpt(tmp_path / "none.log", 5) == ""
