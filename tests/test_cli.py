"""Smoke tests for the CLI.

These tests verify CLI behavior without requiring network access or a
container runtime; the run controller is mocked where a build would start.
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from probe_builder import __version__
from probe_builder.builds.service import RunContext
from probe_builder.cli import app
from probe_builder.config import ConfigurationError, Settings
from probe_builder.types import BuildOutcome, BuildStatus, Family, FetchOutcome

runner = CliRunner()


def make_ctx(*statuses: BuildStatus) -> RunContext:
    ctx = RunContext(settings=Settings())
    for i, status in enumerate(statuses):
        ctx.outcomes.append(
            BuildOutcome(
                target=None,
                status=status,
                label=f"ubuntu 4.15.0-{i}-generic [{'a' * 32}]",
                log_excerpt="make: *** [modules] Error 2\n" if status == BuildStatus.FAILED else "",
            )
        )
    return ctx


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Probe Builder" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    def test_invalid_log_level(self) -> None:
        """An unknown log level is a configuration error."""
        result = runner.invoke(app, ["--log-level", "chatty", "config"])
        assert result.exit_code == 2


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show configuration sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Work directory" in result.stdout
        assert "Fetching:" in result.stdout
        assert "Builds:" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output parseable JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        for key in ["probe_name", "work_dir", "output_dir", "fetch_concurrency", "log_level"]:
            assert key in data


class TestCLIBuild:
    """Test the build and custom commands."""

    def test_success(self) -> None:
        """A run without failures exits 0 and prints a summary."""
        ctx = make_ctx(BuildStatus.SUCCESS, BuildStatus.SKIPPED)
        with patch("probe_builder.builds.service.run", return_value=ctx) as mock_run:
            result = runner.invoke(app, ["build", "--family", "ubuntu", "--probe-name", "p"])

        assert result.exit_code == 0
        assert "1 built, 1 skipped, 0 failed" in result.stdout
        settings, family, urls = mock_run.call_args.args
        assert family == Family.UBUNTU
        assert settings.probe_name == "p"
        assert urls is None

    def test_all_families(self) -> None:
        """The default scope is every family."""
        with patch("probe_builder.builds.service.run", return_value=make_ctx()) as mock_run:
            result = runner.invoke(app, ["build", "--fetch-concurrency", "0"])

        assert result.exit_code == 0
        settings, family, _ = mock_run.call_args.args
        assert family is None
        assert settings.fetch_concurrency == 0

    def test_failure_report(self) -> None:
        """A failed target exits 1 and prints its labelled block."""
        ctx = make_ctx(BuildStatus.SUCCESS, BuildStatus.FAILED)
        with patch("probe_builder.builds.service.run", return_value=ctx):
            result = runner.invoke(app, ["build"])

        assert result.exit_code == 1
        assert f"=== FAILED: ubuntu 4.15.0-1-generic [{'a' * 32}] ===" in result.stdout
        assert "Error 2" in result.stdout

    def test_fetch_failure_not_fatal(self) -> None:
        """Failed downloads are reported without failing the run."""
        ctx = make_ctx(BuildStatus.SUCCESS)
        ctx.fetches.append(
            FetchOutcome(Family.UBUNTU, "https://mirror/x.deb", False, error="404")
        )
        with patch("probe_builder.builds.service.run", return_value=ctx):
            result = runner.invoke(app, ["build"])

        assert result.exit_code == 0
        assert "FETCH FAILED: ubuntu https://mirror/x.deb: 404" in result.stdout

    def test_configuration_error(self) -> None:
        """A configuration error exits 2."""
        error = ConfigurationError("Missing mandatory build parameters: probe_name")
        with patch("probe_builder.builds.service.run", side_effect=error):
            result = runner.invoke(app, ["build"])

        assert result.exit_code == 2
        assert "probe_name" in result.stdout

    def test_unknown_family(self) -> None:
        """An unknown family exits 2."""
        result = runner.invoke(app, ["build", "--family", "gentoo"])
        assert result.exit_code == 2

    def test_configuration_error_keeps_brackets(self) -> None:
        """Paths with brackets are printed as given."""
        error = ConfigurationError("Missing archives: /tmp/[red]/k.rpm", code="missing_archives")
        with patch("probe_builder.builds.service.run_custom", side_effect=error):
            result = runner.invoke(app, ["custom", "--base", "centos", "/tmp/[red]/k.rpm"])

        assert result.exit_code == 2
        assert "/tmp/[red]/k.rpm" in result.stdout

    def test_custom_base_must_be_fetched_family(self) -> None:
        """custom rejects "all" and "custom" as a base family."""
        for base in ["all", "custom"]:
            with patch("probe_builder.builds.service.run_custom") as mock_run:
                result = runner.invoke(app, ["custom", "--base", base, "k.rpm"])

            assert result.exit_code == 2
            assert "Unknown family" in result.stdout
            mock_run.assert_not_called()

    def test_custom(self, tmp_path: Path) -> None:
        """custom passes the base family, archives and builder."""
        archive = tmp_path / "kernel-devel-3.10.0-123.el7.x86_64.rpm"
        archive.write_bytes(b"")
        with patch(
            "probe_builder.builds.service.run_custom", return_value=make_ctx()
        ) as mock_run:
            result = runner.invoke(
                app,
                ["custom", "--base", "centos", "--builder", "centos-gcc4.8", str(archive)],
            )

        assert result.exit_code == 0
        _, base, archives, builder = mock_run.call_args.args
        assert base == Family.CENTOS
        assert archives == [archive]
        assert builder == "centos-gcc4.8"


class TestCLIBuilders:
    """Test builders and resolve commands."""

    def _builder_dir(self, tmp_path: Path) -> Path:
        directory = tmp_path / "builder"
        directory.mkdir()
        for name in ["Dockerfile.centos-gcc4.8", "Dockerfile.centos-gcc10.2", "Dockerfile.debian-gcc8.3"]:
            (directory / name).write_text("FROM scratch\n")
        return directory

    def test_builders_list_json(self, tmp_path: Path) -> None:
        """builders list --json returns variants in version order."""
        env = {"PROBE_BUILDER_BUILDER_DIR": str(self._builder_dir(tmp_path))}
        with patch.dict(os.environ, env):
            result = runner.invoke(app, ["builders", "list", "--distro", "centos", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [v["name"] for v in data] == ["centos-gcc4.8", "centos-gcc10.2"]

    def test_resolve(self, tmp_path: Path) -> None:
        """resolve prints the selected builder."""
        env = {"PROBE_BUILDER_BUILDER_DIR": str(self._builder_dir(tmp_path))}
        with patch.dict(os.environ, env):
            result = runner.invoke(app, ["resolve", "centos", "9.3"])

        assert result.exit_code == 0
        assert "centos-gcc10.2" in result.stdout

    def test_resolve_empty_catalog(self, tmp_path: Path) -> None:
        """resolve fails for a distro without builders."""
        env = {"PROBE_BUILDER_BUILDER_DIR": str(self._builder_dir(tmp_path))}
        with patch.dict(os.environ, env):
            result = runner.invoke(app, ["resolve", "fedora", "9.3"])

        assert result.exit_code == 1


class TestCLIArtifacts:
    """Test artifacts list command."""

    def test_list_json(self, tmp_path: Path) -> None:
        """artifacts list --json lists .ko files."""
        (tmp_path / "p-1-x86_64-4.15.0-20-generic-abc.ko").write_bytes(b"ko")
        with patch.dict(os.environ, {"PROBE_BUILDER_OUTPUT_DIR": str(tmp_path)}):
            result = runner.invoke(app, ["artifacts", "list", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == [
            {"filename": "p-1-x86_64-4.15.0-20-generic-abc.ko", "size_bytes": 2}
        ]

    def test_list_empty(self, tmp_path: Path) -> None:
        """An empty output directory is reported."""
        with patch.dict(os.environ, {"PROBE_BUILDER_OUTPUT_DIR": str(tmp_path)}):
            result = runner.invoke(app, ["artifacts", "list"])

        assert result.exit_code == 0
        assert "No artifacts found" in result.stdout
