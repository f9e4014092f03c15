"""Tests for builds/cache_key.py module."""

from pathlib import Path

import pytest

from probe_builder.builds.cache_key import (
    ArtifactKey,
    artifact_keys,
    is_built,
    list_artifacts,
    missing_artifacts,
)
from probe_builder.types import BuildTarget, Family

PROBE = "falco-probe"
VERSION = "0.26.1"


def make_target(config_hash: str = "a" * 32, orig_hash: str | None = None) -> BuildTarget:
    return BuildTarget(
        family=Family.UBUNTU,
        kernel_release="4.15.0-20-generic",
        kernel_version_full="4.15.0-20.21",
        arch="x86_64",
        config_hash=config_hash,
        orig_config_hash=orig_hash or config_hash,
        headers_path=Path("/work/usr/src/linux-headers-4.15.0-20-generic"),
        source_root=Path("/work"),
        builder_distro="ubuntu",
    )


class TestArtifactKey:
    """Tests for ArtifactKey naming."""

    def test_filename(self):
        """Should join name, version, arch, release and hash."""
        key = ArtifactKey(PROBE, VERSION, "x86_64", "4.15.0-20-generic", "abc")
        assert key.filename == "falco-probe-0.26.1-x86_64-4.15.0-20-generic-abc.ko"

    def test_path(self, tmp_path):
        """Should place the artifact in the output directory."""
        key = ArtifactKey(PROBE, VERSION, "x86_64", "r", "h")
        assert key.path(tmp_path) == tmp_path / key.filename


class TestArtifactKeys:
    """Tests for artifact_keys function."""

    def test_single_hash(self):
        """Equal hashes give one expected artifact."""
        assert len(artifact_keys(make_target(), PROBE, VERSION)) == 1

    def test_distinct_hashes(self):
        """A distinct original hash adds a second artifact."""
        keys = artifact_keys(make_target("a" * 32, "b" * 32), PROBE, VERSION)
        assert [k.config_hash for k in keys] == ["a" * 32, "b" * 32]


class TestIsBuilt:
    """Tests for the skip gate."""

    def test_nothing_built(self, tmp_path):
        """An empty output directory means the target needs building."""
        assert not is_built(make_target(), tmp_path, PROBE, VERSION)

    def test_built(self, tmp_path):
        """Should skip once the artifact exists."""
        target = make_target()
        for key in artifact_keys(target, PROBE, VERSION):
            key.path(tmp_path).write_bytes(b"ko")
        assert is_built(target, tmp_path, PROBE, VERSION)

    def test_requires_both_hashes(self, tmp_path):
        """The primary artifact alone does not satisfy the gate."""
        target = make_target("a" * 32, "b" * 32)
        primary, orig = artifact_keys(target, PROBE, VERSION)
        primary.path(tmp_path).write_bytes(b"ko")

        assert not is_built(target, tmp_path, PROBE, VERSION)
        assert missing_artifacts(target, tmp_path, PROBE, VERSION) == [orig]

    def test_same_release_other_hash_not_suppressed(self, tmp_path):
        """An artifact for one config hash never skips a rebuilt config."""
        old = make_target("a" * 32)
        rebuilt = make_target("c" * 32)
        for key in artifact_keys(old, PROBE, VERSION):
            key.path(tmp_path).write_bytes(b"ko")

        assert artifact_keys(old, PROBE, VERSION) != artifact_keys(rebuilt, PROBE, VERSION)
        assert is_built(old, tmp_path, PROBE, VERSION)
        assert not is_built(rebuilt, tmp_path, PROBE, VERSION)

    @pytest.mark.parametrize("other_version", ["0.26.2", "0.27.0"])
    def test_other_probe_version(self, tmp_path, other_version):
        """Artifacts of another probe version do not count."""
        target = make_target()
        for key in artifact_keys(target, PROBE, VERSION):
            key.path(tmp_path).write_bytes(b"ko")
        assert not is_built(target, tmp_path, PROBE, other_version)


class TestListArtifacts:
    """Tests for list_artifacts function."""

    def test_lists_ko_only(self, tmp_path):
        """Should list .ko files sorted by name."""
        (tmp_path / "b.ko").write_bytes(b"")
        (tmp_path / "a.ko").write_bytes(b"")
        (tmp_path / "build.log").write_text("")

        assert [p.name for p in list_artifacts(tmp_path)] == ["a.ko", "b.ko"]

    def test_missing_directory(self, tmp_path):
        """A missing directory has no artifacts."""
        assert list_artifacts(tmp_path / "missing") == []
