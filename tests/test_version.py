"""Tests for version information module."""

import tomllib
from pathlib import Path

from shared.version import __version__


class TestVersion:
    def test_version_is_semver(self):
        """Should be a three-part semantic version."""
        parts = __version__.split("-")[0].split(".")
        assert len(parts) == 3
        assert all(part.isdigit() for part in parts)

    def test_matches_package_metadata(self):
        """Should match the version in pyproject.toml."""
        pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
        with open(pyproject, "rb") as f:
            assert tomllib.load(f)["project"]["version"] == __version__
