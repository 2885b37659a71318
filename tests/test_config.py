"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest

from covergate.config import (
    CONFIG_FILE_NAME,
    Setup,
    SetupLoader,
    parse_duration,
    split_entries,
)
from covergate.errors import ConfigError


class TestParseDuration:
    """Test duration parsing."""

    @pytest.mark.parametrize(
        ("value", "seconds"),
        [
            ("90s", 90.0),
            ("10m", 600.0),
            ("1h30m", 5400.0),
            ("250ms", 0.25),
            ("1.5h", 5400.0),
            ("45", 45.0),
            (30, 30.0),
            (2.5, 2.5),
        ],
    )
    def test_valid(self, value, seconds):
        """Test accepted duration spellings."""
        assert parse_duration(value) == pytest.approx(seconds)

    @pytest.mark.parametrize("value", ["", "ten minutes", "10x", "m10", "0s", "-5", 0, True])
    def test_invalid(self, value):
        """Test malformed and non-positive durations."""
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSplitEntries:
    """Test comma-separated entry flattening."""

    def test_split(self):
        assert split_entries(["a,b", " c ", "", "d,"]) == ["a", "b", "c", "d"]
        assert split_entries("x,y") == ["x", "y"]
        assert split_entries(None) == []


class TestSetup:
    """Test the Setup model."""

    def test_defaults(self):
        """Test default settings."""
        setup = Setup()
        assert setup.enforce is False
        assert setup.jobs == 1
        assert setup.options.marker == "notest"
        assert setup.options.exclude_err_no_return_param is False
        assert setup.output_path == setup.root / "coverage.out"

    def test_relative_output_resolved_against_root(self, tmp_path):
        """Test the output path is relative to the root."""
        setup = Setup(root=tmp_path, output=Path("out/cov.out"))
        assert setup.output_path == tmp_path / "out" / "cov.out"


class TestSetupLoader:
    """Test SetupLoader."""

    def test_from_dict(self):
        """Test building from a dictionary."""
        setup = SetupLoader.from_dict(
            {
                "enforce": True,
                "timeout": "2m",
                "exclude_packages": "pkg/gen,pkg/vendor",
                "options": {"exclude_err_no_return_param": True},
            }
        )
        assert setup.enforce is True
        assert setup.timeout == 120.0
        assert setup.exclude_packages == ["pkg/gen", "pkg/vendor"]
        assert setup.options.exclude_err_no_return_param is True

    @pytest.mark.parametrize(
        "data",
        [
            {"load": ["*.out"], "short": True},
            {"load": ["*.out"], "timeout": "1m"},
            {"load": ["*.out"], "test_args": ["-x"]},
        ],
    )
    def test_contradictions_rejected(self, data):
        """Test loading profiles cannot be combined with test settings."""
        with pytest.raises(ConfigError, match="load cannot be combined"):
            SetupLoader.from_dict(data)

    @pytest.mark.parametrize(
        "data",
        [
            {"jobs": 0},
            {"timeout": "soon"},
            {"timeout": "-1s"},
            {"unknown_key": 1},
            {"options": {"marker": "two words"}},
        ],
    )
    def test_invalid_values(self, data):
        """Test validation failures become ConfigError."""
        with pytest.raises(ConfigError, match="invalid configuration"):
            SetupLoader.from_dict(data)

    def test_from_yaml(self, tmp_path):
        """Test loading a YAML file."""
        path = tmp_path / "gate.yaml"
        path.write_text("enforce: true\npackages: ['./...']\njobs: 4\n")
        setup = SetupLoader.from_yaml(path)
        assert setup.enforce is True
        assert setup.packages == ["./..."]
        assert setup.jobs == 4

    def test_from_yaml_missing(self, tmp_path):
        """Test a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            SetupLoader.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_not_mapping(self, tmp_path):
        """Test a YAML list is rejected."""
        path = tmp_path / "gate.yaml"
        path.write_text("- enforce\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            SetupLoader.from_yaml(path)

    def test_from_yaml_invalid_syntax(self, tmp_path):
        """Test unparsable YAML raises ConfigError."""
        path = tmp_path / "gate.yaml"
        path.write_text("enforce: [true\n")
        with pytest.raises(ConfigError, match="Cannot read configuration"):
            SetupLoader.from_yaml(path)

    def test_discover(self, tmp_path):
        """Test the configuration file is found in the root."""
        assert SetupLoader.discover(tmp_path) is None
        (tmp_path / CONFIG_FILE_NAME).write_text("enforce: true\n")
        assert SetupLoader.discover(tmp_path) == tmp_path / CONFIG_FILE_NAME

    def test_build_overrides_win(self, tmp_path):
        """Test command line values override the file."""
        (tmp_path / CONFIG_FILE_NAME).write_text(
            "jobs: 2\ntimeout: 5m\noptions:\n  marker: nocover\n"
        )
        setup = SetupLoader.build(
            root=tmp_path,
            overrides={
                "jobs": 8,
                "timeout": None,
                "enforce": True,
                "options": {"exclude_err_no_return_param": True},
            },
        )
        assert setup.root == tmp_path.resolve()
        assert setup.jobs == 8
        assert setup.timeout == 300.0
        assert setup.enforce is True
        assert setup.options.marker == "nocover"
        assert setup.options.exclude_err_no_return_param is True

    def test_build_false_flags_do_not_override(self, tmp_path):
        """Test unset flags leave file values in place."""
        (tmp_path / CONFIG_FILE_NAME).write_text("enforce: true\n")
        setup = SetupLoader.build(root=tmp_path, overrides={"enforce": False, "load": []})
        assert setup.enforce is True

    def test_build_without_file(self, tmp_path):
        """Test building from overrides only."""
        setup = SetupLoader.build(root=tmp_path, overrides={"short": True})
        assert setup.short is True
        assert setup.root == tmp_path.resolve()

    def test_build_contradiction(self, tmp_path):
        """Test contradictions across file and flags are rejected."""
        (tmp_path / CONFIG_FILE_NAME).write_text("load: ['*.out']\n")
        with pytest.raises(ConfigError):
            SetupLoader.build(root=tmp_path, overrides={"test_args": ["-x"]})
