"""
Tests for the command-line interface.
"""

import json
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from covergate import __version__, cli
from covergate.cli import app, split_test_args


APP_SOURCE = """\
def load(path):
    try:
        return open(path).read()
    except OSError:
        raise
"""

APP_PROFILE = """\
mode: set
app/io.py:1.1,1.16 1 1
app/io.py:2.5,2.9 1 1
app/io.py:3.9,3.33 1 1
app/io.py:4.5,4.20 1 0
app/io.py:5.9,5.14 1 0
"""


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "io.py").write_text(APP_SOURCE)
    (tmp_path / "profiles").mkdir()
    (tmp_path / "profiles" / "unit.out").write_text(APP_PROFILE)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"covergate v{__version__}" in result.output


class TestRunCommand:
    """Tests for 'covergate run' in load mode."""

    def test_passes_with_exclusions(self, runner, project):
        """Test the gate passes when only excluded blocks are missing."""
        result = runner.invoke(
            app,
            ["run", "app", "--load", "profiles/*.out", "--enforce", "--format", "json"],
            obj={"test_args": []},
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["passed"] is True
        assert payload["packages"] == ["app"]
        assert payload["exclusions"] == {"app/io.py": ["4.5,5.14"]}
        assert payload["report"]["coverage_percentage"] == 100.0
        assert (project / "coverage.out").exists()

    def test_console_output(self, runner, project):
        """Test the summary panel is printed."""
        result = runner.invoke(app, ["run", "app", "-l", "profiles/*.out"], obj={"test_args": []})
        assert result.exit_code == 0, result.output
        assert "Coverage:" in result.output
        assert "app/io.py" in result.output

    def test_fails_on_gap(self, runner, project):
        """Test enforcement failure exits non-zero with the gap listed."""
        (project / "profiles" / "unit.out").write_text(APP_PROFILE.replace("3.33 1 1", "3.33 1 0"))
        result = runner.invoke(
            app,
            ["run", "app", "-l", "profiles/*.out", "-e", "-o", "gate.out"],
            obj={"test_args": []},
        )
        assert result.exit_code == 1
        assert "untested code" in result.output
        assert "stage: enforce" in result.output
        assert (project / "gate.out").exists()

    def test_load_with_test_args_rejected(self, runner, project):
        """Test arguments after '--' cannot be combined with loading."""
        result = runner.invoke(
            app,
            ["run", "app", "-l", "profiles/*.out"],
            obj={"test_args": ["-x"]},
        )
        assert result.exit_code == 1
        assert "load cannot be combined" in result.output

    def test_unknown_format(self, runner, project):
        result = runner.invoke(app, ["run", "-f", "xml"], obj={"test_args": []})
        assert result.exit_code == 1
        assert "Unknown format" in result.output


class TestScanCommand:
    """Tests for 'covergate scan'."""

    def test_scan_json(self, runner, project):
        """Test exclusions are reported per file."""
        result = runner.invoke(app, ["scan", "app", "--format", "json"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["packages"] == ["app"]
        assert payload["exclusions"] == {"app/io.py": ["4.5,5.14"]}
        assert payload["failures"] == []

    def test_scan_console(self, runner, project):
        result = runner.invoke(app, ["scan", "app"])
        assert result.exit_code == 0, result.output
        assert "4.5,5.14" in result.output

    def test_scan_failure(self, runner, project):
        """Test a package that does not parse fails the command."""
        (project / "app" / "broken.py").write_text("def broken(:\n")
        result = runner.invoke(app, ["scan", "app"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_unknown_package(self, runner, project):
        result = runner.invoke(app, ["scan", "missing"])
        assert result.exit_code == 1
        assert "cannot resolve" in result.output


class TestMergeCommand:
    """Tests for 'covergate merge'."""

    def test_merge_to_stdout(self, runner, tmp_path):
        """Test merged profiles are printed when no output is given."""
        first = tmp_path / "a.out"
        second = tmp_path / "b.out"
        first.write_text("mode: count\npkg/a.py:1.1,1.10 1 1\n")
        second.write_text("mode: count\npkg/a.py:1.1,1.10 1 2\npkg/a.py:2.5,2.10 1 0\n")

        result = runner.invoke(app, ["merge", str(first), str(second)])

        assert result.exit_code == 0, result.output
        assert result.stdout.splitlines() == [
            "mode: count",
            "pkg/a.py:1.1,1.10 1 3",
            "pkg/a.py:2.5,2.10 1 0",
        ]

    def test_merge_to_file(self, runner, tmp_path):
        first = tmp_path / "a.out"
        first.write_text("mode: set\npkg/a.py:1.1,1.10 1 1\n")
        output = tmp_path / "merged" / "all.out"

        result = runner.invoke(app, ["merge", str(first), "-o", str(output)])

        assert result.exit_code == 0, result.output
        assert output.read_text() == "mode: set\npkg/a.py:1.1,1.10 1 1\n"

    def test_merge_mode_mismatch(self, runner, tmp_path):
        """Test profiles of different modes cannot be merged."""
        first = tmp_path / "a.out"
        second = tmp_path / "b.out"
        first.write_text("mode: set\n")
        second.write_text("mode: atomic\n")

        result = runner.invoke(app, ["merge", str(first), str(second)])

        assert result.exit_code == 1
        assert "atomic, set" in result.output


class TestSplitTestArgs:
    """Tests for split_test_args."""

    def test_without_separator(self):
        assert split_test_args(["run", "-e"]) == (["run", "-e"], [])

    def test_with_separator(self):
        """Test everything after the first '--' goes to pytest."""
        args, test_args = split_test_args(["run", "./...", "--", "-x", "--", "-k", "a"])
        assert args == ["run", "./..."]
        assert test_args == ["-x", "--", "-k", "a"]
