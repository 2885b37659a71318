"""
Tests for the pytest runner and coverage data conversion.

The subprocess boundary is monkeypatched; conversion reads real coverage.py
data files written with the CoverageData API.
"""

import subprocess
import sys

import pytest
from coverage import CoverageData

from covergate.analysis.models import SourceRange
from covergate.coverage.runner import CoverageDataConverter, PytestRunner, RunOptions, is_test_file
from covergate.errors import TestExecutionError
from covergate.packages import PackageSpec
from covergate.profile.models import CoverMode
from covergate.profile.store import ProfileStore


SOURCE = """\
def f(x):
    if x:
        return 1
    return 2


f(1)
"""


@pytest.fixture
def package(tmp_path) -> PackageSpec:
    directory = tmp_path / "pkg"
    directory.mkdir()
    (directory / "mod.py").write_text(SOURCE)
    return PackageSpec("pkg", directory)


@pytest.fixture
def options(tmp_path) -> RunOptions:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return RunOptions(work_dir=work_dir, root=tmp_path)


def completed(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPytestRunnerCommand:
    """Test command construction."""

    def test_default_command(self, package, options):
        """Test coverage wraps pytest on the package directory."""
        data_file = options.work_dir / "pkg.coverage"
        cmd = PytestRunner().command(package, options, data_file)
        assert cmd[:4] == [sys.executable, "-m", "coverage", "run"]
        assert f"--data-file={data_file}" in cmd
        assert f"--source={package.directory}" in cmd
        assert "--omit=*/test_*.py,*/*_test.py,*/conftest.py" in cmd
        assert cmd[-3:] == ["-m", "pytest", str(package.directory)]

    def test_short_verbose_and_args(self, package, tmp_path):
        """Test short mode, verbosity and extra arguments."""
        options = RunOptions(
            work_dir=tmp_path,
            root=tmp_path,
            short=True,
            verbose=True,
            test_args=("-x", "-k", "smoke"),
            test_paths=(tmp_path / "tests",),
            cover_directories=(tmp_path / "pkg", tmp_path / "lib"),
        )
        cmd = PytestRunner(python="python3").command(package, options, tmp_path / "d")
        assert cmd[0] == "python3"
        assert f"--source={tmp_path / 'pkg'},{tmp_path / 'lib'}" in cmd
        tail = cmd[cmd.index("pytest") + 1:]
        assert tail == [str(tmp_path / "tests"), "-m", "not slow", "-v", "-x", "-k", "smoke"]


class TestPytestRunnerRun:
    """Test running with a patched subprocess."""

    def test_success_writes_artifact(self, package, options, monkeypatch):
        """Test a passing run produces a loadable profile."""
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append((cmd, kwargs))
            return completed(0)

        monkeypatch.setattr(subprocess, "run", fake_run)
        artifact = PytestRunner().run(package, options)

        assert artifact == options.work_dir / "pkg.out"
        profile = ProfileStore().load(artifact)
        assert profile.mode is CoverMode.SET
        assert len(profile) == 0
        _, kwargs = calls[0]
        assert kwargs["cwd"] == options.root
        assert kwargs["env"]["COVERAGE_FILE"] == str(options.work_dir / "pkg.coverage")

    def test_no_tests_collected_is_success(self, package, options, monkeypatch):
        """Test pytest's 'no tests' status does not fail the run."""
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs: completed(5))
        assert PytestRunner().run(package, options).exists()

    def test_failing_tests(self, package, options, monkeypatch):
        """Test a non-zero status raises with the captured output."""
        monkeypatch.setattr(
            subprocess, "run", lambda cmd, **kwargs: completed(1, "1 failed", "trace")
        )
        with pytest.raises(TestExecutionError) as exc_info:
            PytestRunner().run(package, options)
        assert exc_info.value.package == "pkg"
        assert exc_info.value.timed_out is False
        assert "1 failed" in exc_info.value.output
        assert "status 1" in str(exc_info.value)

    def test_timeout(self, package, tmp_path, monkeypatch):
        """Test an expired timeout raises a timed-out error."""
        def fake_run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output=b"partial")

        monkeypatch.setattr(subprocess, "run", fake_run)
        options = RunOptions(work_dir=tmp_path, root=tmp_path, timeout=1.5)
        with pytest.raises(TestExecutionError) as exc_info:
            PytestRunner().run(package, options)
        assert exc_info.value.timed_out is True
        assert "1.5s" in str(exc_info.value)
        assert exc_info.value.output == "partial"

    def test_cannot_start(self, package, options, monkeypatch):
        """Test a missing interpreter raises TestExecutionError."""
        def fake_run(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(TestExecutionError, match="cannot start tests"):
            PytestRunner().run(package, options)


class TestCoverageDataConverter:
    """Test conversion of coverage.py data into profiles."""

    @pytest.fixture
    def data_file(self, tmp_path, package):
        path = tmp_path / ".coverage"
        data = CoverageData(basename=str(path))
        data.add_lines({str(package.directory / "mod.py"): [1, 2, 3, 7]})
        data.write()
        return path

    def test_convert(self, tmp_path, data_file):
        """Test each executable line becomes a statement block."""
        profile = CoverageDataConverter(tmp_path).convert(data_file)

        assert profile.mode is CoverMode.SET
        assert profile.files == ["pkg/mod.py"]
        blocks = {block.range: block.hit_count for block in profile.blocks()}
        assert blocks == {
            SourceRange("pkg/mod.py", 1, 1, 1, 10): 1,
            SourceRange("pkg/mod.py", 2, 5, 2, 10): 1,
            SourceRange("pkg/mod.py", 3, 9, 3, 17): 1,
            SourceRange("pkg/mod.py", 4, 5, 4, 13): 0,
            SourceRange("pkg/mod.py", 7, 1, 7, 5): 1,
        }
        assert all(block.num_statements == 1 for block in profile.blocks())

    def test_missing_data_file(self, tmp_path):
        """Test a run without data yields an empty profile."""
        profile = CoverageDataConverter(tmp_path).convert(tmp_path / "absent")
        assert len(profile) == 0

    def test_test_modules_left_out(self, tmp_path, package):
        """Test colocated test modules never reach the profile."""
        test_module = package.directory / "test_mod.py"
        test_module.write_text("def test_f():\n    pass\n\n\ndef _unused_helper():\n    return 42\n")
        path = tmp_path / ".coverage-tests"
        data = CoverageData(basename=str(path))
        data.add_lines({
            str(package.directory / "mod.py"): [1, 2, 3, 7],
            str(test_module): [1, 2, 5],
        })
        data.write()

        profile = CoverageDataConverter(tmp_path).convert(path)

        assert profile.files == ["pkg/mod.py"]


class TestIsTestFile:
    """Test pytest test module detection."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("pkg/test_mod.py", True),
            ("pkg/mod_test.py", True),
            ("pkg/conftest.py", True),
            ("pkg/mod.py", False),
            ("pkg/testing.py", False),
            ("pkg/contest.py", False),
        ],
    )
    def test_patterns(self, path, expected):
        assert is_test_file(path) is expected
