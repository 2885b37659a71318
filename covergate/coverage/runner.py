"""
Test Runner.

Runs the tests of one package under coverage.py and turns the recorded line
data into a set-mode coverage profile the engine can reconcile.
"""

import fnmatch
import os
import subprocess
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog
from coverage import Coverage
from coverage.exceptions import CoverageException, NoSource, NotPython

from covergate.analysis.parser import PythonParser
from covergate.errors import TestExecutionError
from covergate.packages import PackageSpec, relative_key
from covergate.profile.models import CoverageBlock, CoverMode, Profile
from covergate.profile.store import ProfileStore


log = structlog.get_logger()

# pytest exit code for "no tests were collected"
PYTEST_NO_TESTS = 5

SUCCESS_CODES = frozenset({0, PYTEST_NO_TESTS})

SHORT_MARKER_EXPRESSION = "not slow"

# pytest test module names; never measured
TEST_FILE_PATTERNS = ("test_*.py", "*_test.py", "conftest.py")


@dataclass(frozen=True)
class RunOptions:
    """Settings for one package test run."""
    work_dir: Path
    root: Path
    short: bool = False
    timeout: float | None = None
    test_args: tuple[str, ...] = ()
    test_paths: tuple[Path, ...] = ()
    cover_directories: tuple[Path, ...] = ()
    verbose: bool = False


class TestRunner(Protocol):
    """Runs the tests of a package and returns the path of its profile artifact."""

    __test__ = False

    def run(self, package: PackageSpec, options: RunOptions) -> Path:
        ...


@dataclass
class CoverageDataConverter:
    """
    Convert coverage.py data files into set-mode profiles.

    Each executable line becomes one block spanning the statement that starts
    on it; compound statements are clipped to their header.

    Usage:
        converter = CoverageDataConverter(root=Path.cwd())
        profile = converter.convert(Path(".coverage"))
    """

    root: Path
    parser: PythonParser = field(default_factory=PythonParser)

    def convert(self, data_file: Path) -> Profile:
        """
        Read a coverage.py data file.

        Args:
            data_file: Path of the data file written by ``coverage run``

        Returns:
            Profile with one block per executable statement
        """
        profile = Profile(CoverMode.SET)
        if not data_file.exists():
            log.debug("convert.no_data", data_file=str(data_file))
            return profile

        cov = Coverage(data_file=str(data_file))
        cov.load()
        for measured in sorted(cov.get_data().measured_files()):
            if is_test_file(measured):
                continue
            try:
                _, statements, _, missing, _ = cov.analysis2(measured)
            except (NoSource, NotPython) as exc:
                log.warning("convert.file_skipped", file=measured, error=str(exc))
                continue
            for block in self._blocks(Path(measured), statements, set(missing)):
                profile.add(block, str(data_file))
        return profile

    def _blocks(self, path: Path, statements: Sequence[int], missing: set[int]) -> list[CoverageBlock]:
        key = relative_key(path, self.root)
        try:
            module = self.parser.parse_file(path, key)
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("convert.file_skipped", file=key, error=str(exc))
            return []
        spans = module.statement_spans()
        blocks = []
        for line in statements:
            rng = spans.get(line) or module.line_span(line)
            blocks.append(CoverageBlock(rng, 1, 0 if line in missing else 1))
        return blocks


class PytestRunner:
    """
    Run a package's tests with ``coverage run -m pytest`` in a subprocess.

    Usage:
        runner = PytestRunner()
        artifact = runner.run(package, options)
    """

    def __init__(self, store: ProfileStore | None = None, python: str | None = None):
        self.store = store or ProfileStore()
        self.python = python or sys.executable

    def command(self, package: PackageSpec, options: RunOptions, data_file: Path) -> list[str]:
        """Build the subprocess command line."""
        sources = options.cover_directories or (package.directory,)
        cmd = [
            self.python, "-m", "coverage", "run",
            f"--data-file={data_file}",
            "--source=" + ",".join(str(directory) for directory in sources),
            "--omit=" + ",".join(f"*/{pattern}" for pattern in TEST_FILE_PATTERNS),
            "-m", "pytest",
        ]
        cmd.extend(str(path) for path in (options.test_paths or (package.directory,)))
        if options.short:
            cmd.extend(["-m", SHORT_MARKER_EXPRESSION])
        if options.verbose:
            cmd.append("-v")
        cmd.extend(options.test_args)
        return cmd

    def run(self, package: PackageSpec, options: RunOptions) -> Path:
        """
        Run the tests of one package.

        Returns:
            Path of the written profile artifact

        Raises:
            TestExecutionError: If the run fails, times out, or its data
                cannot be read
        """
        slug = package.import_path.replace("/", "_")
        data_file = options.work_dir / f"{slug}.coverage"
        artifact = options.work_dir / f"{slug}.out"
        cmd = self.command(package, options, data_file)
        env = dict(os.environ, COVERAGE_FILE=str(data_file))

        log.debug("runner.start", package=package.import_path, command=cmd)
        started = time.monotonic()
        try:
            completed = subprocess.run(
                cmd,
                cwd=options.root,
                env=env,
                capture_output=True,
                text=True,
                timeout=options.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TestExecutionError(
                package.import_path,
                f"test run timed out after {options.timeout:g}s",
                output=_decode(exc.stdout) + _decode(exc.stderr),
                timed_out=True,
            ) from exc
        except OSError as exc:
            raise TestExecutionError(package.import_path, f"cannot start tests: {exc}") from exc

        output = completed.stdout + completed.stderr
        log.debug(
            "runner.finished",
            package=package.import_path,
            returncode=completed.returncode,
            elapsed=round(time.monotonic() - started, 3),
        )
        if completed.returncode not in SUCCESS_CODES:
            raise TestExecutionError(
                package.import_path,
                f"tests exited with status {completed.returncode}",
                output=output,
            )

        try:
            profile = CoverageDataConverter(options.root).convert(data_file)
        except CoverageException as exc:
            raise TestExecutionError(
                package.import_path, f"cannot read coverage data: {exc}", output=output
            ) from exc
        return self.store.save(profile, artifact)


def is_test_file(path: str | Path) -> bool:
    """Check whether a file is a pytest test module."""
    name = Path(path).name
    return any(fnmatch.fnmatch(name, pattern) for pattern in TEST_FILE_PATTERNS)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
