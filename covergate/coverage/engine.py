"""
Coverage Engine.

Runs the gate in four strictly sequential stages:

    Collect -> Reconcile -> Persist -> Enforce

Each stage returns a frozen result consumed by the next. A failing stage's
error is re-raised with a ``stage: <name>`` note and later stages do not run.
The profile is always persisted before enforcement, so the artifact exists even
when the gate fails.
"""

import glob
import tempfile
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from covergate.analysis.models import ExclusionSet
from covergate.config import Setup
from covergate.coverage.report import CoverageReport, build_report
from covergate.coverage.runner import PytestRunner, RunOptions, TestRunner
from covergate.errors import ConfigError, CoverageShortfallError
from covergate.packages import PackageSpec
from covergate.profile.models import CoverageBlock, CoverMode, Profile
from covergate.profile.store import ProfileStore


log = structlog.get_logger()

TestRunCallback = Callable[[PackageSpec, float], None]


class Stage(str, Enum):
    """Engine stages in execution order."""

    COLLECT = "collect"
    RECONCILE = "reconcile"
    PERSIST = "persist"
    ENFORCE = "enforce"


@dataclass(frozen=True)
class CollectResult:
    """Profiles gathered from test runs or loaded files."""
    profiles: tuple[Profile, ...]
    sources: tuple[str, ...]


@dataclass(frozen=True)
class ReconcileResult:
    """Merged profile split by the exclusion set."""
    merged: Profile
    enforced: tuple[CoverageBlock, ...]
    excluded: tuple[CoverageBlock, ...]
    dropped: tuple[CoverageBlock, ...] = ()

    def enforced_profile(self) -> Profile:
        return Profile.from_blocks(self.merged.mode, self.enforced)


@dataclass(frozen=True)
class PersistResult:
    """Where the enforced profile was written."""
    path: Path
    block_count: int


@dataclass(frozen=True)
class EnforceResult:
    """Outcome of the enforcement check."""
    report: CoverageReport
    enforced: bool

    @property
    def passed(self) -> bool:
        return not (self.enforced and self.report.has_gaps)


@dataclass(frozen=True)
class EngineRun:
    """Results of every stage of a complete run."""
    collected: CollectResult
    reconciled: ReconcileResult
    persisted: PersistResult
    enforced: EnforceResult

    @property
    def report(self) -> CoverageReport:
        return self.enforced.report


@dataclass
class CoverageEngine:
    """
    Collect, reconcile, persist and enforce statement coverage.

    Usage:
        engine = CoverageEngine(setup, packages)
        run = engine.run(exclusions)
        print(run.report.coverage_percentage)
    """

    setup: Setup
    packages: Sequence[PackageSpec]
    runner: TestRunner | None = None
    store: ProfileStore | None = None
    on_test_run: TestRunCallback | None = None
    cover_directories: Sequence[Path] = ()
    exclude_directories: Sequence[Path] = ()

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = ProfileStore()
        if self.runner is None:
            self.runner = PytestRunner(self.store)

    def run(self, exclusions: ExclusionSet) -> EngineRun:
        """
        Run all four stages.

        Raises:
            CovergateError: The first stage failure, with a stage note attached
        """
        collected = self._stage(Stage.COLLECT, self.collect)
        reconciled = self._stage(Stage.RECONCILE, self.reconcile, collected, exclusions)
        persisted = self._stage(Stage.PERSIST, self.persist, reconciled)
        enforced = self._stage(Stage.ENFORCE, self.enforce, reconciled)
        return EngineRun(collected, reconciled, persisted, enforced)

    def _stage(self, stage: Stage, func, *args):
        started = time.monotonic()
        try:
            result = func(*args)
        except Exception as exc:
            log.debug("engine.stage_failed", stage=stage.value, error=type(exc).__name__)
            exc.add_note(f"stage: {stage.value}")
            raise
        log.debug("engine.stage", stage=stage.value, elapsed=round(time.monotonic() - started, 3))
        return result

    # ------------------------------------------------------------------
    # Collect
    # ------------------------------------------------------------------

    def collect(self) -> CollectResult:
        """
        Gather profiles from the load globs or by running the package tests.

        Raises:
            ConfigError: If a load pattern matches no file
            ProfileFormatError: If a profile cannot be parsed
            TestExecutionError: If any package test run fails
        """
        if self.setup.load:
            return self._collect_loaded()
        return self._collect_runs()

    def _collect_loaded(self) -> CollectResult:
        paths: list[Path] = []
        for pattern in self.setup.load:
            full = pattern if Path(pattern).is_absolute() else str(self.setup.root / pattern)
            matches = sorted(glob.glob(full, recursive=True))
            if not matches:
                raise ConfigError(f"load pattern {pattern!r} matches no files")
            paths.extend(Path(match) for match in matches)
        profiles = self.store.load_many(paths)
        log.debug("collect.loaded", files=len(paths))
        return CollectResult(tuple(profiles), tuple(str(path) for path in paths))

    def _collect_runs(self) -> CollectResult:
        with tempfile.TemporaryDirectory(prefix="covergate-") as work_dir:
            options = self._run_options(Path(work_dir))
            if self.setup.jobs > 1 and len(self.packages) > 1:
                artifacts = self._run_parallel(options)
            else:
                artifacts = [self._run_one(package, options) for package in self.packages]
            profiles = tuple(self.store.load(path) for path in artifacts)
        return CollectResult(profiles, tuple(p.import_path for p in self.packages))

    def _run_parallel(self, options: RunOptions) -> list[Path]:
        executor = ThreadPoolExecutor(max_workers=self.setup.jobs)
        try:
            futures = [executor.submit(self._run_one, package, options) for package in self.packages]
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()
            return [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _run_one(self, package: PackageSpec, options: RunOptions) -> Path:
        started = time.monotonic()
        log.info("collect.run", package=package.import_path)
        artifact = self.runner.run(package, options)
        if self.setup.report_test_run and self.on_test_run is not None:
            self.on_test_run(package, time.monotonic() - started)
        return artifact

    def _run_options(self, work_dir: Path) -> RunOptions:
        return RunOptions(
            work_dir=work_dir,
            root=self.setup.root,
            short=self.setup.short,
            timeout=self.setup.timeout,
            test_args=tuple(self.setup.test_args),
            test_paths=tuple(self.setup.root / path for path in self.setup.test_paths),
            cover_directories=tuple(self.cover_directories)
            or tuple(package.directory for package in self.packages),
            verbose=self.setup.verbose,
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self, collected: CollectResult, exclusions: ExclusionSet) -> ReconcileResult:
        """Merge the collected profiles and split their blocks by the exclusion set."""
        if collected.profiles:
            merged = self.store.merge(collected.profiles)
        else:
            merged = Profile(CoverMode.SET)

        enforced: list[CoverageBlock] = []
        excluded: list[CoverageBlock] = []
        dropped: list[CoverageBlock] = []
        for block in merged.blocks():
            if self._in_excluded_package(block.file):
                dropped.append(block)
            elif exclusions.is_excluded(block.range):
                excluded.append(block)
            else:
                enforced.append(block)

        log.debug(
            "reconcile.done",
            blocks=len(merged),
            enforced=len(enforced),
            excluded=len(excluded),
            dropped=len(dropped),
        )
        return ReconcileResult(merged, tuple(enforced), tuple(excluded), tuple(dropped))

    def _in_excluded_package(self, file: str) -> bool:
        if not self.exclude_directories:
            return False
        path = Path(file)
        if not path.is_absolute():
            path = self.setup.root / path
        parent = path.resolve().parent
        return any(parent == d.resolve() or d.resolve() in parent.parents for d in self.exclude_directories)

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    def persist(self, reconciled: ReconcileResult) -> PersistResult:
        """Write the enforced blocks to the output profile."""
        profile = reconciled.enforced_profile()
        path = self.store.save(profile, self.setup.output_path)
        log.info("persist.written", path=str(path), blocks=len(profile))
        return PersistResult(path, len(profile))

    # ------------------------------------------------------------------
    # Enforce
    # ------------------------------------------------------------------

    def enforce(self, reconciled: ReconcileResult) -> EnforceResult:
        """
        Check that every enforced block ran.

        Raises:
            CoverageShortfallError: If enforcement is on and a block never ran
        """
        report = build_report(
            list(reconciled.enforced),
            self.setup.root,
            excluded_blocks=len(reconciled.excluded),
        )
        if self.setup.enforce and report.has_gaps:
            raise CoverageShortfallError(report, report.gaps)
        return EnforceResult(report=report, enforced=self.setup.enforce)
