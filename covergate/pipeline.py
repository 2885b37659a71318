"""
Gate Pipeline.

Ties the pieces together: resolve packages, scan them for exclusions, then
run the coverage engine against the resulting exclusion set.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from covergate.analysis.models import ExclusionSet
from covergate.analysis.scanner import ExclusionScanner, ScanOptions
from covergate.config import Setup
from covergate.coverage.engine import CoverageEngine, EngineRun, TestRunCallback
from covergate.coverage.runner import TestRunner
from covergate.packages import PackageResolver, PackageSpec


log = structlog.get_logger()


@dataclass(frozen=True)
class GateResult:
    """Outcome of a complete gate run."""
    packages: tuple[PackageSpec, ...]
    exclusions: ExclusionSet
    run: EngineRun

    @property
    def passed(self) -> bool:
        return self.run.enforced.passed


class GatePipeline:
    """
    Run the coverage gate end to end.

    Usage:
        setup = SetupLoader.build(root=".", overrides={"enforce": True})
        result = GatePipeline(setup).run(["./..."])
    """

    def __init__(
        self,
        setup: Setup,
        runner: TestRunner | None = None,
        on_test_run: TestRunCallback | None = None,
    ):
        self.setup = setup
        self.runner = runner
        self.on_test_run = on_test_run
        self.resolver = PackageResolver(setup.root)

    def resolve(self, package_args: Sequence[str] | None = None) -> list[PackageSpec]:
        """Target packages: arguments, else the configured packages, else ./..."""
        patterns = list(package_args or []) or self.setup.packages or ["./..."]
        return self.resolver.resolve(patterns)

    def scan(self, packages: Sequence[PackageSpec]) -> ExclusionSet:
        """
        Scan packages for exclusions.

        Raises:
            ScanError: The first package that failed to parse
        """
        options = ScanOptions(
            exclude_err_no_return_param=self.setup.options.exclude_err_no_return_param,
            marker=self.setup.options.marker,
        )
        report = ExclusionScanner(options, root=self.setup.root).scan(packages)
        report.raise_for_failures()
        log.debug(
            "pipeline.scanned",
            packages=len(report.scanned_packages),
            ranges=report.exclusions.total_ranges,
        )
        return report.exclusions

    def run(self, package_args: Sequence[str] | None = None) -> GateResult:
        """
        Resolve, scan and run the engine.

        Raises:
            CovergateError: From whichever step failed
        """
        packages = self.resolve(package_args)
        cover = self.resolver.resolve(self.setup.cover_packages) if self.setup.cover_packages else []
        excluded = self.resolver.resolve(self.setup.exclude_packages) if self.setup.exclude_packages else []
        exclusions = self.scan(packages)

        engine = CoverageEngine(
            setup=self.setup,
            packages=packages,
            runner=self.runner,
            on_test_run=self.on_test_run,
            cover_directories=[package.directory for package in cover],
            exclude_directories=[package.directory for package in excluded],
        )
        run = engine.run(exclusions)
        return GateResult(tuple(packages), exclusions, run)
