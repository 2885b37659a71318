"""
Error taxonomy for covergate.

Every pipeline stage fails with one of these. Only CoverageShortfallError is an
expected outcome (an under-tested codebase); the others are operational faults
and are surfaced to the caller unchanged.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from covergate.coverage.report import CoverageGap, CoverageReport


class CovergateError(Exception):
    """Base class for all covergate failures."""


class ConfigError(CovergateError):
    """Raised for bad or contradictory settings and unresolvable package patterns."""


class ScanError(CovergateError):
    """Raised when a package cannot be parsed for exclusion scanning."""

    def __init__(self, package: str, file: str, detail: str) -> None:
        self.package = package
        self.file = file
        self.detail = detail
        super().__init__(f"package {package}: {file}: {detail}")


class TestExecutionError(CovergateError):
    """Raised when the test run of a package fails, exits non-zero or times out."""

    __test__ = False

    def __init__(
        self,
        package: str,
        detail: str,
        output: str = "",
        timed_out: bool = False,
    ) -> None:
        self.package = package
        self.detail = detail
        self.output = output
        self.timed_out = timed_out
        message = f"package {package}: {detail}"
        if output.strip():
            message += f"\n{output.rstrip()}"
        super().__init__(message)


class ProfileFormatError(CovergateError):
    """Raised for malformed coverage profile content."""

    def __init__(
        self,
        source: str,
        detail: str,
        line_number: int | None = None,
        line: str | None = None,
    ) -> None:
        self.source = source
        self.detail = detail
        self.line_number = line_number
        self.line = line
        if line_number is None:
            super().__init__(f"{source}: {detail}")
        else:
            super().__init__(f"{source}:{line_number}: {detail}: {line!r}")


class ModeMismatchError(CovergateError):
    """Raised when profiles declared under different modes are combined."""

    def __init__(self, modes: Sequence[str]) -> None:
        self.modes = tuple(modes)
        super().__init__(
            "cannot merge profiles with different modes: " + ", ".join(self.modes)
        )


class CoverageShortfallError(CovergateError):
    """Raised by enforcement when non-excluded code was never executed."""

    def __init__(self, report: CoverageReport, gaps: Sequence[CoverageGap]) -> None:
        self.report = report
        self.gaps = tuple(gaps)
        lines = [
            f"untested code ({report.coverage_percentage:.2f}% of statements covered):"
        ]
        for gap in self.gaps:
            lines.append(gap.render())
        super().__init__("\n".join(lines))
