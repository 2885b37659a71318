"""
Covergate Coverage Engine.

Collect, reconcile, persist and enforce statement coverage.
"""

from covergate.coverage.engine import (
    CollectResult,
    CoverageEngine,
    EnforceResult,
    EngineRun,
    PersistResult,
    ReconcileResult,
    Stage,
)
from covergate.coverage.report import CoverageGap, CoverageReport, FileCoverage
from covergate.coverage.runner import CoverageDataConverter, PytestRunner, RunOptions, TestRunner

__all__ = [
    "CollectResult",
    "CoverageDataConverter",
    "CoverageEngine",
    "CoverageGap",
    "CoverageReport",
    "EnforceResult",
    "EngineRun",
    "FileCoverage",
    "PersistResult",
    "PytestRunner",
    "ReconcileResult",
    "RunOptions",
    "Stage",
    "TestRunner",
]
