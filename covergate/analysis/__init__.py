"""
Covergate Exclusion Analysis.

Parse package sources and find the code exempt from the coverage requirement.
"""

from covergate.analysis.models import ExclusionSet, SourceRange
from covergate.analysis.parser import ParsedModule, PythonParser
from covergate.analysis.scanner import (
    BlockShape,
    ExclusionScanner,
    ScanContext,
    ScanOptions,
    ScanReport,
    scan_string,
)
from covergate.analysis.types import FunctionScope, TypeIndex

__all__ = [
    "BlockShape",
    "ExclusionScanner",
    "ExclusionSet",
    "FunctionScope",
    "ParsedModule",
    "PythonParser",
    "ScanContext",
    "ScanOptions",
    "ScanReport",
    "SourceRange",
    "TypeIndex",
    "scan_string",
]
