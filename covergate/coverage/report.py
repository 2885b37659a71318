"""
Coverage Report.

Aggregates enforced blocks into statement totals, a per-file breakdown and the
list of uncovered blocks with their source.
"""

import textwrap
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from covergate.profile.models import CoverageBlock


@dataclass(frozen=True)
class CoverageGap:
    """An enforced block that never ran."""

    block: CoverageBlock
    snippet: str = ""

    def render(self) -> str:
        """Location line followed by the indented source of the block."""
        lines = [str(self.block.range)]
        lines.extend(f"    {line}" for line in self.snippet.splitlines())
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": str(self.block.range),
            "statements": self.block.num_statements,
            "source": self.snippet,
        }


@dataclass
class FileCoverage:
    """Statement coverage of one file."""

    file: str
    total_statements: int = 0
    covered_statements: int = 0

    @property
    def coverage_percentage(self) -> float:
        """Coverage percentage (0.0 to 100.0)."""
        if self.total_statements == 0:
            return 100.0
        return (self.covered_statements / self.total_statements) * 100.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "file": self.file,
            "total_statements": self.total_statements,
            "covered_statements": self.covered_statements,
            "coverage_percentage": round(self.coverage_percentage, 2),
        }


@dataclass
class CoverageReport:
    """Statement coverage over the enforced blocks of a run."""

    timestamp: datetime
    files: dict[str, FileCoverage] = field(default_factory=dict)
    gaps: list[CoverageGap] = field(default_factory=list)
    excluded_blocks: int = 0

    @property
    def total_statements(self) -> int:
        return sum(f.total_statements for f in self.files.values())

    @property
    def covered_statements(self) -> int:
        return sum(f.covered_statements for f in self.files.values())

    @property
    def coverage_percentage(self) -> float:
        """Coverage percentage; 100.0 when nothing is enforced."""
        total = self.total_statements
        if total == 0:
            return 100.0
        return (self.covered_statements / total) * 100.0

    @property
    def has_gaps(self) -> bool:
        """Check if there are any coverage gaps."""
        return len(self.gaps) > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "coverage_percentage": round(self.coverage_percentage, 2),
            "total_statements": self.total_statements,
            "covered_statements": self.covered_statements,
            "excluded_blocks": self.excluded_blocks,
            "has_gaps": self.has_gaps,
            "files": [self.files[name].to_dict() for name in sorted(self.files)],
            "gaps": [gap.to_dict() for gap in self.gaps],
        }


class SnippetReader:
    """Reads and undents the source lines of blocks, caching file contents."""

    def __init__(self, root: Path):
        self.root = root
        self._cache: dict[str, list[str] | None] = {}

    def snippet(self, block: CoverageBlock) -> str:
        lines = self._lines(block.file)
        if lines is None:
            return ""
        selected = lines[block.range.start_line - 1:block.range.end_line]
        return textwrap.dedent("\n".join(selected)).strip("\n")

    def _lines(self, file: str) -> list[str] | None:
        if file not in self._cache:
            path = Path(file)
            if not path.is_absolute():
                path = self.root / path
            try:
                self._cache[file] = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                self._cache[file] = None
        return self._cache[file]


def build_report(
    enforced: list[CoverageBlock],
    root: Path,
    excluded_blocks: int = 0,
) -> CoverageReport:
    """
    Build a report from the enforced blocks of a run.

    Args:
        enforced: Blocks that must have run
        root: Project root used to read source snippets
        excluded_blocks: Number of blocks exempted by exclusions

    Returns:
        CoverageReport with gaps ordered by file then start position
    """
    report = CoverageReport(timestamp=datetime.now(UTC), excluded_blocks=excluded_blocks)
    reader = SnippetReader(root)
    uncovered: list[CoverageBlock] = []
    for block in enforced:
        file_cov = report.files.setdefault(block.file, FileCoverage(file=block.file))
        file_cov.total_statements += block.num_statements
        if block.covered:
            file_cov.covered_statements += block.num_statements
        else:
            uncovered.append(block)

    uncovered.sort(key=lambda b: (b.file, b.range.start, b.range.end))
    report.gaps = [CoverageGap(block, reader.snippet(block)) for block in uncovered]
    return report
