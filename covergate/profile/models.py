"""
Coverage profile data model.

A profile is a set of source blocks, each with the number of statements it
holds and how often it ran. The cover mode decides how hit counts of the same
block are combined.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from covergate.analysis.models import SourceRange
from covergate.errors import ProfileFormatError


class CoverMode(str, Enum):
    """How hit counts are recorded and combined."""

    SET = "set"
    """Boolean hit; combined with logical OR, stored as 0 or 1."""

    COUNT = "count"
    ATOMIC = "atomic"

    def combine(self, first: int, second: int) -> int:
        """Combine two hit counts of the same block."""
        if self is CoverMode.SET:
            return 1 if (first or second) else 0
        return first + second

    def normalize(self, hit_count: int) -> int:
        """Stored form of a single hit count."""
        if self is CoverMode.SET:
            return 1 if hit_count else 0
        return hit_count


BlockKey = tuple[str, SourceRange]


@dataclass(frozen=True)
class CoverageBlock:
    """One contiguous block of statements in a profile."""

    range: SourceRange
    num_statements: int
    hit_count: int

    def __post_init__(self) -> None:
        if self.num_statements < 1:
            raise ValueError(f"block {self.range} holds {self.num_statements} statements")
        if self.hit_count < 0:
            raise ValueError(f"block {self.range} has negative hit count {self.hit_count}")

    @property
    def file(self) -> str:
        return self.range.file

    @property
    def key(self) -> BlockKey:
        return (self.range.file, self.range)

    @property
    def covered(self) -> bool:
        return self.hit_count > 0

    def with_hits(self, hit_count: int) -> "CoverageBlock":
        return CoverageBlock(self.range, self.num_statements, hit_count)

    def to_line(self) -> str:
        """Profile line: 'file:sl.sc,el.ec numStatements hitCount'."""
        return f"{self.range} {self.num_statements} {self.hit_count}"


@dataclass
class Profile:
    """
    Blocks of a coverage profile grouped by file.

    Usage:
        profile = Profile(CoverMode.SET)
        profile.add(block)
        for block in profile.blocks():
            ...
    """

    mode: CoverMode
    _files: dict[str, dict[SourceRange, CoverageBlock]] = field(default_factory=dict, repr=False)

    @classmethod
    def from_blocks(cls, mode: CoverMode, blocks: Iterable[CoverageBlock]) -> "Profile":
        profile = cls(mode)
        for block in blocks:
            profile.add(block)
        return profile

    def add(self, block: CoverageBlock, source: str = "<profile>") -> None:
        """
        Add a block, combining hit counts with an existing block of the same range.

        Raises:
            ProfileFormatError: If the same range was recorded with a different
                statement count
        """
        file_blocks = self._files.setdefault(block.file, {})
        existing = file_blocks.get(block.range)
        if existing is None:
            file_blocks[block.range] = block.with_hits(self.mode.normalize(block.hit_count))
            return
        if existing.num_statements != block.num_statements:
            raise ProfileFormatError(
                source,
                f"block {block.range} recorded with {existing.num_statements} "
                f"and {block.num_statements} statements",
            )
        file_blocks[block.range] = existing.with_hits(
            self.mode.combine(existing.hit_count, block.hit_count)
        )

    @property
    def files(self) -> list[str]:
        return sorted(self._files)

    def blocks(self, file: str | None = None) -> Iterator[CoverageBlock]:
        """Blocks sorted by file then start position."""
        files = [file] if file is not None else self.files
        for name in files:
            for rng in sorted(self._files.get(name, {}), key=lambda r: (r.start, r.end)):
                yield self._files[name][rng]

    def get(self, rng: SourceRange) -> CoverageBlock | None:
        return self._files.get(rng.file, {}).get(rng)

    def __len__(self) -> int:
        return sum(len(blocks) for blocks in self._files.values())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Profile):
            return NotImplemented
        return self.mode is other.mode and self._files == other._files

    @property
    def total_statements(self) -> int:
        return sum(block.num_statements for block in self.blocks())

    @property
    def covered_statements(self) -> int:
        return sum(block.num_statements for block in self.blocks() if block.covered)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "mode": self.mode.value,
            "files": {
                name: [
                    {
                        "range": block.range.span_text(),
                        "statements": block.num_statements,
                        "hits": block.hit_count,
                    }
                    for block in self.blocks(name)
                ]
                for name in self.files
            },
        }
