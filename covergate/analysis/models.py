"""
Position and range model shared by the exclusion scanner and the coverage engine.

Lines and columns are 1-based; the end column is exclusive. Ranges compare as
(line, column) pairs.
"""

from bisect import bisect_right
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any


Position = tuple[int, int]


@dataclass(frozen=True)
class SourceRange:
    """A span of source text in one file."""

    file: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int

    def __post_init__(self) -> None:
        if min(self.start_line, self.start_col, self.end_line, self.end_col) < 1:
            raise ValueError(f"non-positive position in range {self}")
        if self.start > self.end:
            raise ValueError(f"range {self} ends before it starts")

    @classmethod
    def from_points(
        cls,
        file: str,
        start_point: tuple[int, int],
        end_point: tuple[int, int],
    ) -> "SourceRange":
        """Build a range from 0-based tree-sitter (row, column) points."""
        return cls(
            file=file,
            start_line=start_point[0] + 1,
            start_col=start_point[1] + 1,
            end_line=end_point[0] + 1,
            end_col=end_point[1] + 1,
        )

    @property
    def start(self) -> Position:
        return (self.start_line, self.start_col)

    @property
    def end(self) -> Position:
        return (self.end_line, self.end_col)

    def contains(self, other: "SourceRange") -> bool:
        """Check whether other lies entirely inside this range."""
        return (
            self.file == other.file
            and self.start <= other.start
            and self.end >= other.end
        )

    def touches(self, other: "SourceRange") -> bool:
        """Check whether the ranges overlap or share a boundary."""
        return (
            self.file == other.file
            and self.start <= other.end
            and other.start <= self.end
        )

    def union(self, other: "SourceRange") -> "SourceRange":
        """Smallest range covering both ranges."""
        if self.file != other.file:
            raise ValueError(f"cannot join ranges of {self.file} and {other.file}")
        start = min(self.start, other.start)
        end = max(self.end, other.end)
        return SourceRange(self.file, start[0], start[1], end[0], end[1])

    def span_text(self) -> str:
        """Position part of the textual form: 'sl.sc,el.ec'."""
        return f"{self.start_line}.{self.start_col},{self.end_line}.{self.end_col}"

    def __str__(self) -> str:
        return f"{self.file}:{self.span_text()}"


def _normalize(ranges: Iterable[SourceRange]) -> tuple[SourceRange, ...]:
    """Sort ranges and merge the ones that overlap or touch."""
    merged: list[SourceRange] = []
    for rng in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and merged[-1].touches(rng):
            merged[-1] = merged[-1].union(rng)
        else:
            merged.append(rng)
    return tuple(merged)


class ExclusionSet(Mapping[str, tuple[SourceRange, ...]]):
    """
    Per-file excluded ranges.

    Ranges of one file are sorted by start position and never overlap; ranges
    that overlap or share a boundary are merged on construction. The set is
    read-only once built.
    """

    def __init__(self, ranges: Mapping[str, Iterable[SourceRange]] | None = None):
        self._ranges: dict[str, tuple[SourceRange, ...]] = {}
        self._starts: dict[str, list[Position]] = {}
        for file, file_ranges in sorted((ranges or {}).items()):
            normalized = _normalize(file_ranges)
            if not normalized:
                continue
            for rng in normalized:
                if rng.file != file:
                    raise ValueError(f"range {rng} filed under {file}")
            self._ranges[file] = normalized
            self._starts[file] = [r.start for r in normalized]

    def __getitem__(self, file: str) -> tuple[SourceRange, ...]:
        return self._ranges[file]

    def __iter__(self) -> Iterator[str]:
        return iter(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExclusionSet):
            return self._ranges == other._ranges
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(self._ranges.items()))

    def __repr__(self) -> str:
        return f"ExclusionSet({self.total_ranges} ranges in {len(self)} files)"

    @property
    def total_ranges(self) -> int:
        """Number of ranges across all files."""
        return sum(len(r) for r in self._ranges.values())

    def covering(self, rng: SourceRange) -> SourceRange | None:
        """Return the exclusion range containing rng, if any."""
        starts = self._starts.get(rng.file)
        if not starts:
            return None
        index = bisect_right(starts, rng.start) - 1
        if index < 0:
            return None
        candidate = self._ranges[rng.file][index]
        return candidate if candidate.contains(rng) else None

    def is_excluded(self, rng: SourceRange) -> bool:
        """Check whether rng is contained in some exclusion range of its file."""
        return self.covering(rng) is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            file: [r.span_text() for r in ranges]
            for file, ranges in self._ranges.items()
        }
