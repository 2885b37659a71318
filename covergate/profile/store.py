"""
Profile Store.

Reads, writes and merges coverage profiles in the line-oriented text format:

    mode: set
    pkg/mod.py:3.5,3.17 1 1
    pkg/mod.py:5.9,5.20 1 0

Each block line is ``file:startLine.startCol,endLine.endCol numStatements hitCount``.
"""

import re
from collections.abc import Iterable
from pathlib import Path

import structlog

from covergate.analysis.models import SourceRange
from covergate.errors import ModeMismatchError, ProfileFormatError
from covergate.profile.models import CoverageBlock, CoverMode, Profile


log = structlog.get_logger()

MODE_PREFIX = "mode:"

BLOCK_LINE = re.compile(
    r"^(?P<file>.+):(?P<sl>\d+)\.(?P<sc>\d+),(?P<el>\d+)\.(?P<ec>\d+)"
    r" (?P<statements>\d+) (?P<hits>\d+)$"
)


class ProfileStore:
    """
    Parse, serialize and merge coverage profiles.

    Usage:
        store = ProfileStore()
        profile = store.load(Path("coverage.out"))
        merged = store.merge([profile, other])
        store.save(merged, Path("merged.out"))
    """

    def parse(self, text: str, source: str = "<profile>") -> Profile:
        """
        Parse profile text.

        Args:
            text: Profile content
            source: Name used in error messages

        Returns:
            Parsed Profile

        Raises:
            ProfileFormatError: On a missing header or malformed block line
            ModeMismatchError: When concatenated headers disagree
        """
        profile: Profile | None = None
        for line_number, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue
            if line.startswith(MODE_PREFIX):
                mode = self._parse_mode(line, source, line_number)
                if profile is None:
                    profile = Profile(mode)
                elif mode is not profile.mode:
                    raise ModeMismatchError([profile.mode.value, mode.value])
                continue
            if profile is None:
                raise ProfileFormatError(source, "missing mode header", line_number, line)
            profile.add(self._parse_block(line, source, line_number), source)

        if profile is None:
            raise ProfileFormatError(source, "missing mode header")
        return profile

    def serialize(self, profile: Profile) -> str:
        """Render a profile: header, then blocks by file and start position."""
        lines = [f"{MODE_PREFIX} {profile.mode.value}"]
        lines.extend(block.to_line() for block in profile.blocks())
        return "\n".join(lines) + "\n"

    def load(self, path: str | Path) -> Profile:
        """
        Load a profile file.

        Raises:
            ProfileFormatError: If the file is missing, unreadable or malformed
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ProfileFormatError(str(path), f"cannot read profile: {exc}") from exc
        profile = self.parse(text, str(path))
        log.debug("profile.loaded", path=str(path), mode=profile.mode.value, blocks=len(profile))
        return profile

    def load_many(self, paths: Iterable[str | Path]) -> list[Profile]:
        """Load several profile files in order."""
        return [self.load(path) for path in paths]

    def save(self, profile: Profile, path: str | Path) -> Path:
        """Write a profile, creating parent directories as needed."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.serialize(profile), encoding="utf-8")
        log.debug("profile.saved", path=str(path), blocks=len(profile))
        return path

    def merge(self, profiles: Iterable[Profile]) -> Profile:
        """
        Merge profiles into a new profile.

        Blocks with the same range are combined per the shared mode; the
        result does not depend on the order of the inputs.

        Raises:
            ModeMismatchError: If the profiles use different modes
            ValueError: If no profiles are given
        """
        profiles = list(profiles)
        if not profiles:
            raise ValueError("merge needs at least one profile")
        modes = sorted({profile.mode.value for profile in profiles})
        if len(modes) > 1:
            raise ModeMismatchError(modes)

        merged = Profile(profiles[0].mode)
        for profile in profiles:
            for block in profile.blocks():
                merged.add(block, "<merge>")
        return merged

    def _parse_mode(self, line: str, source: str, line_number: int) -> CoverMode:
        value = line[len(MODE_PREFIX):].strip()
        try:
            return CoverMode(value)
        except ValueError:
            raise ProfileFormatError(
                source, f"unknown mode {value!r}", line_number, line
            ) from None

    def _parse_block(self, line: str, source: str, line_number: int) -> CoverageBlock:
        match = BLOCK_LINE.match(line)
        if match is None:
            raise ProfileFormatError(source, "malformed block line", line_number, line)
        try:
            rng = SourceRange(
                file=match["file"],
                start_line=int(match["sl"]),
                start_col=int(match["sc"]),
                end_line=int(match["el"]),
                end_col=int(match["ec"]),
            )
            return CoverageBlock(rng, int(match["statements"]), int(match["hits"]))
        except ValueError as exc:
            raise ProfileFormatError(source, str(exc), line_number, line) from exc


# Convenience functions
def merge_files(paths: Iterable[str | Path], output: str | Path | None = None) -> Profile:
    """
    Merge profile files.

    Args:
        paths: Profile files to merge
        output: Optional path to write the merged profile to

    Returns:
        The merged Profile
    """
    store = ProfileStore()
    merged = store.merge(store.load_many(paths))
    if output is not None:
        store.save(merged, output)
    return merged
