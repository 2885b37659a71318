"""
Package resolution.

Turns package patterns into PackageSpec values. A package is one directory of
Python files; subdirectories are separate packages. Patterns:

- ``./...`` or ``pkg/...``: the directory and every directory below it that
  holds Python files
- ``pkg/sub`` or ``./pkg/sub``: that directory
- ``pkg.sub`` (and ``pkg.sub...``): dotted names, looked up under the root and
  under ``src/``
"""

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import structlog

from covergate.errors import ConfigError


log = structlog.get_logger()

RECURSIVE_SUFFIX = "..."

SKIP_DIRS = frozenset({
    "__pycache__",
    "build",
    "dist",
    "env",
    "node_modules",
    "site-packages",
    "venv",
})


@dataclass(frozen=True, order=True)
class PackageSpec:
    """A package identified by import path and directory."""
    import_path: str
    directory: Path

    def files(self) -> list[Path]:
        """Python files directly inside the package directory."""
        return sorted(p for p in self.directory.glob("*.py") if p.is_file())


def relative_key(path: str | Path, root: str | Path) -> str:
    """Root-relative POSIX key of a path; absolute when outside the root."""
    resolved = Path(path).resolve()
    try:
        return resolved.relative_to(Path(root).resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


def _skipped(directory: Path) -> bool:
    name = directory.name
    return name in SKIP_DIRS or name.startswith(".") or name.endswith(".egg-info")


def _has_python_files(directory: Path) -> bool:
    return any(p.is_file() for p in directory.glob("*.py"))


def _walk_directories(base: Path) -> list[Path]:
    """The base directory and every directory below it, skipped trees pruned."""
    found = [base]
    pending = [base]
    while pending:
        current = pending.pop()
        for child in sorted(current.iterdir()):
            if child.is_dir() and not _skipped(child):
                found.append(child)
                pending.append(child)
    return sorted(found)


class PackageResolver:
    """
    Resolve package patterns relative to a project root.

    Usage:
        resolver = PackageResolver(Path.cwd())
        packages = resolver.resolve(["./..."])
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def resolve(self, patterns: Iterable[str] | None = None) -> list[PackageSpec]:
        """
        Resolve patterns into packages, deduplicated by import path.

        Raises:
            ConfigError: If a pattern matches no package
        """
        patterns = list(patterns or []) or ["./..."]
        packages: dict[str, Path] = {}
        for pattern in patterns:
            for import_path, directory in self._expand(pattern).items():
                packages.setdefault(import_path, directory)
        resolved = sorted(PackageSpec(path, directory) for path, directory in packages.items())
        log.debug("packages.resolved", patterns=patterns, count=len(resolved))
        return resolved

    def resolve_import_paths(self, patterns: Iterable[str]) -> list[str]:
        """Resolve patterns and return only the import paths."""
        return [package.import_path for package in self.resolve(patterns)]

    def import_path_for(self, directory: Path) -> str:
        """Dotted import path of a directory below the root."""
        try:
            parts = list(directory.resolve().relative_to(self.root).parts)
        except ValueError:
            return directory.resolve().as_posix()
        if parts and parts[0] == "src":
            parts = parts[1:]
        return ".".join(parts) if parts else self.root.name

    def _expand(self, pattern: str) -> dict[str, Path]:
        text = pattern.strip().rstrip("/")
        if not text:
            raise ConfigError("empty package pattern")
        recursive = text.endswith(RECURSIVE_SUFFIX)
        if recursive:
            text = text[: -len(RECURSIVE_SUFFIX)]
            text = (text[:-1] if text.endswith("/") else text) or "."
        base = self._locate(text)
        if base is None:
            raise ConfigError(f"cannot resolve package pattern {pattern!r}")

        directories = _walk_directories(base) if recursive else [base]

        found = {
            self.import_path_for(directory): directory
            for directory in directories
            if _has_python_files(directory)
        }
        if not found:
            raise ConfigError(f"package pattern {pattern!r} matches no Python files")
        return found

    def _locate(self, text: str) -> Path | None:
        candidate = Path(text)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        if candidate.is_dir():
            return candidate.resolve()
        if "/" not in text and not text.startswith("."):
            dotted = Path(*text.split("."))
            for base in (self.root, self.root / "src"):
                if (base / dotted).is_dir():
                    return (base / dotted).resolve()
        return None
