"""
Tests for package pattern resolution.
"""

from pathlib import Path

import pytest

from covergate.errors import ConfigError
from covergate.packages import PackageResolver, PackageSpec, relative_key


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project with nested packages and directories to skip."""
    for directory in ("app", "app/core", "app/empty", "src/lib", ".venv/pkg", "app/__pycache__"):
        (tmp_path / directory).mkdir(parents=True)
    (tmp_path / "setup_helpers.py").write_text("X = 1\n")
    (tmp_path / "app" / "__init__.py").write_text("")
    (tmp_path / "app" / "main.py").write_text("X = 1\n")
    (tmp_path / "app" / "core" / "engine.py").write_text("X = 1\n")
    (tmp_path / "app" / "empty" / "README.txt").write_text("nothing\n")
    (tmp_path / "src" / "lib" / "util.py").write_text("X = 1\n")
    (tmp_path / ".venv" / "pkg" / "mod.py").write_text("X = 1\n")
    (tmp_path / "app" / "__pycache__" / "main.py").write_text("X = 1\n")
    return tmp_path


class TestPackageSpec:
    """Test PackageSpec."""

    def test_files_non_recursive(self, project):
        """Test only direct Python files belong to a package."""
        spec = PackageSpec("app", project / "app")
        assert [p.name for p in spec.files()] == ["__init__.py", "main.py"]

    def test_ordering(self, project):
        """Test specs sort by import path."""
        specs = sorted([PackageSpec("b", project), PackageSpec("a", project)])
        assert [s.import_path for s in specs] == ["a", "b"]


class TestPackageResolver:
    """Test PackageResolver."""

    def test_recursive_root_pattern(self, project):
        """Test ./... finds every package and skips hidden and cache directories."""
        resolver = PackageResolver(project)
        paths = resolver.resolve_import_paths(["./..."])
        assert paths == sorted([project.name, "app", "app.core", "lib"])

    def test_default_pattern(self, project):
        """Test no patterns means ./..."""
        resolver = PackageResolver(project)
        assert resolver.resolve() == resolver.resolve(["./..."])

    def test_directory_pattern(self, project):
        """Test a plain directory is one package."""
        packages = PackageResolver(project).resolve(["app/core"])
        assert packages == [PackageSpec("app.core", (project / "app" / "core").resolve())]

    def test_recursive_directory_pattern(self, project):
        """Test dir/... includes the directory and its subpackages."""
        paths = PackageResolver(project).resolve_import_paths(["./app/..."])
        assert paths == ["app", "app.core"]

    def test_parent_recursive_pattern(self, tmp_path):
        """Test ../... walks the parent of the root, not the root itself."""
        (tmp_path / "top.py").write_text("X = 1\n")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "m.py").write_text("X = 1\n")

        packages = PackageResolver(tmp_path / "sub").resolve(["../..."])

        assert {p.directory for p in packages} == {tmp_path.resolve(), (tmp_path / "sub").resolve()}

    def test_dotted_pattern(self, project):
        """Test dotted names are looked up in the root and under src/."""
        resolver = PackageResolver(project)
        assert resolver.resolve_import_paths(["app.core"]) == ["app.core"]
        assert resolver.resolve_import_paths(["lib"]) == ["lib"]

    def test_duplicates_removed(self, project):
        """Test overlapping patterns yield each package once."""
        paths = PackageResolver(project).resolve_import_paths(["app/...", "app.core", "app"])
        assert paths == ["app", "app.core"]

    def test_unknown_pattern(self, project):
        """Test unresolvable patterns raise ConfigError."""
        with pytest.raises(ConfigError, match="cannot resolve"):
            PackageResolver(project).resolve(["missing"])

    def test_pattern_without_python_files(self, project):
        """Test a directory without Python files is an error."""
        with pytest.raises(ConfigError, match="no Python files"):
            PackageResolver(project).resolve(["app/empty"])


class TestRelativeKey:
    """Test relative_key."""

    def test_inside_root(self, tmp_path):
        """Test files below the root get POSIX relative keys."""
        assert relative_key(tmp_path / "pkg" / "a.py", tmp_path) == "pkg/a.py"

    def test_outside_root(self, tmp_path):
        """Test files outside the root keep absolute paths."""
        outside = tmp_path.parent / "elsewhere.py"
        assert relative_key(outside, tmp_path) == outside.resolve().as_posix()
