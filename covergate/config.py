"""
Configuration for covergate runs.

Settings come from an optional ``.covergate.yaml`` in the project root (or an
explicit ``--config`` file) and from command line flags; flags win.

Example .covergate.yaml:

    packages: ["./..."]
    enforce: true
    timeout: 10m
    exclude_packages: [mypkg/generated]
    options:
      exclude_err_no_return_param: false
      marker: notest
"""

import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from covergate.errors import ConfigError


log = structlog.get_logger()

CONFIG_FILE_NAME = ".covergate.yaml"

DEFAULT_OUTPUT_NAME = "coverage.out"

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str | int | float) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) and unit strings such as ``90s``, ``10m``,
    ``1h30m`` or ``250ms``.

    Raises:
        ValueError: If the value is malformed or not positive
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            position = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position != len(text) or not text:
                raise ValueError(f"invalid duration {value!r}") from None
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


def split_entries(values: Any) -> list[str]:
    """Flatten comma-separated entries: ['a,b', 'c'] -> ['a', 'b', 'c']."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    entries = []
    for value in values:
        entries.extend(part.strip() for part in str(value).split(","))
    return [entry for entry in entries if entry]


class Options(BaseModel):
    """Exclusion scanner settings."""

    exclude_err_no_return_param: bool = Field(
        default=False,
        description="Exclude every error guard in functions that return nothing",
    )
    marker: str = Field(default="notest", min_length=1, pattern=r"^[\w.-]+$")

    model_config = ConfigDict(extra="forbid")


class Setup(BaseModel):
    """Complete settings of one gate run."""

    root: Path = Field(default_factory=Path.cwd)
    packages: list[str] = Field(default_factory=list)
    enforce: bool = False
    verbose: bool = False
    report_test_run: bool = False
    short: bool = False
    timeout: float | None = Field(default=None, description="Per-package test timeout in seconds")
    load: list[str] = Field(default_factory=list, description="Profile globs to load instead of testing")
    output: Path | None = None
    options: Options = Field(default_factory=Options)
    cover_packages: list[str] = Field(default_factory=list)
    exclude_packages: list[str] = Field(default_factory=list)
    test_args: list[str] = Field(default_factory=list)
    test_paths: list[str] = Field(default_factory=list)
    jobs: int = Field(default=1, ge=1, le=64)

    model_config = ConfigDict(extra="forbid")

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        if value is None or value == "":
            return None
        return parse_duration(value)

    @field_validator("cover_packages", "exclude_packages", mode="before")
    @classmethod
    def _split_packages(cls, value: Any) -> list[str]:
        return split_entries(value)

    @field_validator("packages", "load", "test_args", "test_paths", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return [] if value is None else value

    @model_validator(mode="after")
    def _check_contradictions(self) -> "Setup":
        if self.load:
            conflicting = [
                name
                for name, given in (
                    ("short", self.short),
                    ("timeout", self.timeout is not None),
                    ("test_args", bool(self.test_args)),
                )
                if given
            ]
            if conflicting:
                raise ValueError(
                    "load cannot be combined with " + ", ".join(conflicting)
                    + " (profiles are loaded, no tests run)"
                )
        return self

    @property
    def output_path(self) -> Path:
        """Where the enforced profile is written."""
        if self.output is None:
            return self.root / DEFAULT_OUTPUT_NAME
        return self.output if self.output.is_absolute() else self.root / self.output


class SetupLoader:
    """Load and validate Setup from YAML files, dictionaries and CLI overrides."""

    @classmethod
    def from_yaml(cls, path: str | Path) -> Setup:
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Setup loaded from file

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        return cls._parse_config(cls._read_yaml(Path(path)))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Setup:
        """
        Create configuration from a dictionary.

        Raises:
            ConfigError: If the settings are invalid or contradictory
        """
        return cls._parse_config(data)

    @classmethod
    def discover(cls, root: str | Path) -> Path | None:
        """Find the configuration file in the project root."""
        candidate = Path(root) / CONFIG_FILE_NAME
        return candidate if candidate.is_file() else None

    @classmethod
    def build(
        cls,
        root: str | Path | None = None,
        config_path: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> Setup:
        """
        Combine the configuration file with command line overrides.

        Overrides that are None, False or empty count as not given, so a
        flag can switch a file setting on but never off.

        Args:
            root: Project root (defaults to the working directory)
            config_path: Explicit configuration file; discovered in root when None
            overrides: Values from the command line

        Returns:
            Validated Setup

        Raises:
            ConfigError: If any setting is invalid or contradictory
        """
        root_path = Path(root).resolve() if root is not None else Path.cwd()
        path = Path(config_path) if config_path is not None else cls.discover(root_path)
        data: dict[str, Any] = cls._read_yaml(path) if path is not None else {}

        for key, value in (overrides or {}).items():
            if value is None or value is False or value == [] or value == "":
                continue
            if key == "options" and isinstance(value, dict):
                merged = dict(data.get("options") or {})
                merged.update({k: v for k, v in value.items() if v not in (None, False)})
                data["options"] = merged
                continue
            data[key] = value
        data["root"] = root_path

        log.debug("config.loaded", config=str(path) if path else None, keys=sorted(data))
        return cls._parse_config(data)

    @classmethod
    def _read_yaml(cls, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration {path} must be a mapping, got {type(data).__name__}")
        return data

    @classmethod
    def _parse_config(cls, data: dict[str, Any]) -> Setup:
        """Parse configuration dictionary into Setup."""
        try:
            return Setup.model_validate(data)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'setup'}: {error['msg']}"
                for error in exc.errors()
            )
            raise ConfigError(f"invalid configuration: {problems}") from exc
