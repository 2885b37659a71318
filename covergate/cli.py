"""
Covergate CLI - Command-line interface for the coverage gate.

Provides commands for running the gate, inspecting exclusions, and merging
coverage profiles. Everything after a literal ``--`` on the ``run`` command
line is passed to pytest.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from covergate.analysis.scanner import ExclusionScanner, ScanOptions
from covergate.config import SetupLoader
from covergate.errors import CovergateError
from covergate.log import setup_logging
from covergate.packages import PackageResolver, PackageSpec
from covergate.pipeline import GatePipeline
from covergate.profile.store import ProfileStore

if TYPE_CHECKING:
    from covergate.analysis.models import ExclusionSet
    from covergate.pipeline import GateResult

app = typer.Typer(
    name="covergate",
    help="Statement coverage gate for Python packages with automatic error-path exclusions",
    add_completion=False,
)

console = Console()

FORMATS = ("console", "json")


def version_callback(value: bool) -> None:
    """Display version information."""
    if value:
        from covergate import __version__

        console.print(f"[bold blue]covergate[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """covergate - fail the build unless every statement that matters ran."""
    pass


@app.command()
def run(
    ctx: typer.Context,
    packages: list[str] = typer.Argument(None, help="Package patterns (default ./...)"),
    enforce: bool = typer.Option(False, "--enforce", "-e", help="Fail on any untested statement"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    report: bool = typer.Option(False, "--report", "-r", help="Report each package test run"),
    short: bool = typer.Option(False, "--short", help="Skip tests marked slow"),
    timeout: str = typer.Option(None, "--timeout", help="Per-package test timeout, e.g. 90s or 10m"),
    output: str = typer.Option(None, "--output", "-o", help="Profile output file (default coverage.out)"),
    test_arg: list[str] = typer.Option(None, "--test-arg", "-t", help="Argument passed to pytest"),
    load: list[str] = typer.Option(None, "--load", "-l", help="Load profiles (glob) instead of testing"),
    excludenoreturn: bool = typer.Option(
        False,
        "--excludenoreturn",
        help="Exclude error guards in functions that return nothing",
    ),
    coverpkg: list[str] = typer.Option(None, "--coverpkg", help="Packages to instrument (comma separated)"),
    ex: list[str] = typer.Option(None, "--ex", help="Packages to leave out of the result (comma separated)"),
    jobs: int = typer.Option(None, "--jobs", "-j", help="Package test runs in parallel"),
    config: str = typer.Option(None, "--config", "-c", help="Configuration file (default .covergate.yaml)"),
    format_: str = typer.Option("console", "--format", "-f", help="Output format: console, json"),
) -> None:
    """
    Run the tests of every package under coverage and enforce the result.

    Error-handling blocks that only propagate the error, and code marked
    with a '# notest' comment, are exempt from the coverage requirement.
    """
    setup_logging(verbose)
    _check_format(format_)

    extra_args = list((ctx.obj or {}).get("test_args", []))
    overrides = {
        "enforce": enforce,
        "verbose": verbose,
        "report_test_run": report,
        "short": short,
        "timeout": timeout,
        "output": output,
        "test_args": list(test_arg or []) + extra_args,
        "load": list(load or []),
        "options": {"exclude_err_no_return_param": excludenoreturn},
        "cover_packages": list(coverpkg or []),
        "exclude_packages": list(ex or []),
        "jobs": jobs,
    }

    try:
        setup = SetupLoader.build(root=Path.cwd(), config_path=config, overrides=overrides)
        pipeline = GatePipeline(setup, on_test_run=_print_test_run)
        result = pipeline.run(packages or [])
    except CovergateError as exc:
        _print_error(exc)
        raise typer.Exit(1) from exc

    if format_ == "json":
        console.print_json(json.dumps(_result_to_json(result)))
    else:
        _display_result(result, verbose)


@app.command()
def scan(
    packages: list[str] = typer.Argument(None, help="Package patterns (default ./...)"),
    excludenoreturn: bool = typer.Option(
        False,
        "--excludenoreturn",
        help="Exclude error guards in functions that return nothing",
    ),
    marker: str = typer.Option(None, "--marker", help="Exclusion marker word (default notest)"),
    config: str = typer.Option(None, "--config", "-c", help="Configuration file (default .covergate.yaml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    format_: str = typer.Option("console", "--format", "-f", help="Output format: console, json"),
) -> None:
    """
    Show the code ranges exempt from coverage, without running tests.
    """
    setup_logging(verbose)
    _check_format(format_)

    try:
        setup = SetupLoader.build(
            root=Path.cwd(),
            config_path=config,
            overrides={"options": {"exclude_err_no_return_param": excludenoreturn, "marker": marker}},
        )
        patterns = list(packages or []) or setup.packages or ["./..."]
        targets = PackageResolver(setup.root).resolve(patterns)
    except CovergateError as exc:
        _print_error(exc)
        raise typer.Exit(1) from exc

    options = ScanOptions(
        exclude_err_no_return_param=setup.options.exclude_err_no_return_param,
        marker=setup.options.marker,
    )
    report = ExclusionScanner(options, root=setup.root).scan(targets)

    if format_ == "json":
        payload = {
            "packages": report.scanned_packages,
            "exclusions": report.exclusions.to_dict(),
            "failures": [str(failure) for failure in report.failures],
        }
        console.print_json(json.dumps(payload))
    else:
        _display_exclusions(targets, report.exclusions)

    if report.has_failures:
        for failure in report.failures:
            _print_error(failure)
        raise typer.Exit(1)


@app.command()
def merge(
    files: list[str] = typer.Argument(..., help="Profile files to merge"),
    output: str = typer.Option(None, "--output", "-o", help="Write the merged profile here"),
) -> None:
    """
    Merge coverage profiles of the same mode into one.
    """
    setup_logging()
    store = ProfileStore()
    try:
        merged = store.merge(store.load_many(files))
    except CovergateError as exc:
        _print_error(exc)
        raise typer.Exit(1) from exc

    if output:
        path = store.save(merged, output)
        console.print(f"[green]✓[/green] Merged {len(files)} profile(s) into {path}")
    else:
        console.print(store.serialize(merged), end="", markup=False, highlight=False, soft_wrap=True)


def split_test_args(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split a command line at the first literal '--'."""
    if "--" not in argv:
        return list(argv), []
    index = argv.index("--")
    return argv[:index], argv[index + 1:]


def main(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    args, test_args = split_test_args(sys.argv[1:] if argv is None else argv)
    app(args=args, obj={"test_args": test_args}, prog_name="covergate")


def _check_format(format_: str) -> None:
    if format_ not in FORMATS:
        console.print(f"[red]Error:[/red] Unknown format: {escape(format_)}. Use one of: {', '.join(FORMATS)}")
        raise typer.Exit(1)


def _print_error(exc: BaseException) -> None:
    """Print an error and its notes."""
    console.print(f"[red]Error:[/red] {escape(str(exc))}")
    for note in getattr(exc, "__notes__", []):
        console.print(f"[dim]{escape(note)}[/dim]")


def _print_test_run(package: PackageSpec, elapsed: float) -> None:
    console.print(f"[green]ok[/green]  {escape(package.import_path)}  [dim]{elapsed:.2f}s[/dim]")


def _result_to_json(result: GateResult) -> dict[str, object]:
    """Convert a gate result to JSON-serializable format."""
    return {
        "packages": [package.import_path for package in result.packages],
        "profile": str(result.run.persisted.path),
        "passed": result.passed,
        "exclusions": result.exclusions.to_dict(),
        "report": result.run.report.to_dict(),
    }


def _display_result(result: GateResult, verbose: bool = False) -> None:
    """Display a gate result in the console."""
    report = result.run.report

    table = Table(show_header=True, header_style="bold")
    table.add_column("File", style="cyan")
    table.add_column("Statements")
    table.add_column("Covered")
    table.add_column("Coverage")
    for name in sorted(report.files):
        file_cov = report.files[name]
        table.add_row(
            escape(name),
            str(file_cov.total_statements),
            str(file_cov.covered_statements),
            f"{file_cov.coverage_percentage:.1f}%",
        )
    console.print(table)

    color = "green" if not report.has_gaps else "yellow"
    console.print(
        Panel(
            f"[bold]Coverage:[/bold] [{color}]{report.coverage_percentage:.2f}%[/{color}] of statements"
            f"\n[bold]Packages:[/bold] {len(result.packages)}"
            f"\n[bold]Excluded blocks:[/bold] {report.excluded_blocks}"
            f"\n[bold]Profile:[/bold] {escape(str(result.run.persisted.path))}",
            title="covergate",
            border_style="blue",
        )
    )

    if report.has_gaps:
        console.print(f"\n[yellow]Untested blocks:[/yellow] {len(report.gaps)}")
        if verbose:
            for gap in report.gaps:
                console.print(escape(gap.render()))


def _display_exclusions(packages: list[PackageSpec], exclusions: ExclusionSet) -> None:
    """Display exclusion ranges per file."""
    console.print(
        Panel(
            f"[bold]Packages:[/bold] {len(packages)}"
            f"\n[bold]Excluded ranges:[/bold] {exclusions.total_ranges}",
            title="covergate scan",
            border_style="magenta",
        )
    )
    if not exclusions:
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("File", style="cyan")
    table.add_column("Range")
    for file, ranges in exclusions.items():
        for rng in ranges:
            table.add_row(escape(file), rng.span_text())
    console.print(table)


if __name__ == "__main__":
    main()
