"""Thin CLI wrapper for probe_builder.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from probe_builder import __version__
from probe_builder.config import ConfigurationError, Settings, get_settings, print_settings_json
from probe_builder.types import BuildStatus, Family

app = typer.Typer(
    name="probe-builder",
    help="Probe Builder - build kernel modules for a matrix of distribution kernels",
    no_args_is_help=True,
)
console = Console()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Exit code for configuration errors
EXIT_CONFIG_ERROR = 2

STATUS_STYLES = {
    BuildStatus.SUCCESS: "green",
    BuildStatus.SKIPPED: "dim",
    BuildStatus.FAILED: "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"probe-builder version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _print_json(data: Any) -> None:
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False)


def _settings_with(**overrides: Any) -> Settings:
    """Effective settings: CLI flags that were given override the environment."""
    settings = get_settings()
    update = {k: v for k, v in overrides.items() if v is not None}
    return settings.model_copy(update=update) if update else settings


def _parse_family(value: str, allow_all: bool = False) -> Family:
    """Parse the name of a fetched family, exiting on anything else."""
    try:
        family = Family(value)
    except ValueError:
        family = Family.CUSTOM
    if family == Family.CUSTOM:
        names = (["all"] if allow_all else []) + [f.value for f in Family if f != Family.CUSTOM]
        console.print(
            f"[red]Unknown family: {escape(value)} (choose from {', '.join(names)})[/red]"
        )
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    return family


def _parse_scope(value: str) -> Family | None:
    """Parse a build scope: "all" (None) or one fetched family."""
    if value == "all":
        return None
    return _parse_family(value, allow_all=True)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (default from settings)"),
    ] = None,
) -> None:
    """Probe Builder - build kernel modules for a matrix of distribution kernels."""
    level = (log_level or get_settings().log_level).upper()
    if level not in LOG_LEVELS:
        console.print(f"[red]Invalid log level: {log_level}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    setup_logging(level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    def display(value: object) -> str:
        return "(not set)" if value is None else str(value)

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Probe:[/bold]")
    console.print(f"  Name:                {display(settings.probe_name)}")
    console.print(f"  Version:             {display(settings.probe_version)}")
    console.print(f"  Source directory:    {display(settings.probe_source_dir)}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Builder directory:   {settings.builder_dir}")
    console.print(f"  Kernel lists:        {display(settings.kernel_list_dir)}")
    console.print()
    console.print("[bold]Toolchain:[/bold]")
    console.print(f"  Image prefix:        {display(settings.builder_image_prefix)}")
    console.print(f"  Docker binary:       {settings.docker_binary}")
    console.print(f"  Architecture:        {settings.arch}")
    console.print()
    console.print("[bold]Fetching:[/bold]")
    console.print(f"  Concurrency:         {settings.fetch_concurrency}")
    console.print(f"  Retries:             {settings.fetch_retries}")
    console.print(f"  Timeout (seconds):   {settings.fetch_timeout}")
    console.print(f"  Strict:              {settings.strict_fetch}")
    console.print()
    console.print("[bold]Builds:[/bold]")
    console.print(f"  Timeout (seconds):   {display(settings.build_timeout)}")
    console.print(f"  Log excerpt lines:   {settings.log_excerpt_lines}")
    console.print(f"  Log level:           {settings.log_level}")


def _report(ctx: Any) -> None:
    """Print the run summary and failure report, then exit with the run status."""
    from probe_builder.builds.service import render_failure_report

    if ctx.outcomes:
        console.print("[bold]Targets:[/bold]")
        for outcome in ctx.outcomes:
            style = STATUS_STYLES[outcome.status]
            builder = f" ({outcome.builder})" if outcome.builder else ""
            console.print(
                f"  [{style}]{outcome.status.value:8}[/{style}] {escape(outcome.label)}{builder}",
                highlight=False,
            )
        console.print()

    console.print(
        f"[bold]Summary:[/bold] {len(ctx.succeeded)} built, "
        f"{len(ctx.skipped)} skipped, {len(ctx.failed)} failed, "
        f"{len(ctx.failed_fetches)} failed download(s)"
    )

    report = render_failure_report(ctx)
    if report:
        console.print()
        console.print(report, markup=False, highlight=False, soft_wrap=True)

    if ctx.exit_code:
        raise typer.Exit(code=ctx.exit_code)


@app.command()
def build(
    family: Annotated[
        str,
        typer.Option(
            "--family",
            "-f",
            help="Family to build: all, ubuntu, debian, centos or coreos",
        ),
    ] = "all",
    urls: Annotated[
        Path | None,
        typer.Option("--urls", help="Kernel URL list (single family only)"),
    ] = None,
    probe_name: Annotated[
        str | None,
        typer.Option("--probe-name", help="Name of the kernel module"),
    ] = None,
    probe_version: Annotated[
        str | None,
        typer.Option("--probe-version", help="Version of the kernel module"),
    ] = None,
    source_dir: Annotated[
        Path | None,
        typer.Option("--source-dir", help="Kernel module source tree"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Artifact directory"),
    ] = None,
    fetch_concurrency: Annotated[
        int | None,
        typer.Option(
            "--fetch-concurrency",
            "-j",
            min=0,
            help="Concurrent downloads (0 uses archives already on disk)",
        ),
    ] = None,
) -> None:
    """Fetch kernels and build the probe for every one of them.

    Exits 1 if any target failed and 2 on a configuration error.
    """
    from probe_builder.builds.service import run

    scope = _parse_scope(family)
    settings = _settings_with(
        probe_name=probe_name,
        probe_version=probe_version,
        probe_source_dir=source_dir,
        output_dir=output_dir,
        fetch_concurrency=fetch_concurrency,
    )
    try:
        ctx = run(settings, scope, urls)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None

    _report(ctx)


@app.command()
def custom(
    archives: Annotated[
        list[Path],
        typer.Argument(help="Kernel package archives to build against"),
    ],
    base: Annotated[
        str,
        typer.Option("--base", "-b", help="Family whose conventions the archives follow"),
    ],
    builder: Annotated[
        str | None,
        typer.Option("--builder", help="Builder variant to use, e.g. centos-gcc4.8"),
    ] = None,
    probe_name: Annotated[
        str | None,
        typer.Option("--probe-name", help="Name of the kernel module"),
    ] = None,
    probe_version: Annotated[
        str | None,
        typer.Option("--probe-version", help="Version of the kernel module"),
    ] = None,
    source_dir: Annotated[
        Path | None,
        typer.Option("--source-dir", help="Kernel module source tree"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Artifact directory"),
    ] = None,
) -> None:
    """Build the probe for operator-supplied kernel packages."""
    from probe_builder.builds.service import run_custom

    base_family = _parse_family(base)
    settings = _settings_with(
        probe_name=probe_name,
        probe_version=probe_version,
        probe_source_dir=source_dir,
        output_dir=output_dir,
    )
    try:
        ctx = run_custom(settings, base_family, archives, builder)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None

    _report(ctx)


builders_app = typer.Typer(help="Inspect toolchain builders")
app.add_typer(builders_app, name="builders")


@builders_app.command("list")
def builders_list(
    distro: Annotated[
        str | None,
        typer.Option("--distro", "-d", help="Filter by base distro"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List builder variants defined in the builder directory."""
    from probe_builder.builds.toolchain import discover_variants, version_key

    settings = get_settings()
    variants = [
        v
        for v in discover_variants(settings.builder_dir)
        if distro is None or v.distro == distro
    ]
    variants.sort(key=lambda v: (v.distro, version_key(v.compiler_version)))

    if json_output:
        _print_json(
            [
                {
                    "name": v.name,
                    "distro": v.distro,
                    "compiler_version": v.compiler_version,
                    "dockerfile": str(v.dockerfile),
                }
                for v in variants
            ]
        )
        return

    if not variants:
        console.print("[yellow]No builders found[/yellow]")
        return

    console.print(f"[bold]Found {len(variants)} builder(s):[/bold]")
    for v in variants:
        console.print(f"  [green]{v.name}[/green]  {v.dockerfile}")


@app.command()
def resolve(
    distro: Annotated[str, typer.Argument(help="Base distro, e.g. centos")],
    version: Annotated[str, typer.Argument(help="Compiler version, e.g. 4.8.5")],
) -> None:
    """Show which builder a compiler version maps to."""
    from probe_builder.builds.toolchain import (
        ToolchainError,
        image_reference,
        load_catalog,
    )
    from probe_builder.builds.toolchain import resolve as resolve_variant

    settings = get_settings()
    catalog = load_catalog(settings.builder_dir, distro)
    try:
        variant = resolve_variant(version, catalog)
    except ToolchainError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    except ValueError:
        console.print(f"[red]Invalid compiler version: {escape(version)}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None

    console.print(f"[green]{variant.name}[/green]")
    console.print(f"  Image:      {image_reference(variant, settings.builder_image_prefix)}")
    console.print(f"  Dockerfile: {variant.dockerfile}")


artifacts_app = typer.Typer(help="Inspect built artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List probe artifacts in the output directory."""
    from probe_builder.builds.cache_key import list_artifacts

    settings = get_settings()
    paths = list_artifacts(settings.output_dir)

    if json_output:
        _print_json(
            [{"filename": p.name, "size_bytes": p.stat().st_size} for p in paths]
        )
        return

    if not paths:
        console.print("[yellow]No artifacts found[/yellow]")
        return

    console.print(f"[bold]Found {len(paths)} artifact(s) in {settings.output_dir}:[/bold]")
    for p in paths:
        console.print(f"  {p.name}", highlight=False)


if __name__ == "__main__":
    app()
