"""Thin CLI wrapper for kata_static.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from kata_static import __version__
from kata_static.builds.handlers import member_names
from kata_static.builds.registry import InvalidTargetError, get_handler
from kata_static.config import Settings, get_settings, print_settings_json
from kata_static.session import run_session
from kata_static.types import DEFAULT_TARGETS, BuildTarget, SessionResult, TargetStatus

app = typer.Typer(
    name="kata-static",
    help="Kata Containers static components - build and cache component tarballs",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    TargetStatus.SUCCEEDED: "green",
    TargetStatus.FAILED: "red",
    TargetStatus.NOT_RUN: "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kata-static version {__version__}")
        raise typer.Exit()


def configure_logging(settings: Settings, silent: bool = False) -> None:
    """Send kata_static log records to the terminal."""
    package_logger = logging.getLogger("kata_static")
    package_logger.setLevel(settings.log_level)
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    handler = RichHandler(console=console, show_path=False)
    # Silent builds keep the terminal for errors; the rest goes to the log
    handler.setLevel(logging.ERROR if silent else logging.NOTSET)
    package_logger.addHandler(handler)


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
) -> None:
    """Kata Containers static components - build and cache component tarballs."""


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
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.workdir}")
    console.print(f"  Repository root:     {settings.repo_root}")
    console.print(f"  Install prefix:      {settings.prefix}")
    console.print()
    console.print("[bold]Target:[/bold]")
    console.print(f"  Architecture:        {settings.arch}")
    console.print(f"  Measured rootfs:     {settings.measured_rootfs}")
    console.print(f"  dm-verity:           {settings.dm_verity}")
    console.print(f"  AA_KBC:              {settings.aa_kbc or '(target default)'}")
    console.print()
    console.print("[bold]Cache:[/bold]")
    console.print(f"  Use cache:           {settings.use_cache}")
    console.print(f"  Cache URL:           {settings.cache_url}")
    console.print(f"  Builder registry:    {settings.builder_registry}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Request timeout:     {settings.request_timeout}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout or '(none)'}")


@app.command()
def targets() -> None:
    """List the available build targets."""
    defaults = set(DEFAULT_TARGETS)
    for target in BuildTarget:
        marker = " [dim](default)[/dim]" if target in defaults else ""
        console.print(f"  [green]{target.value}[/green]{marker}")
        members = member_names(get_handler(target))
        if members != [target.value]:
            console.print(f"    Components: {', '.join(members)}")


def _print_summary(result: SessionResult) -> None:
    console.print()
    console.print("[bold]Build results:[/bold]")
    for target_result in result.results:
        style = STATUS_STYLES[target_result.status]
        line = f"  [{style}]{target_result.status.value:<9}[/{style}] {target_result.target.value}"
        if target_result.cache_hit:
            line += " [dim](cached)[/dim]"
        console.print(line)
        if target_result.archive_path:
            console.print(f"    Tarball: {target_result.archive_path}")
        if target_result.error:
            console.print(f"    [red]{target_result.code}: {escape(target_result.error)}[/red]")
        if target_result.log_path and target_result.status == TargetStatus.FAILED:
            console.print(f"    Log: {target_result.log_path}")


@app.command()
def build(
    build_targets: Annotated[
        list[str] | None,
        typer.Argument(
            metavar="[TARGET]...",
            help="Targets to build (default: the standard component set)",
            show_default=False,
        ),
    ] = None,
    silent: Annotated[
        bool,
        typer.Option("--silent", "-s", help="Capture build output in each target's log file"),
    ] = False,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Always build, never download cached tarballs"),
    ] = False,
) -> None:
    """Build component tarballs, using cached ones when they are current."""
    settings = get_settings()
    if no_cache:
        settings = settings.with_overrides(use_cache=False)
    configure_logging(settings, silent=silent)

    names = build_targets or [target.value for target in DEFAULT_TARGETS]
    try:
        result = run_session(names, settings, silent=silent, console=console)
    except InvalidTargetError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        console.print("Run 'kata-static targets' to list valid targets")
        raise typer.Exit(code=2) from None

    _print_summary(result)
    if not result.success:
        raise typer.Exit(code=result.exit_code)


if __name__ == "__main__":
    app()
