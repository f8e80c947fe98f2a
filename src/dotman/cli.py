"""Command-line interface for dotman."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .config import Manifest, default_root, load
from .errors import DotmanError, ManifestError, ReconcileError, StateError
from .models import ActionKind, ActionOutcome, ApplyReport, ApplyResult, LinkMode, StatusReport, StatusState
from .reconciler import Reconciler
from .state import StateStore

EXIT_OK = 0
EXIT_CONFLICT = 1
EXIT_FATAL = 2

app = typer.Typer(help="Declarative dotfiles linker")
console = Console()

ROOT_OPTION = typer.Option(None, "--root", "-r", help="Dotfiles repository (defaults to $DOTMAN_ROOT or ~/dotfiles)")
BUNDLE_OPTION = typer.Option(None, "--bundle", "-b", help="Limit to specific bundle(s)")


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("dotman")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.environ.get("DOTMAN_LOG_LEVEL", "WARNING").upper(), logging.WARNING)

    handler = RichHandler(console=Console(stderr=True), show_time=False, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def _load_manifest(root: Path | None) -> Manifest:
    return load(root if root is not None else default_root())


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, typer.Exit):
        raise exc
    if isinstance(exc, ReconcileError):
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_CONFLICT)
    if isinstance(exc, ManifestError):
        console.print(f"[red]{escape(str(exc))}[/red]")
        console.print("[yellow]Check the repository path (--root) and its dotman.toml.[/yellow]")
        raise typer.Exit(code=EXIT_FATAL)
    if isinstance(exc, StateError):
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_FATAL)
    if isinstance(exc, DotmanError):
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_FATAL)
    if isinstance(exc, PermissionError):
        console.print(f"[red]Permission denied:[/red] {escape(str(exc))}")
        raise typer.Exit(code=EXIT_FATAL)
    if isinstance(exc, OSError):
        console.print(f"[red]Filesystem error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=EXIT_FATAL)
    raise exc


def _print_store_warnings(warnings: Iterable[str]) -> None:
    for message in warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(message)}")


_OUTCOME_STYLES = {
    ActionOutcome.APPLIED: "green",
    ActionOutcome.SKIPPED: "dim",
    ActionOutcome.CONFLICT: "yellow",
    ActionOutcome.FAILED: "red",
}


def _format_apply_report(report: ApplyReport, *, verbose: bool) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Bundle", no_wrap=True)
    table.add_column("Target", overflow="fold")
    table.add_column("Action", no_wrap=True)
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Details", overflow="fold")

    shown = 0
    for result in report.results:
        if result.outcome is ActionOutcome.SKIPPED and not verbose:
            continue
        shown += 1
        style = _OUTCOME_STYLES[result.outcome]
        table.add_row(
            escape(result.action.bundle),
            escape(result.action.entry.target_key()),
            result.action.kind.value,
            f"[{style}]{result.outcome.value}[/{style}]",
            escape(result.details or ""),
        )

    if shown:
        console.print(table)
    console.print(_summarise(report.results))


def _summarise(results: Iterable[ApplyResult]) -> str:
    applied: dict[ActionKind, int] = {}
    skipped = conflicts = failed = 0
    for result in results:
        if result.outcome is ActionOutcome.APPLIED:
            applied[result.action.kind] = applied.get(result.action.kind, 0) + 1
        elif result.outcome is ActionOutcome.SKIPPED:
            skipped += 1
        elif result.outcome is ActionOutcome.CONFLICT:
            conflicts += 1
        else:
            failed += 1

    parts = [f"{count} {kind.value}" for kind, count in applied.items()]
    parts.append(f"{skipped} skip")
    parts.append(f"{conflicts} conflict")
    parts.append(f"{failed} failed")
    return "Summary: " + ", ".join(parts)


_STATE_STYLES = {
    StatusState.IN_SYNC: "green",
    StatusState.PENDING_CREATE: "cyan",
    StatusState.PENDING_UPDATE: "cyan",
    StatusState.CONFLICT: "red",
    StatusState.ORPHANED: "yellow",
}


def _format_status(report: StatusReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Bundle", no_wrap=True)
    table.add_column("Target", overflow="fold")
    table.add_column("State", no_wrap=True)
    table.add_column("Details", overflow="fold")

    for entry in report.entries:
        style = _STATE_STYLES.get(entry.state, "white")
        table.add_row(
            escape(entry.bundle),
            escape(entry.target_path),
            f"[{style}]{entry.state.value}[/{style}]",
            escape(entry.details or ""),
        )

    console.print(table)


def _run_check(root: Path | None, bundle: list[str] | None) -> None:
    manifest = _load_manifest(root)
    with StateStore.open(manifest.settings.state_path, recover=False) as store:
        report = Reconciler(manifest, store).status(bundle or None)
    _format_status(report)
    if report.needs_attention:
        console.print("[yellow]Some entries are out of sync. Run 'dotman install' to apply them.[/yellow]")
        raise typer.Exit(code=EXIT_CONFLICT)
    console.print("[green]All entries are in sync.[/green]")


@app.command()
def install(
    root: Path | None = ROOT_OPTION,
    bundle: list[str] = BUNDLE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show every action, including skipped entries"),
    force: bool = typer.Option(False, "--force", help="Overwrite conflicting targets after backing them up"),
) -> None:
    """Link or copy every bundle entry into place."""

    _configure_logging(verbose)
    try:
        manifest = _load_manifest(root)
        with StateStore.open(manifest.settings.state_path, recover=True) as store:
            _print_store_warnings(store.warnings)
            report = Reconciler(manifest, store).install(bundle or None, force=force)
        _format_apply_report(report, verbose=verbose)
        if not report.succeeded:
            console.print(
                "[red]Some entries were not installed. Resolve the conflicts or re-run with --force.[/red]"
            )
            raise typer.Exit(code=EXIT_CONFLICT)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command("list")
def list_bundles(root: Path | None = ROOT_OPTION) -> None:
    """Show declared bundles and their entries."""

    _configure_logging(False)
    try:
        manifest = _load_manifest(root)
        try:
            installed = StateStore(manifest.settings.state_path).load()
        except StateError as exc:
            console.print(f"[yellow]Warning:[/yellow] {escape(str(exc))}")
            installed = {}

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Bundle", no_wrap=True)
        table.add_column("Source", overflow="fold")
        table.add_column("Target", overflow="fold")
        table.add_column("Mode", no_wrap=True)
        table.add_column("Installed", no_wrap=True)

        for item in manifest.bundles:
            for entry in item.entries:
                is_installed = entry.target_key() in installed
                table.add_row(
                    escape(item.name),
                    escape(entry.source_path.as_posix()),
                    escape(entry.target_key()),
                    entry.link_mode.value,
                    "[green]yes[/green]" if is_installed else "[yellow]no[/yellow]",
                )

        console.print(table)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def check(root: Path | None = ROOT_OPTION, bundle: list[str] = BUNDLE_OPTION) -> None:
    """Report pending changes and conflicts without applying anything."""

    _configure_logging(False)
    try:
        _run_check(root, bundle)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def status(root: Path | None = ROOT_OPTION, bundle: list[str] = BUNDLE_OPTION) -> None:
    """Alias of ``check``."""

    _configure_logging(False)
    try:
        _run_check(root, bundle)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def add(
    bundle: str = typer.Argument(..., help="Bundle to add the file to"),
    path: Path = typer.Argument(..., help="Existing file or directory to start managing"),
    root: Path | None = ROOT_OPTION,
    mode: LinkMode | None = typer.Option(None, "--mode", "-m", help="Link mode for the new entry"),
    target: Path | None = typer.Option(None, "--target", "-t", help="Install location (defaults to PATH)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    force: bool = typer.Option(False, "--force", help="Back up and overwrite an occupied target"),
) -> None:
    """Copy PATH into BUNDLE, register it and install it."""

    _configure_logging(verbose)
    try:
        manifest = _load_manifest(root)
        with StateStore.open(manifest.settings.state_path, recover=True) as store:
            _print_store_warnings(store.warnings)
            result = Reconciler(manifest, store).add(bundle, path, mode=mode, target=target, force=force)
        entry = result.action.entry
        console.print(
            f"[green]Added[/green] {escape(entry.source_path.as_posix())} to bundle "
            f"'{escape(bundle)}' ({result.action.kind.value} {escape(entry.target_key())})"
        )
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def uninstall(
    root: Path | None = ROOT_OPTION,
    bundle: list[str] = BUNDLE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    force: bool = typer.Option(False, "--force", help="Remove drifted targets after backing them up"),
) -> None:
    """Remove installed targets and forget them."""

    _configure_logging(verbose)
    try:
        manifest = _load_manifest(root)
        with StateStore.open(manifest.settings.state_path, recover=True) as store:
            _print_store_warnings(store.warnings)
            report = Reconciler(manifest, store).uninstall(bundle or None, force=force)
        _format_apply_report(report, verbose=verbose)
        if not report.succeeded:
            raise typer.Exit(code=EXIT_CONFLICT)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
