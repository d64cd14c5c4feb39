"""Main CLI entry point for deployguard.

This module provides the Typer application that runs one update or
rollback session against the configured project and prints a summary.

Usage:
    deployguard                    # update if the remote has a new revision
    deployguard --force --no-cache # rebuild even without a new revision
    deployguard --rollback         # restore the most recent backup
    deployguard --restore-stash <sha>
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Annotated, Optional

import typer
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from deployguard import __version__
from deployguard.config import DeployguardConfig, load_config
from deployguard.logging import get_logger, setup_logging
from deployguard.orchestrator import (
    SessionMode,
    SessionOutcome,
    UpdateOptions,
    UpdateOrchestrator,
    UpdateResult,
)
from deployguard.pipeline.git_ops import VersionTracker

app = typer.Typer(
    name="deployguard",
    help="Deployguard: guarded update and rollback of a Docker Compose service",
    add_completion=False,
)

console = Console()

_OUTCOME_STYLES: dict[SessionOutcome, tuple[str, str]] = {
    SessionOutcome.SUCCESS: ("green", "Update completed successfully"),
    SessionOutcome.NO_UPDATE: ("cyan", "Already up to date"),
    SessionOutcome.ROLLED_BACK: ("yellow", "Update failed, previous version restored"),
    SessionOutcome.FATAL_ABORT: ("red", "Session aborted"),
}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"deployguard {__version__}")
        raise typer.Exit()


def _check_environment(config: DeployguardConfig) -> None:
    """Refuse to run without root (when required) or without a project directory."""
    if config.project.require_root and hasattr(os, "geteuid") and os.geteuid() != 0:
        console.print("[red]This command must be run as root (use sudo)[/red]")
        raise typer.Exit(code=1)

    if not config.project.project_dir.is_dir():
        console.print(
            f"[red]Project directory not found:[/red] {config.project.project_dir}"
        )
        raise typer.Exit(code=1)


def _make_confirm(assume_yes: bool):
    if assume_yes:
        return lambda prompt: True

    def confirm(prompt: str) -> bool:
        return typer.confirm(prompt, default=False)

    return confirm


def _restore_stash(config: DeployguardConfig, ref: str) -> None:
    try:
        tracker = VersionTracker(config.project)
        tracker.restore_stash(ref)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        console.print(f"[red]Not a git repository:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)
    except (ValueError, GitCommandError) as e:
        console.print(f"[red]Failed to restore stash:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(f"[green]Stash {ref[:8]} restored[/green]")


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def _print_summary(result: UpdateResult) -> None:
    """Print the final session summary panel."""
    style, headline = _OUTCOME_STYLES[result.outcome]
    if result.mode == SessionMode.ROLLBACK and result.outcome == SessionOutcome.ROLLED_BACK:
        style, headline = "green", "Rollback completed successfully"

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Session", result.session_id)
    table.add_row("Outcome", f"[{style}]{result.outcome.value}[/{style}]")
    table.add_row("Prior revision", (result.prior_revision or "-")[:12])
    table.add_row("Attempted revision", (result.target_revision or "-")[:12])
    table.add_row("Deployed revision", (result.new_revision or "-")[:12])
    table.add_row("Deployment state", result.deployment_state.value)
    if result.backup_name:
        table.add_row("Backup", result.backup_name)
    table.add_row("Backups retained", str(result.backup_count))
    if result.error_kind:
        table.add_row(
            "Error",
            f"[red]{result.error_kind.value}[/red]: {escape(result.error or '')}",
        )
    if result.rollback_error:
        table.add_row("Rollback error", f"[red]{escape(result.rollback_error)}[/red]")
    if result.stash:
        table.add_row(
            "Stashed changes",
            f"{result.stash.commit_sha[:8]} (restore with --restore-stash)",
        )
    if result.workspace_size_bytes is not None:
        table.add_row("Workspace size", _format_size(result.workspace_size_bytes))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")

    console.print()
    console.print(
        Panel(table, title=headline, border_style=style),
    )

    if result.recent_commits:
        console.print("[bold]Recent commits:[/bold]")
        for line in result.recent_commits:
            console.print(f"  {escape(line)}")
    if result.service_status:
        console.print("[bold]Service status:[/bold]")
        console.print(escape(result.service_status))


@app.command()
def main(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Force update even if no changes detected"),
    ] = False,
    skip_backup: Annotated[
        bool,
        typer.Option("--skip-backup", help="Skip backup creation (rollback disabled)"),
    ] = False,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Build Docker images without cache"),
    ] = False,
    rollback: Annotated[
        bool,
        typer.Option("--rollback", help="Rollback to the previous version"),
    ] = False,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    restore_stash: Annotated[
        Optional[str],
        typer.Option("--restore-stash", help="Re-apply a stash recorded by an earlier update"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Stash local changes without asking"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = None,
) -> None:
    """Update the deployed service to the latest revision, or roll it back.

    Exits 0 when the update succeeded, there was nothing to do, or a
    standalone rollback restored a healthy service; 1 otherwise.
    """
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)
    logger = get_logger(__name__)

    _check_environment(config)

    if restore_stash is not None:
        _restore_stash(config, restore_stash)
        return

    try:
        orchestrator = UpdateOrchestrator.from_config(config, confirm=_make_confirm(yes))
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        console.print(f"[red]Project directory is not a git repository:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    options = UpdateOptions(force=force, skip_backup=skip_backup, no_cache=no_cache)

    async def run_session() -> UpdateResult:
        try:
            if rollback:
                return await orchestrator.rollback()
            return await orchestrator.run_update(options)
        finally:
            await orchestrator.compose.close()

    try:
        result = asyncio.run(run_session())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; deployment left in its current state[/yellow]")
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception("session_crashed", error=str(e))
        console.print(f"[red]Fatal error:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    _print_summary(result)
    raise typer.Exit(code=result.exit_code)


if __name__ == "__main__":
    app()
