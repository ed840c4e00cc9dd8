"""
PipelineSync command-line interface.

Commands:
    cycle           Full refresh of every owner and group store
    push-notes      Push entity notes up into a group's aggregate
    sync-highlight  Push flags and colours down from a group's aggregate
    flag            Flag one aggregate row and push it down
    check-config    Validate settings.json and directory.json
    check-crm       Verify the CRM token and endpoint

Exit codes: 0 success, 1 failure, 75 busy (another sync holds the lock).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pipelinesync import __version__
from pipelinesync.application.quick_sync import QuickSync
from pipelinesync.application.results import CycleSummary, QuickSyncResult, RunStatus
from pipelinesync.application.sync_cycle import SyncCycle
from pipelinesync.domain.config import Directory, SyncSettings
from pipelinesync.domain.errors import PipelineSyncError
from pipelinesync.domain.models import Flag
from pipelinesync.infrastructure.config_loader import ConfigLoader
from pipelinesync.infrastructure.credentials import TokenStore
from pipelinesync.infrastructure.crm.client import CrmClient
from pipelinesync.infrastructure.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
# EX_TEMPFAIL: the caller may retry later
EXIT_BUSY = 75

console = Console()

app = typer.Typer(
    name="pipelinesync",
    help="CRM pipeline workbooks with preserved notes, flags and highlighting.",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@dataclass
class AppContext:
    config_dir: Path

    def loader(self) -> ConfigLoader:
        return ConfigLoader(self.config_dir)

    def load(self) -> tuple[SyncSettings, Directory]:
        loader = self.loader()
        return loader.load_settings(), loader.load_directory()


def client_factory(settings: SyncSettings) -> Callable[[], CrmClient]:
    tokens = TokenStore(settings.crm.token_env, settings.crm.secrets_file)
    return lambda: CrmClient(settings.crm, tokens, settings.timezone)


def exit_code_for(status: RunStatus) -> int:
    if status is RunStatus.COMPLETED:
        return EXIT_OK
    if status is RunStatus.BUSY:
        return EXIT_BUSY
    return EXIT_FAILURE


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]❌ Error:[/red] {escape(message)}")
    return typer.Exit(EXIT_FAILURE)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_dir: Path = typer.Option(
        Path("config"), "--config-dir", "-c", help="Directory holding settings.json and directory.json."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug output on the console."),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write a full debug log here."),
):
    """PipelineSync - keep CRM pipeline workbooks fresh without losing annotations."""
    setup_logging(logging.DEBUG if verbose else logging.INFO, log_file)
    logger.debug("PipelineSync %s", __version__)
    ctx.obj = AppContext(config_dir=config_dir)


def render_summary(summary: CycleSummary) -> None:
    table = Table(title="Sync Cycle", show_lines=False)
    table.add_column("Unit")
    table.add_column("Step")
    table.add_column("Result")
    table.add_column("Rows", justify="right")
    table.add_column("Orphaned", justify="right")
    table.add_column("ms", justify="right")

    for unit in summary.units:
        if unit.skipped:
            result = "[yellow]skipped[/yellow]"
        elif unit.success:
            result = "[green]✓ ok[/green]"
        else:
            result = f"[red]✗ {escape(unit.error or 'failed')}[/red]"
        table.add_row(
            escape(unit.unit),
            unit.kind,
            result,
            str(unit.record_count),
            str(unit.orphaned),
            str(unit.duration_ms),
        )

    console.print(table)
    console.print(
        f"{summary.success_count} ok, {summary.failure_count} failed, "
        f"{summary.skipped_count} skipped in {summary.duration_seconds:.1f}s"
    )


def render_quick(result: QuickSyncResult) -> None:
    if result.status is RunStatus.BUSY:
        console.print(f"[yellow]⏳ {escape(result.message)}[/yellow]")
    elif result.status is RunStatus.DENIED:
        console.print(f"[red]🔒 {escape(result.message)}[/red]")
    elif result.failures:
        console.print(f"[yellow]⚠ {escape(result.message)}[/yellow]")
        for failure in result.failures:
            console.print(f"  • {escape(failure)}")
    else:
        console.print(f"[green]✅ {escape(result.message)}[/green]")


@app.command("cycle")
def cycle(ctx: typer.Context):
    """Refresh every owner store, rebuild every group store, push flags down."""
    try:
        settings, directory = ctx.obj.load()
        summary = SyncCycle(settings, directory, client_factory(settings)).run()
    except PipelineSyncError as e:
        logger.critical("Sync cycle aborted: %s", e)
        raise _fail(str(e)) from e

    if summary.status is RunStatus.BUSY:
        console.print("[yellow]⏳ Another sync is in progress; nothing done.[/yellow]")
    else:
        render_summary(summary)
    raise typer.Exit(exit_code_for(summary.status))


@app.command("push-notes")
def push_notes(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Group name, or an owner's e-mail."),
    actor: Optional[str] = typer.Option(None, "--as", help="E-mail of the requesting user."),
):
    """Push notes from entity stores up into the group's aggregate store."""
    try:
        settings, directory = ctx.obj.load()
        result = QuickSync(settings, directory).push_notes(target, actor=actor)
    except PipelineSyncError as e:
        raise _fail(str(e)) from e
    render_quick(result)
    raise typer.Exit(exit_code_for(result.status))


@app.command("sync-highlight")
def sync_highlight(
    ctx: typer.Context,
    group: str = typer.Argument(..., help="Group name."),
    actor: Optional[str] = typer.Option(None, "--as", help="E-mail of the requesting user."),
):
    """Push flags and highlighting from a group's aggregate down to owners."""
    try:
        settings, directory = ctx.obj.load()
        result = QuickSync(settings, directory).sync_highlights(group, actor=actor)
    except PipelineSyncError as e:
        raise _fail(str(e)) from e
    render_quick(result)
    raise typer.Exit(exit_code_for(result.status))


@app.command("flag")
def flag(
    ctx: typer.Context,
    group: str = typer.Argument(..., help="Group name."),
    record_id: str = typer.Argument(..., help="CRM record ID."),
    value: str = typer.Argument(..., help="hot, cold, attention or none."),
    actor: Optional[str] = typer.Option(None, "--as", help="E-mail of the requesting user."),
):
    """Flag one deal in a group's aggregate and push it down."""
    chosen = Flag.NONE if value.strip().lower() in ("none", "clear") else Flag.parse(value)
    if chosen is Flag.NONE and value.strip().lower() not in ("none", "clear"):
        raise _fail(f"Unknown flag {value!r}; use hot, cold, attention or none")
    try:
        settings, directory = ctx.obj.load()
        result = QuickSync(settings, directory).set_flag(group, record_id, chosen, actor=actor)
    except PipelineSyncError as e:
        raise _fail(str(e)) from e
    render_quick(result)
    raise typer.Exit(exit_code_for(result.status))


@app.command("check-config")
def check_config(ctx: typer.Context):
    """Validate all configuration files."""
    problems = ctx.obj.loader().validate_config()
    if not problems:
        console.print("[green]✅ All configuration checks passed![/green]")
        raise typer.Exit(EXIT_OK)

    console.print(f"[red]❌ Configuration check failed with {len(problems)} problem(s):[/red]")
    for i, problem in enumerate(problems, 1):
        console.print(f"  {i}. {escape(problem)}")
    raise typer.Exit(EXIT_FAILURE)


@app.command("check-crm")
def check_crm(ctx: typer.Context):
    """Verify the CRM token and endpoint with a one-row search."""
    try:
        settings = ctx.obj.loader().load_settings()
        with client_factory(settings)() as client:
            total = client.check_connection()
    except PipelineSyncError as e:
        raise _fail(str(e)) from e
    console.print(f"[green]✅ CRM connection OK[/green] ({total} deals visible)")
    raise typer.Exit(EXIT_OK)


def main() -> int:
    """
    Main entry point for the PipelineSync CLI.

    Returns:
        int: Exit code (0 success, 1 failure, 75 busy)
    """
    try:
        app()
    except SystemExit as e:
        if e.code is None:
            return EXIT_OK
        return e.code if isinstance(e.code, int) else EXIT_FAILURE
    return EXIT_OK
