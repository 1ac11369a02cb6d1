"""Console rendering and progress helpers for docpublisher CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .config import ValidationReport
from .models import BatchSummary, DeviceChallenge, PublishStatus
from .services.repository import ConnectionReport

console = Console()
err_console = Console(stderr=True)


def _echo(message: str) -> None:
    console.print(message)


def _human_size(value: Optional[int]) -> str:
    if value is None:
        return "-"
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]docpublisher[/bold green]",
        subtitle="[dim]SharePoint publisher[/dim]",
        border_style="blue",
    )
    console.print(panel)


def render_validation(report: ValidationReport) -> None:
    """Print every configuration error and warning."""
    if report.valid:
        _echo("[green]Configuration is valid[/green]")
    else:
        _echo(f"[red]Configuration has {len(report.errors)} error(s):[/red]")
        for error in report.errors:
            _echo(f"  [red]-[/red] [bold]{error.field}[/bold]: {error.message}")
    for warning in report.warnings:
        _echo(f"  [yellow]![/yellow] {warning}")


def render_device_challenge(challenge: DeviceChallenge) -> None:
    """Show the device-code sign-in instructions."""
    body = challenge.message or (
        f"Open {challenge.verification_uri} and enter the code {challenge.user_code}"
    )
    panel = Panel(
        f"{body}\n\n[bold yellow]Code:[/bold yellow] [bold]{challenge.user_code}[/bold]",
        title="[bold cyan]Sign in required[/bold cyan]",
        border_style="cyan",
    )
    err_console.print(panel)


def render_connection_report(report: ConnectionReport) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")
    table.add_row("Site", report.site_name or "-")
    table.add_row("Site URL", report.site_url or "-")
    table.add_row("Library", report.drive_name or "-")
    table.add_row("Library Type", report.drive_type or "-")
    table.add_row("Root Items", str(report.root_item_count))
    quota = report.quota or {}
    if quota.get("total"):
        table.add_row("Quota", f"{_human_size(quota.get('used'))} / {_human_size(quota.get('total'))}")
    console.print(Panel(table, title="[bold green]Connection OK[/bold green]", border_style="green"))


class BatchProgressDisplay:
    """Progress bar fed by the batch progress callback."""

    def __init__(self, total: int = 0, label: str = "Publishing"):
        self._label = label
        self._total = total
        self._started_at = 0.0
        self._task_id: Optional[TaskID] = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            expand=False,
            console=console,
        )
        self._live: Optional[Live] = None

    def start(self) -> None:
        if self._live is not None:
            return
        self._started_at = time.monotonic()
        self._live = Live(
            self._progress,
            console=console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        self._task_id = self._progress.add_task(
            "batch",
            label=self._label,
            total=max(self._total, 1),
        )

    def update(self, completed: int, total: int) -> None:
        if self._live is None:
            self.start()
        self._progress.update(self._task_id, completed=completed, total=max(total, 1))

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    @property
    def elapsed(self) -> float:
        if not self._started_at:
            return 0.0
        return time.monotonic() - self._started_at

    def get_callback(self):
        def callback(completed: int, total: int) -> None:
            self.update(completed, total)

        return callback


def render_batch_summary(summary: BatchSummary, elapsed: Optional[float] = None) -> None:
    """Render the per-file results table and the totals line."""
    table = Table(title="Dry run" if summary.dry_run else "Publish results", show_lines=False)
    table.add_column("File", style="bold")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Location / Error", overflow="fold")

    for result in summary.results:
        if result.status == PublishStatus.SUCCESS:
            status = "[green]uploaded[/green]"
            detail = result.remote_url or result.remote_id or ""
        elif result.status == PublishStatus.DRY_RUN:
            status = "[cyan]validated[/cyan]"
            detail = ""
        else:
            kind = result.error_kind.value if result.error_kind else "error"
            status = f"[red]failed[/red] [dim]({kind})[/dim]"
            detail = f"[red]{result.error or 'unknown error'}[/red]"
        table.add_row(result.file_name, status, _human_size(result.size_bytes), detail)

    console.print(table)

    timing = f" in {elapsed:.1f}s" if elapsed else ""
    color = "green" if summary.all_success else "yellow" if summary.success_count else "red"
    _echo(
        f"[bold {color}]Finished[/bold {color}] total={summary.total_count} "
        f"succeeded={summary.success_count} failed={summary.failure_count}{timing}"
    )
    if summary.failures:
        _echo("[red]Failed files:[/red]")
        for result in summary.failures:
            _echo(f"  [red]-[/red] {result.file_name}: {result.error}")
