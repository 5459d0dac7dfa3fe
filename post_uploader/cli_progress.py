"""Console rendering and progress helpers for the post-upload CLI."""
from __future__ import annotations

from typing import Any, Dict, Optional
import time

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from .models import AssetResult, BatchSummary, ProgressUpdate

console = Console()


def _echo(message: str) -> None:
    console.print(message)


def _human_size(value: int) -> str:
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
        title="[bold green]post-upload[/bold green]",
        subtitle="[dim]post uploader CLI[/dim]",
        border_style="blue",
    )
    console.print(panel)


def render_batch_summary(summary: BatchSummary) -> None:
    """Render per-asset outcomes and totals of a finished batch."""
    table = Table(title=f"Gallery {summary.gallery_id or '-'}", show_lines=False)
    table.add_column("Post", style="cyan")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("Status")

    for result in summary.results:
        status = "[green]done[/green]" if result.success else f"[red]failed[/red] {result.error}"
        table.add_row(
            result.post_id or "?",
            "video" if result.is_video else "photo",
            _human_size(result.file_size),
            status,
        )
    console.print(table)

    state = "cancelled" if summary.cancelled else "failed" if summary.error else "finished"
    _echo(
        f"[bold]Batch {state}[/bold] completed={summary.completed} failed={summary.failed} "
        f"abandoned={summary.abandoned} total={summary.total_assets}"
    )


class BatchProgressDisplay:
    """Event-based console display for an upload batch."""

    def __init__(self, live: bool = True):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[sent]}"),
            TextColumn("[dim]{task.fields[speed]}"),
            TimeRemainingColumn(),
            expand=False,
            console=console,
        )
        self._use_live = live
        self._live: Optional[Live] = None
        self._task_id: Optional[TaskID] = None
        self.last_update: Optional[ProgressUpdate] = None
        self.summary: Optional[BatchSummary] = None
        self.completed = 0
        self.failed = 0

    def start(self) -> None:
        if self._task_id is not None:
            return
        if self._use_live:
            self._live = Live(
                self._progress,
                console=console,
                refresh_per_second=8,
                vertical_overflow="visible",
            )
            self._live.start()
        self._task_id = self._progress.add_task("batch", label="Overall", total=1, completed=0, sent="", speed="")

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _emit_timeline(self, status: str, name: str, size_bytes: int = 0, error: Optional[str] = None) -> None:
        stamp = time.strftime("%H:%M:%S")
        size_label = f" {_human_size(size_bytes)}" if size_bytes > 0 else ""
        error_label = f" cause={error}" if error else ""
        color = {"DONE": "green", "FAIL": "red", "STOP": "yellow"}.get(status, "white")
        _echo(f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] post: {name}{size_label}{error_label}")

    def on_progress(self, update: ProgressUpdate) -> None:
        self.last_update = update
        self.start()
        if self._task_id is None:
            return
        self._progress.update(
            self._task_id,
            completed=update.fraction,
            sent=f"{_human_size(update.uploaded_bytes)}/{_human_size(update.total_bytes)}",
            speed=f"{_human_size(int(update.throughput))}/s",
        )

    def on_asset_complete(self, result: AssetResult) -> None:
        if result.success:
            self.completed += 1
            self._emit_timeline("DONE", result.post_id, result.file_size)
        else:
            self.failed += 1
            self._emit_timeline("FAIL", result.post_id or "?", result.file_size, error=str(result.error))

    def on_batch_complete(self, summary: BatchSummary) -> None:
        self.summary = summary
        self.stop()

    def on_batch_cancelled(self, summary: BatchSummary) -> None:
        self.summary = summary
        self.stop()
        self._emit_timeline("STOP", f"{summary.abandoned} kept for resume")

    def on_error(self, error: Exception) -> None:
        self.stop()
        _echo(f"[red]Error:[/red] {error}")

    def attach(self, manager) -> None:
        """Subscribe to all events of an UploadManager."""
        manager.on_progress(self.on_progress)
        manager.on_asset_complete(self.on_asset_complete)
        manager.on_batch_complete(self.on_batch_complete)
        manager.on_batch_cancelled(self.on_batch_cancelled)
        manager.on_error(self.on_error)
