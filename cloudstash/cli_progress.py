"""Console rendering and progress helpers for the cloudstash CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, Iterable, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import FolderListing, Job, JobState, UploadItem, UploadStatus
from .orchestrator.job_status import describe_job, human_size, job_percent

console = Console()


def render_configuration_summary(config: Dict[str, Any], title: str = "cloudstash") -> None:
    """Render a key/value summary panel."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title=f"[bold green]{title}[/bold green]",
        border_style="blue",
    )
    console.print(panel)


def render_listing(listing: FolderListing) -> None:
    """Print folders first, then files."""
    table = Table(title=f"/{listing.path}", title_justify="left", show_edge=False)
    table.add_column("Name", style="bold")
    table.add_column("Type", style="dim")
    table.add_column("Size", justify="right")

    for directory in listing.directories:
        kind = "encrypted folder" if directory.is_encrypted else "folder"
        style = "yellow" if directory.is_encrypted else "blue"
        table.add_row(f"[{style}]{directory.name}/[/{style}]", kind, "")
    for obj in listing.objects:
        table.add_row(obj.display_name, obj.content_type or "file", human_size(obj.size))

    if not listing.directories and not listing.objects:
        console.print(f"[dim]/{listing.path} is empty[/dim]")
        return
    console.print(table)


def _emit_timeline(status: str, kind: str, name: str, detail: Optional[str] = None) -> None:
    stamp = time.strftime("%H:%M:%S")
    palette = {
        "DONE": "green",
        "FAIL": "red",
        "STOP": "yellow",
    }
    color = palette.get(status, "white")
    suffix = f" cause={detail}" if detail else ""
    console.print(f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] {kind}: {name}{suffix}")


class UploadProgressDisplay:
    """One progress bar per upload item, driven by pipeline events."""

    def __init__(self):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold green]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[dim]{task.fields[size]}"),
            TimeElapsedColumn(),
            expand=False,
            console=console,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._live: Optional[Live] = None

    def start(self, items: Iterable[UploadItem]) -> None:
        if self._live is None:
            self._live = Live(
                self._progress,
                console=console,
                refresh_per_second=8,
                vertical_overflow="visible",
            )
            self._live.start()
        for item in items:
            if not item.status.is_terminal:
                self._task_for(item)

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _task_for(self, item: UploadItem) -> TaskID:
        task_id = self._tasks.get(item.id)
        if task_id is None:
            task_id = self._progress.add_task(
                "upload",
                label=item.name[:60],
                size=human_size(item.total_size),
                total=100,
                completed=item.progress,
            )
            self._tasks[item.id] = task_id
        return task_id

    def on_progress(self, item: UploadItem) -> None:
        self._progress.update(self._task_for(item), completed=item.progress)

    def on_finished(self, item: UploadItem) -> None:
        task_id = self._tasks.pop(item.id, None)
        if task_id is not None:
            self._progress.remove_task(task_id)

        if item.status is UploadStatus.COMPLETED:
            _emit_timeline("DONE", "file", item.key)
        elif item.status is UploadStatus.CANCELLED:
            _emit_timeline("STOP", "file", item.key, item.error)
        else:
            _emit_timeline("FAIL", "file", item.key, item.error)


class JobProgressDisplay:
    """Spinner plus bar for one background job; indeterminate while pending."""

    def __init__(self, key: str):
        self.key = key
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.description}", justify="left"),
            BarColumn(bar_width=36),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            expand=False,
            console=console,
        )
        self._task_id: Optional[TaskID] = None
        self._live: Optional[Live] = None

    def start(self) -> None:
        if self._live is not None:
            return
        self._task_id = self._progress.add_task("Starting...", total=None)
        self._live = Live(self._progress, console=console, refresh_per_second=5)
        self._live.start()

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def on_update(self, job: Job) -> None:
        if job.key != self.key or self._task_id is None:
            return
        percent = job_percent(job)
        self._progress.update(
            self._task_id,
            description=describe_job(job)[:80],
            total=100 if percent is not None else None,
            completed=percent or 0,
        )

    def finish(self, job: Job) -> None:
        detail = describe_job(job)
        if job.state is JobState.COMPLETED:
            output = job.output_path or job.output_key
            _emit_timeline("DONE", "job", job.key, output)
        elif job.state is JobState.CANCELLED:
            _emit_timeline("STOP", "job", job.key, detail)
        else:
            _emit_timeline("FAIL", "job", job.key, detail)
