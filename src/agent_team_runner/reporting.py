"""Render run status and run listings for the CLI."""

from __future__ import annotations

import io
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.table import Table

from .coordinator import RunStatusView
from .models import RunOutcome, StatusRecord, WorkerState


def _state_label(record: StatusRecord) -> str:
    if record.state == WorkerState.IN_PROGRESS:
        return "[yellow]In progress[/yellow]"
    if record.state == WorkerState.COMPLETED:
        return "[green]✓ Completed[/green]"
    if record.state == WorkerState.FAILED:
        reason = record.failure_reason.value if record.failure_reason else "failed"
        return f"[red]✗ Failed ({reason})[/red]"
    return "[dim]Pending[/dim]"


def _run_state_label(value: str) -> str:
    if value == "completed":
        return "[green]completed[/green]"
    if value == "aborted":
        return "[red]aborted[/red]"
    if value == "running":
        return "[yellow]running[/yellow]"
    return value


def worker_table(workers: dict[str, StatusRecord], title: Optional[str] = None) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Worker", style="cyan")
    table.add_column("State", style="bold")
    table.add_column("Progress", justify="right")
    table.add_column("Current task")
    table.add_column("Updated", style="dim")

    for worker_id, record in workers.items():
        task = record.current_task
        if record.error and record.error.detail:
            task = record.error.detail
        table.add_row(
            worker_id,
            _state_label(record),
            f"{record.progress}%",
            task[:60],
            record.updated_at,
        )
    return table


def render_status(view: RunStatusView) -> str:
    """Render a run's status as plain text."""
    console = Console(file=io.StringIO(), record=True, width=120)
    console.print(f"[bold]Run {view.run_id}[/bold] ({view.plan.feature_name})")
    owner = view.run_state.get("coordinator_pid")
    owner_note = ""
    if view.state.value == "running":
        owner_note = f" (coordinator pid {owner}, {'alive' if view.coordinator_alive else 'not running'})"
    console.print(f"State: {_run_state_label(view.state.value)}{owner_note}")
    if view.archived:
        console.print("[dim]archived[/dim]")
    console.print(worker_table(view.workers))

    if view.fatal_workers:
        console.print(f"[red]Fatal:[/red] {', '.join(view.fatal_workers)}")
    if view.skipped:
        console.print("Skipped:")
        for worker_id, reason in view.skipped.items():
            console.print(f"  {worker_id} ({reason})")
    for warning in view.warnings:
        console.print(
            f"[yellow]Stalled:[/yellow] {warning.get('worker_id')} "
            f"idle {warning.get('idle_seconds')}s at {warning.get('raised_at')}"
        )
    return console.export_text()


def render_outcome(outcome: RunOutcome) -> str:
    console = Console(file=io.StringIO(), record=True, width=120)
    console.print(f"[bold]Run {outcome.run_id}[/bold] finished: {_run_state_label(outcome.state.value)}")
    console.print(worker_table(outcome.snapshot))
    if outcome.fatal_workers:
        console.print(f"[red]Fatal:[/red] {', '.join(outcome.fatal_workers)}")
    if outcome.skipped:
        console.print("Skipped:")
        for worker_id, reason in outcome.skipped.items():
            console.print(f"  {worker_id} ({reason})")
    for worker_id, tasks in outcome.completed_tasks().items():
        console.print(f"{worker_id}: {len(tasks)} task(s) completed")
    return console.export_text()


def render_runs(runs: Iterable[dict[str, Any]]) -> str:
    runs = list(runs)
    console = Console(file=io.StringIO(), record=True, width=120)
    if not runs:
        console.print("No runs found")
        return console.export_text()
    table = Table(title="Runs", show_header=True)
    table.add_column("Run ID", style="cyan")
    table.add_column("Feature")
    table.add_column("Status", style="bold")
    table.add_column("Created", style="dim")
    table.add_column("Finished", style="dim")
    for item in runs:
        status = str(item.get("status") or "unknown")
        if item.get("archived"):
            status = f"{status} (archived)"
        table.add_row(
            str(item.get("run_id")),
            str(item.get("feature_name") or ""),
            _run_state_label(status),
            str(item.get("created_at") or ""),
            str(item.get("finished_at") or ""),
        )
    console.print(table)
    return console.export_text()
