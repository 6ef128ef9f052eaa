#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for Agent Team Runner.

Coordinates a team of worker processes (test engineer, backend developer,
QA reviewer, ...) through a dependency graph, using shared status files.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import RunnerSettings, load_runner_settings
from .constants import (
    ENV_RUN_DIR,
    ENV_STATUS_FILE,
    ENV_WORKER_ID,
    EXIT_ABORTED,
    EXIT_COMPLETED,
    EXIT_ERROR,
    LOGS_DIR_NAME,
)
from .coordinator import RunCoordinator
from .errors import InvalidTransition, PlanError, TeamRunnerError
from .graph import DependencyGraph, order_by_template
from .models import FailureReason, RunOutcome, RunPlan, StatusError, StatusRecord, WorkerState, parse_worker_state
from .plan import PlanSelector, all_selector, checklist_selector, parse_worker_list
from .reporting import render_outcome, render_runs, render_status
from .status_store import StatusStore


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _add_common_arguments(parser: argparse.ArgumentParser, *, log_level: bool = True) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    if log_level:
        parser.add_argument(
            "--log-level",
            type=str,
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Log level (default: INFO)",
        )


def _add_selection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--plan",
        type=Path,
        default=None,
        help="Markdown checklist selecting required workers ('[x] Backend Developer')",
    )
    parser.add_argument(
        "--workers",
        type=str,
        default=None,
        help="Comma separated candidate workers (default: every worker in the template)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner run",
        description="Agent Team Runner - start a run and supervise it to completion",
    )
    parser.add_argument("feature_name", type=str, help="Feature name (used in the run id)")
    _add_common_arguments(parser)
    _add_selection_arguments(parser)
    parser.add_argument(
        "--command",
        type=str,
        default=None,
        help="Default worker command; supports {worker_id}, {run_id}, {run_dir}, {status_file}, {project_dir}",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between scheduler iterations (default: from config or 2)",
    )
    parser.add_argument(
        "--max-duration",
        type=float,
        default=None,
        help="Per-worker time limit in seconds (default: from config or 3600)",
    )
    parser.add_argument(
        "--stale-after",
        type=float,
        default=None,
        help="Seconds without progress before a stall warning (default: from config or 300)",
    )
    parser.add_argument(
        "--detach",
        action="store_true",
        help="Start the run and supervise it from a background coordinator",
    )
    return parser


def _build_resume_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner resume",
        description="Agent Team Runner - re-attach to an interrupted run",
    )
    parser.add_argument("run_id", type=str, help="Run id to resume")
    _add_common_arguments(parser)
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner status",
        description="Agent Team Runner - show a run's status (or list runs)",
    )
    parser.add_argument("run_id", type=str, nargs="?", default=None, help="Run id (default: list runs)")
    _add_common_arguments(parser, log_level=False)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_cancel_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner cancel",
        description="Agent Team Runner - cancel a run",
    )
    parser.add_argument("run_id", type=str, help="Run id to cancel")
    _add_common_arguments(parser)
    return parser


def _build_report_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner report",
        description="Agent Team Runner - write a worker status record (for use inside workers)",
    )
    parser.add_argument(
        "--status",
        type=str,
        required=True,
        choices=["in_progress", "completed", "error", "failed"],
        help="Worker status",
    )
    parser.add_argument("--progress", type=int, default=None, help="Progress percentage (0-100)")
    parser.add_argument("--task", type=str, default=None, help="Current task description")
    parser.add_argument(
        "--completed-task",
        action="append",
        default=[],
        help="Task finished since the last report (repeatable)",
    )
    parser.add_argument("--error", type=str, default=None, help="Failure detail (with --status error)")
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=None,
        help=f"Run directory (default: ${ENV_RUN_DIR})",
    )
    parser.add_argument(
        "--worker",
        type=str,
        default=None,
        help=f"Worker id (default: ${ENV_WORKER_ID})",
    )
    return parser


def _build_plan_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner plan",
        description="Agent Team Runner - preview the dependency tree for a plan",
    )
    _add_common_arguments(parser, log_level=False)
    _add_selection_arguments(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_main_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-team-runner",
        description="Agent Team Runner - coordinate a team of worker agents",
    )
    parser.add_argument(
        "command",
        choices=["run", "resume", "status", "cancel", "report", "plan"],
        help="Subcommand",
    )
    return parser


def _fail(message: str) -> int:
    sys.stderr.write(f"error: {message}\n")
    return EXIT_ERROR


def _selection(plan_path: Optional[Path], workers: Optional[str]) -> tuple[Optional[list[str]], PlanSelector]:
    candidates = parse_worker_list(workers) or None
    selector = checklist_selector(plan_path) if plan_path is not None else all_selector
    return candidates, selector


def _outcome_exit_code(outcome: RunOutcome) -> int:
    return EXIT_COMPLETED if outcome.succeeded else EXIT_ABORTED


def _await_and_report(coordinator: RunCoordinator, run_id: str) -> int:
    try:
        outcome = coordinator.await_completion(run_id)
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling run {}", run_id)
        coordinator.cancel(run_id)
        outcome = coordinator.await_completion(run_id)
    sys.stdout.write(render_outcome(outcome))
    return _outcome_exit_code(outcome)


def _spawn_detached_coordinator(coordinator: RunCoordinator, run_id: str, log_level: str) -> int:
    coordinator.release(run_id)
    log_dir = coordinator.runs.paths(run_id).run_dir / LOGS_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "coordinator.log"
    argv = [
        sys.executable,
        "-m",
        "agent_team_runner.runner",
        "resume",
        run_id,
        "--project-dir",
        str(coordinator.project_dir),
        "--log-level",
        log_level,
    ]
    with open(log_path, "ab") as log_file:
        process = subprocess.Popen(
            argv,
            cwd=coordinator.project_dir,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=log_file,
            start_new_session=os.name != "nt",
        )
    sys.stdout.write(f"Coordinator for {run_id} running in background (pid {process.pid}); log: {log_path}\n")
    return EXIT_COMPLETED


def _run_command(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    try:
        settings = load_runner_settings(project_dir).with_overrides(
            poll_interval_seconds=args.poll_interval,
            max_duration_seconds=args.max_duration,
            stale_after_seconds=args.stale_after,
            default_command=args.command,
        )
        candidates, selector = _selection(args.plan, args.workers)
        coordinator = RunCoordinator(project_dir, settings)
        run_id = coordinator.start_run(args.feature_name, candidates, selector)
        sys.stdout.write(f"Started run {run_id}\n")
        if args.detach:
            return _spawn_detached_coordinator(coordinator, run_id, args.log_level)
        return _await_and_report(coordinator, run_id)
    except TeamRunnerError as exc:
        return _fail(str(exc))


def _resume_command(project_dir: Path, run_id: str) -> int:
    try:
        coordinator = RunCoordinator(project_dir)
        coordinator.resume(run_id)
        return _await_and_report(coordinator, run_id)
    except TeamRunnerError as exc:
        return _fail(str(exc))


def _status_command(project_dir: Path, run_id: Optional[str], *, as_json: bool = False) -> int:
    try:
        coordinator = RunCoordinator(project_dir, settings=RunnerSettings())
        if run_id is None:
            runs = coordinator.list_runs()
            if as_json:
                sys.stdout.write(json.dumps({"runs": runs}, indent=2, sort_keys=True) + "\n")
            else:
                sys.stdout.write(render_runs(runs))
            return 0
        view = coordinator.status(run_id)
    except TeamRunnerError as exc:
        if as_json:
            sys.stdout.write(json.dumps({"ok": False, "error": str(exc)}) + "\n")
            return EXIT_ERROR
        return _fail(str(exc))

    if as_json:
        sys.stdout.write(json.dumps(view.to_dict(), indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(render_status(view))
    return 0


def _cancel_command(project_dir: Path, run_id: str) -> int:
    try:
        coordinator = RunCoordinator(project_dir)
        coordinator.cancel(run_id)
    except TeamRunnerError as exc:
        return _fail(str(exc))
    sys.stdout.write(f"Cancelled run {run_id}\n")
    return 0


def _report_command(args: argparse.Namespace) -> int:
    run_dir = args.run_dir or (Path(os.environ[ENV_RUN_DIR]) if os.environ.get(ENV_RUN_DIR) else None)
    worker_id = args.worker or os.environ.get(ENV_WORKER_ID)
    if run_dir is None and os.environ.get(ENV_STATUS_FILE):
        # <run_dir>/.status/<worker>.status
        run_dir = Path(os.environ[ENV_STATUS_FILE]).parent.parent
    if run_dir is None or not worker_id:
        return _fail(f"--run-dir and --worker are required outside a worker (or set ${ENV_RUN_DIR} / ${ENV_WORKER_ID})")

    run_dir = run_dir.resolve()
    store = StatusStore(run_dir.parent)
    run_id = run_dir.name
    current = store.read(run_id, worker_id) or StatusRecord.pending(worker_id)

    state = parse_worker_state(args.status)
    completed = list(current.completed_tasks)
    for task in args.completed_task:
        if task not in completed:
            completed.append(task)
    progress = current.progress if args.progress is None else max(0, min(100, int(args.progress)))
    if state == WorkerState.COMPLETED and args.progress is None:
        progress = 100
    error = None
    if state == WorkerState.FAILED:
        error = StatusError(reason=FailureReason.WORKER_REPORTED, detail=args.error or args.task or "")

    record = StatusRecord(
        worker_id=worker_id,
        state=state,
        progress=progress,
        current_task=args.task if args.task is not None else current.current_task,
        completed_tasks=completed,
        error=error,
    )
    try:
        store.write(run_id, worker_id, record)
    except InvalidTransition as exc:
        return _fail(str(exc))
    except OSError as exc:
        return _fail(f"cannot write status for {worker_id}: {exc}")
    return 0


def _plan_command(project_dir: Path, plan_path: Optional[Path], workers: Optional[str], *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    try:
        settings = load_runner_settings(project_dir)
        candidates, selector = _selection(plan_path, workers)
        known = [spec.worker_id for spec in settings.template]
        candidates = order_by_template(candidates if candidates is not None else known, settings.template)
        required = order_by_template(selector(candidates), settings.template)
        if not required:
            raise PlanError("Plan selects no workers")
        preview = RunPlan(
            run_id="preview",
            feature_name="preview",
            required_workers=tuple(required),
            candidate_workers=tuple(candidates),
            template=settings.template,
            project_dir=str(project_dir),
        )
        graph = DependencyGraph.build(preview)
    except TeamRunnerError as exc:
        return _fail(str(exc))

    if as_json:
        payload = {
            "required": list(graph.required),
            "skipped": list(graph.skipped),
            "edges": [list(edge) for edge in graph.edges],
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(graph.render_tree())
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `agent-team-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "run":
            args = _build_run_parser().parse_args(argv[1:])
            _configure_logging(args.log_level)
            raise SystemExit(_run_command(args))
        if argv[0] == "resume":
            args = _build_resume_parser().parse_args(argv[1:])
            _configure_logging(args.log_level)
            raise SystemExit(_resume_command(args.project_dir, args.run_id))
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.project_dir, args.run_id, as_json=bool(args.json)))
        if argv[0] == "cancel":
            args = _build_cancel_parser().parse_args(argv[1:])
            _configure_logging(args.log_level)
            raise SystemExit(_cancel_command(args.project_dir, args.run_id))
        if argv[0] == "report":
            args = _build_report_parser().parse_args(argv[1:])
            raise SystemExit(_report_command(args))
        if argv[0] == "plan":
            args = _build_plan_parser().parse_args(argv[1:])
            raise SystemExit(
                _plan_command(args.project_dir, args.plan, args.workers, as_json=bool(args.json))
            )

    # Unknown or missing subcommand: let argparse print usage and exit 2.
    _build_main_parser().parse_args(argv[:1])
    raise SystemExit(EXIT_ERROR)


if __name__ == "__main__":
    main()
