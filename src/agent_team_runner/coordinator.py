"""Top-level API: start, resume, await, cancel, and inspect runs."""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from .config import RunnerSettings, load_runner_settings
from .constants import SKIP_DEPENDENCY_BLOCKED, SKIP_NOT_REQUIRED
from .errors import AlreadyInitialized, PlanError, RunActiveError, RunStateError
from .graph import DependencyGraph, order_by_template, validate_template
from .models import RunOutcome, RunPlan, RunState, StatusRecord
from .plan import PlanSelector, all_selector
from .run_store import RunStore, ensure_state_root
from .scheduler import Scheduler
from .status_store import StatusStore
from .utils import _coerce_int, _new_run_id, _pid_is_running
from .worker_handle import Launcher, WorkerLauncher


@dataclass
class RunStatusView:
    """Point-in-time view of a run for `status` output."""

    plan: RunPlan
    state: RunState
    run_state: dict[str, Any]
    workers: dict[str, StatusRecord]
    skipped: dict[str, str] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)
    fatal_workers: list[str] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    coordinator_alive: bool = False
    archived: bool = False

    @property
    def run_id(self) -> str:
        return self.plan.run_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.plan.run_id,
            "feature_name": self.plan.feature_name,
            "state": self.state.value,
            "required_workers": list(self.plan.required_workers),
            "workers": {wid: rec.to_dict() for wid, rec in self.workers.items()},
            "skipped": dict(self.skipped),
            "blocked": list(self.blocked),
            "fatal_workers": list(self.fatal_workers),
            "warnings": list(self.warnings),
            "coordinator_pid": self.run_state.get("coordinator_pid"),
            "coordinator_alive": self.coordinator_alive,
            "started_at": self.run_state.get("started_at"),
            "finished_at": self.run_state.get("finished_at"),
            "archived": self.archived,
        }


def _parse_run_state(value: Any) -> RunState:
    try:
        return RunState(str(value or RunState.IDLE.value))
    except ValueError:
        return RunState.IDLE


def _live_owner(run_state: dict[str, Any]) -> Optional[int]:
    """Return the pid of another live coordinator owning the run, if any."""
    pid = _coerce_int(run_state.get("coordinator_pid"), 0)
    if pid and pid != os.getpid() and _pid_is_running(pid):
        return pid
    return None


class RunCoordinator:
    """Own the runs of one project directory.

    Parameters
    ----------
    project_dir:
        Project whose `.team_runner/` directory holds run state.
    settings:
        Resolved settings; loaded from the project config when omitted.
    launcher:
        Process backend; defaults to `WorkerLauncher`.
    clock / sleep:
        Injected into each scheduler for tests.
    """

    def __init__(
        self,
        project_dir: Path,
        settings: Optional[RunnerSettings] = None,
        launcher: Optional[Launcher] = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.settings = settings if settings is not None else load_runner_settings(self.project_dir)
        self.runs = RunStore(self.project_dir)
        self.store = StatusStore(self.runs.runs_dir)
        self.launcher = launcher if launcher is not None else WorkerLauncher(self.project_dir, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._schedulers: dict[str, Scheduler] = {}
        self._outcomes: dict[str, RunOutcome] = {}
        self._finalize_lock = threading.Lock()

    # -- public API ---------------------------------------------------------

    def start_run(
        self,
        feature_name: str,
        candidate_worker_ids: Optional[Iterable[str]] = None,
        plan_selector: PlanSelector = all_selector,
    ) -> str:
        """Plan and start a new run; returns its run id.

        Raises:
            PlanError: If the selection is empty, names unknown workers, or the
                template is invalid.
            RunStateError: If the run cannot be persisted or initialized.
        """
        template = self.settings.template
        validate_template(template)
        known = [spec.worker_id for spec in template]
        candidates = order_by_template(candidate_worker_ids if candidate_worker_ids is not None else known, template)
        unknown = [wid for wid in candidates if wid not in known]
        if unknown:
            raise PlanError(f"Unknown worker(s): {', '.join(unknown)} (known: {', '.join(known)})")

        selected = list(plan_selector(candidates))
        if not selected:
            raise PlanError("Plan selects no workers")
        outside = [wid for wid in selected if wid not in candidates]
        if outside:
            raise PlanError(f"Plan selects worker(s) outside the candidates: {', '.join(outside)}")

        ensure_state_root(self.project_dir)
        plan = RunPlan(
            run_id=_new_run_id(feature_name),
            feature_name=feature_name,
            required_workers=tuple(order_by_template(selected, template)),
            candidate_workers=tuple(candidates),
            template=tuple(template),
            project_dir=str(self.project_dir),
        )
        DependencyGraph.build(plan)
        self.runs.create_run(plan)

        scheduler = self._new_scheduler()
        try:
            scheduler.start(plan)
        except AlreadyInitialized as exc:
            raise RunStateError(str(exc)) from exc
        self._schedulers[plan.run_id] = scheduler
        return plan.run_id

    def poll_once(self, run_id: str) -> RunState:
        """Run a single scheduling iteration for an active run."""
        scheduler = self._active(run_id)
        state = scheduler.step()
        if state.is_finished:
            self._finalize(run_id, scheduler)
        return state

    def await_completion(self, run_id: str) -> RunOutcome:
        """Block until the run finishes and return its outcome.

        A run that already finished returns its persisted outcome.

        Raises:
            RunNotFound: If the run does not exist.
            RunStateError: If the run is unfinished and not active here.
        """
        if run_id in self._outcomes:
            return self._outcomes[run_id]
        scheduler = self._schedulers.get(run_id)
        if scheduler is None:
            report = self.runs.load_report(run_id)
            if report is not None:
                return report
            raise RunStateError(f"Run {run_id} is not active in this process; resume it first")
        scheduler.run()
        return self._finalize(run_id, scheduler)

    def resume(self, run_id: str) -> str:
        """Re-attach to an existing run without re-running completed workers.

        Raises:
            RunNotFound: If the run does not exist.
            RunActiveError: If another live coordinator owns the run.
        """
        plan = self.runs.load_plan(run_id)
        if run_id in self._schedulers:
            return run_id
        run_state = self.runs.load_state(run_id)
        if _parse_run_state(run_state.get("status")).is_finished:
            if self.runs.load_report(run_id) is None:
                self._rebuild_report(plan, run_state)
            logger.info("Run {} already finished ({}); nothing to resume", run_id, run_state.get("status"))
            return run_id

        owner = _live_owner(run_state)
        if owner is not None:
            raise RunActiveError(run_id, owner)

        scheduler = self._new_scheduler(self._settings_for(plan, run_state))
        scheduler.attach(plan, run_state)
        self._schedulers[run_id] = scheduler
        return run_id

    def cancel(self, run_id: str) -> None:
        """Cancel a run, whichever process owns it.

        Raises:
            RunNotFound: If the run does not exist.
        """
        scheduler = self._schedulers.get(run_id)
        if scheduler is not None:
            scheduler.cancel()
            self._finalize(run_id, scheduler)
            return

        plan = self.runs.load_plan(run_id)
        run_state = self.runs.load_state(run_id)
        if _parse_run_state(run_state.get("status")).is_finished:
            logger.info("Run {} already finished; nothing to cancel", run_id)
            return

        self.runs.request_cancel(run_id)
        owner = _live_owner(run_state)
        if owner is not None:
            logger.info("Cancel requested; coordinator pid {} will stop run {}", owner, run_id)
            return

        logger.warning("No live coordinator owns run {}; stopping its workers directly", run_id)
        scheduler = self._new_scheduler(self._settings_for(plan, run_state))
        scheduler.attach(plan, run_state)
        scheduler.cancel()
        self._finalize(run_id, scheduler)

    def status(self, run_id: str) -> RunStatusView:
        """Build a view of the run from persisted state and status records.

        Raises:
            RunNotFound: If the run does not exist.
            RunStateError: If the plan or run state cannot be read.
        """
        paths = self.runs.locate(run_id)
        plan = self.runs.load_plan(run_id)
        run_state = self.runs.load_state(run_id)
        snapshot = self._store_for(run_id).snapshot(run_id, plan.required_workers)
        graph = DependencyGraph.build(plan)

        report = self.runs.load_report(run_id)
        if report is not None:
            skipped = dict(report.skipped)
            fatal = list(report.fatal_workers)
        else:
            skipped = {wid: SKIP_NOT_REQUIRED for wid in graph.skipped}
            skipped.update({wid: SKIP_DEPENDENCY_BLOCKED for wid in graph.blocked_workers(snapshot)})
            fatal = graph.fatal_causes(snapshot)

        owner_pid = _coerce_int(run_state.get("coordinator_pid"), 0)
        return RunStatusView(
            plan=plan,
            state=_parse_run_state(run_state.get("status")),
            run_state=run_state,
            workers=snapshot,
            skipped=skipped,
            blocked=graph.blocked_workers(snapshot),
            fatal_workers=fatal,
            warnings=[w for w in list(run_state.get("warnings") or []) if isinstance(w, dict)],
            coordinator_alive=bool(owner_pid) and _pid_is_running(owner_pid),
            archived=paths.run_dir.parent != self.runs.runs_dir,
        )

    def release(self, run_id: str) -> None:
        """Give up ownership of an active run so another process can resume it."""
        scheduler = self._active(run_id)
        if scheduler.in_flight:
            raise RunStateError(f"Run {run_id} has running workers; cannot release it")
        self._schedulers.pop(run_id, None)
        self.runs.update_state(run_id, {"coordinator_pid": None})
        logger.debug("Released run {}", run_id)

    def list_runs(self) -> list[dict[str, Any]]:
        return self.runs.list_runs()

    # -- internals ----------------------------------------------------------

    def _settings_for(self, plan: RunPlan, run_state: dict[str, Any]) -> RunnerSettings:
        """Settings the run was started with; the project config fills any gaps."""
        stored = run_state.get("settings")
        if not isinstance(stored, dict):
            return self.settings
        return RunnerSettings.from_dict(stored, template=plan.template, fallback=self.settings)

    def _new_scheduler(self, settings: Optional[RunnerSettings] = None) -> Scheduler:
        return Scheduler(
            store=self.store,
            runs=self.runs,
            launcher=self.launcher,
            settings=settings or self.settings,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _store_for(self, run_id: str) -> StatusStore:
        base = self.runs.locate(run_id).run_dir.parent
        return self.store if base == self.runs.runs_dir else StatusStore(base)

    def _active(self, run_id: str) -> Scheduler:
        scheduler = self._schedulers.get(run_id)
        if scheduler is None:
            raise RunStateError(f"Run {run_id} is not active in this process")
        return scheduler

    def _finalize(self, run_id: str, scheduler: Scheduler) -> RunOutcome:
        """Persist the report and release the run; safe to call more than once."""
        with self._finalize_lock:
            if run_id in self._outcomes:
                return self._outcomes[run_id]
            outcome = scheduler.outcome
            if outcome is None:
                raise RunStateError(f"Run {run_id} has not finished")
            report_path = self.runs.save_report(outcome)
            cancel_request = self.runs.paths(run_id).cancel_request
            if cancel_request.exists():
                cancel_request.unlink()
            self._outcomes[run_id] = outcome
            self._schedulers.pop(run_id, None)
            logger.info("Wrote report for run {} to {}", run_id, report_path)
            if scheduler.settings.archive_on_finish:
                self.runs.archive(run_id)
            return outcome

    def _rebuild_report(self, plan: RunPlan, run_state: dict[str, Any]) -> RunOutcome:
        """Write a report for a finished run whose report was lost."""
        graph = DependencyGraph.build(plan)
        snapshot = self._store_for(plan.run_id).snapshot(plan.run_id, plan.required_workers)
        skipped = {wid: SKIP_NOT_REQUIRED for wid in graph.skipped}
        skipped.update({wid: SKIP_DEPENDENCY_BLOCKED for wid in graph.blocked_workers(snapshot)})
        state = _parse_run_state(run_state.get("status"))
        outcome = RunOutcome(
            run_id=plan.run_id,
            state=state,
            snapshot=snapshot,
            fatal_workers=graph.failed_workers(snapshot) if state == RunState.ABORTED else [],
            skipped=skipped,
            cancelled=bool(run_state.get("cancelled")),
            finished_at=run_state.get("finished_at"),
        )
        self.runs.save_report(outcome)
        logger.warning("Rebuilt missing report for run {}", plan.run_id)
        return outcome
