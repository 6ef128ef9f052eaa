"""Drive one run: launch ready workers, supervise them, and decide the outcome.

The scheduler is a single-threaded cooperative polling loop. Each iteration:

1. snapshot the status store for every required worker
2. supervise in-flight processes (terminal records, abnormal exits, timeouts,
   stalls)
3. unless a fatal failure has halted launching, launch every ready worker that
   has not been launched yet, in template order
4. finish the run once nothing is in flight and no worker can still start

State machine: ``idle -> running -> {completed, aborted}``.
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import RunnerSettings
from .constants import SKIP_CANCELLED, SKIP_DEPENDENCY_BLOCKED, SKIP_NOT_REQUIRED, SKIP_RUN_ABORTED
from .errors import InvalidTransition, LaunchError, RunStateError
from .graph import DependencyGraph
from .io_utils import _read_text_tail
from .models import (
    FailureReason,
    RunOutcome,
    RunPlan,
    RunState,
    StallWarning,
    StatusRecord,
    WorkerState,
)
from .run_store import RunStore
from .status_store import StatusStore
from .utils import _coerce_float, _coerce_int, _iso_from_epoch, _now_iso
from .worker_handle import Launcher, WorkerProcessHandle


class Scheduler:
    """Run state machine for a single run.

    Parameters
    ----------
    store:
        Status records written by the workers.
    runs:
        Run bookkeeping (plan, run state, events).
    launcher:
        Process backend used to launch, probe, and stop workers.
    settings:
        Poll interval, timeouts, and per-worker commands.
    clock:
        Wall-clock source in epoch seconds; injectable for tests.
    sleep:
        Replacement for the interruptible poll wait; injectable for tests.
    """

    def __init__(
        self,
        *,
        store: StatusStore,
        runs: RunStore,
        launcher: Launcher,
        settings: RunnerSettings,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.store = store
        self.runs = runs
        self.launcher = launcher
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

        self.state = RunState.IDLE
        self.plan: Optional[RunPlan] = None
        self.graph: Optional[DependencyGraph] = None
        self.outcome: Optional[RunOutcome] = None
        self.warnings: list[StallWarning] = []

        self._handles: dict[str, WorkerProcessHandle] = {}
        self._launched: set[str] = set()
        self._activity: dict[str, tuple[tuple[Any, ...], float]] = {}
        self._stalled: set[str] = set()
        self._snapshot: dict[str, StatusRecord] = {}
        self._halted = False
        self._cancelled = False
        self._stop = threading.Event()
        self._lock = threading.RLock()

    # -- properties ---------------------------------------------------------

    @property
    def run_id(self) -> str:
        if self.plan is None:
            raise RunStateError("Scheduler has no run")
        return self.plan.run_id

    @property
    def run_dir(self) -> Path:
        return self.runs.paths(self.run_id).run_dir

    @property
    def in_flight(self) -> list[str]:
        return list(self._handles)

    @property
    def launched(self) -> set[str]:
        return set(self._launched)

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def snapshot(self) -> dict[str, StatusRecord]:
        return dict(self._snapshot)

    # -- transitions --------------------------------------------------------

    def start(self, plan: RunPlan) -> None:
        """Initialize a new run and enter the running state.

        Raises:
            InvalidTransition: If the scheduler is not idle.
            AlreadyInitialized: If the run's status records already exist.
            RunStateError: If status records or run state cannot be written.
            PlanError: If the plan does not fit the template.
        """
        self._require_idle()
        graph = DependencyGraph.build(plan)
        try:
            self.store.initialize(plan.run_id, plan.required_workers)
        except OSError as exc:
            raise RunStateError(f"Cannot initialize status records for {plan.run_id}: {exc}") from exc
        self.plan = plan
        self.graph = graph
        self.runs.update_state(
            plan.run_id,
            {
                "status": RunState.RUNNING.value,
                "coordinator_pid": os.getpid(),
                "started_at": _now_iso(),
                "launched": {},
                "warnings": [],
                "settings": self.settings.to_dict(),
            },
        )
        self.state = RunState.RUNNING
        self._event("run_started", required=list(plan.required_workers), skipped=list(graph.skipped))
        logger.info(
            "Run {} started: required={} skipped={}",
            plan.run_id,
            ", ".join(plan.required_workers),
            ", ".join(graph.skipped) or "-",
        )

    def attach(self, plan: RunPlan, run_state: dict[str, Any]) -> None:
        """Re-enter the running state for a run whose coordinator went away.

        Completed workers are never relaunched. Launched workers whose process
        is still alive are re-supervised by pid; launched workers whose process
        is gone without a terminal record are failed as abnormal exits.
        """
        self._require_idle()
        self.plan = plan
        self.graph = DependencyGraph.build(plan)
        snapshot = self.store.snapshot(plan.run_id, plan.required_workers)
        now = self._clock()
        self.warnings = [
            StallWarning.from_dict(item) for item in list(run_state.get("warnings") or []) if isinstance(item, dict)
        ]

        for worker_id, data in dict(run_state.get("launched") or {}).items():
            if worker_id not in snapshot or not isinstance(data, dict):
                continue
            self._launched.add(worker_id)
            record = snapshot[worker_id]
            if record.is_terminal:
                continue
            pid = _coerce_int(data.get("pid"), 0)
            started_at = _coerce_float(data.get("started_at"), now)
            if pid:
                handle = self.launcher.attach(
                    worker_id,
                    plan.run_id,
                    pid,
                    started_at=started_at,
                    max_duration=self.settings.max_duration_for(worker_id),
                )
                if self.launcher.is_alive(handle):
                    logger.info("Re-attached to worker {} (pid={})", worker_id, pid)
                    self._handles[worker_id] = handle
                    self._activity[worker_id] = (record.activity_key(), now)
                    continue
            snapshot[worker_id] = self._fail(
                worker_id,
                FailureReason.ABNORMAL_EXIT,
                f"process (pid {pid or '?'}) exited while the coordinator was down",
                base=record,
            )

        for worker_id, record in snapshot.items():
            if worker_id in self._launched or record.state == WorkerState.PENDING or record.is_terminal:
                continue
            # In progress without a recorded launch: no pid to supervise.
            self._launched.add(worker_id)
            snapshot[worker_id] = self._fail(
                worker_id,
                FailureReason.ABNORMAL_EXIT,
                "worker reported progress but no process was recorded for it",
                base=record,
            )

        self._snapshot = snapshot
        self.runs.update_state(
            plan.run_id,
            {"status": RunState.RUNNING.value, "coordinator_pid": os.getpid(), "resumed_at": _now_iso()},
        )
        self.state = RunState.RUNNING
        self._event("run_resumed", reattached=sorted(self._handles), launched=sorted(self._launched))
        logger.info(
            "Run {} resumed: {} worker(s) re-attached, {} already launched",
            plan.run_id,
            len(self._handles),
            len(self._launched),
        )

    def step(self) -> RunState:
        """Run one scheduling iteration and return the resulting run state."""
        with self._lock:
            if self.state != RunState.RUNNING:
                return self.state
            if self.runs.cancel_requested(self.run_id):
                logger.warning("Cancel requested for run {}", self.run_id)
                self.cancel()
                return self.state

            assert self.graph is not None
            snapshot = self.store.snapshot(self.run_id, self.graph.required)
            self._supervise(snapshot)

            if not self._halted and self.graph.has_fatal_failure(snapshot):
                self._halt(snapshot)

            if not self._halted:
                for worker_id in self.graph.ready_workers(snapshot):
                    if worker_id in self._launched:
                        continue
                    self._launch(worker_id, snapshot)
                    if self.graph.has_fatal_failure(snapshot):
                        self._halt(snapshot)
                        break

            self._snapshot = snapshot
            self._maybe_finish(snapshot)
            return self.state

    def run(self, *, max_iterations: Optional[int] = None) -> Optional[RunOutcome]:
        """Poll until the run finishes (or `max_iterations` steps have run)."""
        iterations = 0
        while self.state == RunState.RUNNING:
            self.step()
            iterations += 1
            if self.state != RunState.RUNNING:
                break
            if max_iterations is not None and iterations >= max_iterations:
                break
            self._wait(self.settings.poll_interval_seconds)
        return self.outcome

    def cancel(self) -> None:
        """Abort the run now, terminating live workers best-effort.

        Status records are left as last observed.
        """
        self._stop.set()
        with self._lock:
            if self.state != RunState.RUNNING:
                return
            self._cancelled = True
            for worker_id, handle in list(self._handles.items()):
                try:
                    self.launcher.terminate(handle)
                except OSError as exc:
                    logger.warning("Failed to terminate {}: {}", worker_id, exc)
            self._handles.clear()
            self._event("run_cancelled")
            self._finish(RunState.ABORTED)

    # -- supervision --------------------------------------------------------

    def _supervise(self, snapshot: dict[str, StatusRecord]) -> None:
        now = self._clock()
        for worker_id, handle in list(self._handles.items()):
            record = snapshot[worker_id]
            if record.is_terminal:
                self._release(worker_id, record)
                continue

            if now >= handle.deadline:
                elapsed = int(now - handle.started_at)
                logger.error("Worker {} exceeded max duration ({}s); terminating", worker_id, elapsed)
                self.launcher.terminate(handle)
                snapshot[worker_id] = self._fail(
                    worker_id,
                    FailureReason.TIMEOUT,
                    f"exceeded max duration after {elapsed}s",
                    base=record,
                )
                self._release(worker_id, snapshot[worker_id])
                continue

            if not self.launcher.is_alive(handle):
                # The worker may have written its final status just before exiting.
                record = self.store.read(self.run_id, worker_id) or record
                if record.is_terminal:
                    snapshot[worker_id] = record
                    self._release(worker_id, record)
                    continue
                snapshot[worker_id] = self._fail(
                    worker_id,
                    FailureReason.ABNORMAL_EXIT,
                    self._exit_detail(handle),
                    base=record,
                )
                self._release(worker_id, snapshot[worker_id])
                continue

            self._check_stall(worker_id, record, now)

    def _check_stall(self, worker_id: str, record: StatusRecord, now: float) -> None:
        key = record.activity_key()
        previous = self._activity.get(worker_id)
        if previous is None or previous[0] != key:
            self._activity[worker_id] = (key, now)
            self._stalled.discard(worker_id)
            return
        idle = now - previous[1]
        if idle < self.settings.stale_after_seconds or worker_id in self._stalled:
            return
        self._stalled.add(worker_id)
        warning = StallWarning(worker_id=worker_id, idle_seconds=int(idle))
        self.warnings.append(warning)
        logger.warning(
            "StalledWarning: worker {} reported no progress for {}s (current task: {})",
            worker_id,
            int(idle),
            record.current_task or "-",
        )
        self._event("worker_stalled", worker_id=worker_id, idle_seconds=int(idle))
        self.runs.update_state(self.run_id, {"warnings": [w.to_dict() for w in self.warnings]})

    def _exit_detail(self, handle: WorkerProcessHandle) -> str:
        code = self.launcher.exit_code(handle)
        detail = "process exited without a terminal status"
        if code is not None:
            detail = f"process exited with code {code} without a terminal status"
        if handle.stderr_path:
            tail = _read_text_tail(Path(handle.stderr_path), max_chars=240).strip()
            if tail:
                detail = f"{detail}; stderr: {tail}"
        return detail

    def _release(self, worker_id: str, record: StatusRecord) -> None:
        self._handles.pop(worker_id, None)
        self._activity.pop(worker_id, None)
        self._stalled.discard(worker_id)
        if record.state == WorkerState.COMPLETED:
            logger.info("Worker {} completed ({} task(s))", worker_id, len(record.completed_tasks))
            self._event("worker_completed", worker_id=worker_id, completed_tasks=record.completed_tasks)
        else:
            reason = record.failure_reason or FailureReason.WORKER_REPORTED
            detail = record.error.detail if record.error else record.current_task
            logger.error("Worker {} failed ({}): {}", worker_id, reason.value, detail)
            self._event("worker_failed", worker_id=worker_id, reason=reason.value, detail=detail)

    def _fail(
        self,
        worker_id: str,
        reason: FailureReason,
        detail: str,
        *,
        base: Optional[StatusRecord] = None,
    ) -> StatusRecord:
        """Write a coordinator-side failure record and return the effective record."""
        record = StatusRecord.failed(worker_id, reason, detail, base=base)
        try:
            self.store.write(self.run_id, worker_id, record)
        except InvalidTransition:
            # The worker reached a terminal state first; its own record wins.
            current = self.store.read(self.run_id, worker_id)
            if current is not None and current.is_terminal:
                return current
            raise
        return record

    # -- launching ----------------------------------------------------------

    def _launch(self, worker_id: str, snapshot: dict[str, StatusRecord]) -> None:
        command = self.settings.command_for(worker_id)
        self._launched.add(worker_id)
        try:
            if not command:
                raise LaunchError(worker_id, "no command configured")
            handle = self.launcher.launch(
                worker_id,
                self.run_id,
                command,
                run_dir=self.run_dir,
                max_duration=self.settings.max_duration_for(worker_id),
            )
        except LaunchError as exc:
            logger.error("LaunchError: {}", exc)
            snapshot[worker_id] = self._fail(worker_id, FailureReason.LAUNCH_ERROR, exc.detail, base=snapshot[worker_id])
            self.runs.record_launch(self.run_id, worker_id, {"pid": None, "error": exc.detail})
            self._release(worker_id, snapshot[worker_id])
            return

        self._handles[worker_id] = handle
        self._activity[worker_id] = (snapshot[worker_id].activity_key(), handle.started_at)
        self.runs.record_launch(self.run_id, worker_id, handle.to_dict())
        self._event(
            "worker_launched",
            worker_id=worker_id,
            pid=handle.pid,
            deadline=_iso_from_epoch(handle.deadline),
        )

    # -- completion ---------------------------------------------------------

    def _halt(self, snapshot: dict[str, StatusRecord]) -> None:
        assert self.graph is not None
        self._halted = True
        causes = self.graph.fatal_causes(snapshot)
        blocked = self.graph.blocked_workers(snapshot)
        logger.error(
            "Fatal failure in {}; no new workers will be launched (blocked: {})",
            ", ".join(causes),
            ", ".join(blocked) or "-",
        )
        self._event("run_halted", fatal_workers=causes, blocked=blocked, in_flight=sorted(self._handles))

    def _maybe_finish(self, snapshot: dict[str, StatusRecord]) -> None:
        assert self.graph is not None
        if self._handles:
            return
        if self.graph.all_completed(snapshot):
            self._finish(RunState.COMPLETED)
        elif self.graph.is_terminal(snapshot) or self._halted:
            self._finish(RunState.ABORTED)
        elif not self.graph.ready_workers(snapshot):
            logger.error("Run {} cannot make progress; aborting", self.run_id)
            self._finish(RunState.ABORTED)

    def _finish(self, state: RunState) -> None:
        assert self.graph is not None
        snapshot = self.store.snapshot(self.run_id, self.graph.required)
        skipped: dict[str, str] = {wid: SKIP_NOT_REQUIRED for wid in self.graph.skipped}
        blocked = set(self.graph.blocked_workers(snapshot))
        for worker_id in self.graph.required:
            record = snapshot[worker_id]
            if record.state != WorkerState.PENDING or worker_id in self._launched:
                continue
            if worker_id in blocked:
                skipped[worker_id] = SKIP_DEPENDENCY_BLOCKED
            elif self._cancelled:
                skipped[worker_id] = SKIP_CANCELLED
            else:
                skipped[worker_id] = SKIP_RUN_ABORTED

        fatal = self.graph.failed_workers(snapshot) if state == RunState.ABORTED else []
        self._snapshot = snapshot
        self.outcome = RunOutcome(
            run_id=self.run_id,
            state=state,
            snapshot=snapshot,
            fatal_workers=fatal,
            skipped=skipped,
            warnings=list(self.warnings),
            cancelled=self._cancelled,
            finished_at=_now_iso(),
        )
        self.state = state
        self._stop.set()
        self.runs.update_state(
            self.run_id,
            {
                "status": state.value,
                "finished_at": self.outcome.finished_at,
                "fatal_workers": fatal,
                "cancelled": self._cancelled,
            },
        )
        self._event("run_finished", state=state.value, fatal_workers=fatal, skipped=skipped)
        if state == RunState.COMPLETED:
            logger.info("Run {} completed", self.run_id)
        else:
            logger.error(
                "Run {} aborted (fatal: {}; skipped: {})",
                self.run_id,
                ", ".join(fatal) or "-",
                ", ".join(f"{k}={v}" for k, v in skipped.items()) or "-",
            )

    # -- helpers ------------------------------------------------------------

    def _require_idle(self) -> None:
        if self.state != RunState.IDLE:
            raise InvalidTransition(f"Scheduler is {self.state.value}, expected idle")

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._stop.wait(seconds)

    def _event(self, event_type: str, **payload: Any) -> None:
        self.runs.append_event(self.run_id, event_type, **payload)
