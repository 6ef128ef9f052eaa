"""Persist run plans, coordinator run state, events, and reports.

Layout under the project's ``.team_runner/`` directory::

    runs/<run_id>/plan.yaml        immutable RunPlan
    runs/<run_id>/run_state.yaml   coordinator bookkeeping (owner pid, launched workers)
    runs/<run_id>/events.jsonl     append-only event log
    runs/<run_id>/report.json      final RunOutcome
    runs/<run_id>/.status/         worker status records (see status_store)
    archive/<run_id>/              finished runs when archiving is enabled
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    ARCHIVE_DIR,
    CANCEL_REQUEST_FILE,
    EVENTS_FILE,
    LOCK_FILE,
    PLAN_FILE,
    REPORT_FILE,
    RUN_STATE_FILE,
    RUNS_DIR,
    STATE_DIR_NAME,
)
from .errors import RunNotFound, RunStateError
from .io_utils import FileLock, _append_event, _load_data, _load_data_with_error, _read_events, _save_data
from .models import RunOutcome, RunPlan
from .utils import _now_iso


@dataclass(frozen=True)
class RunPaths:
    run_dir: Path

    @property
    def plan(self) -> Path:
        return self.run_dir / PLAN_FILE

    @property
    def run_state(self) -> Path:
        return self.run_dir / RUN_STATE_FILE

    @property
    def events(self) -> Path:
        return self.run_dir / EVENTS_FILE

    @property
    def report(self) -> Path:
        return self.run_dir / REPORT_FILE

    @property
    def cancel_request(self) -> Path:
        return self.run_dir / CANCEL_REQUEST_FILE

    @property
    def lock(self) -> Path:
        return self.run_dir / LOCK_FILE


def ensure_state_root(project_dir: Path) -> Path:
    state_root = project_dir.resolve() / STATE_DIR_NAME
    (state_root / RUNS_DIR).mkdir(parents=True, exist_ok=True)
    return state_root


class RunStore:
    """File-backed bookkeeping for runs in one project."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = self.project_dir / STATE_DIR_NAME
        self.runs_dir = self.state_root / RUNS_DIR
        self.archive_dir = self.state_root / ARCHIVE_DIR

    # -- paths --------------------------------------------------------------

    def paths(self, run_id: str) -> RunPaths:
        return RunPaths(self.runs_dir / run_id)

    def locate(self, run_id: str) -> RunPaths:
        """Return paths for an existing run, looking in the archive too.

        Raises:
            RunNotFound: If no plan exists for `run_id`.
        """
        for base in (self.runs_dir, self.archive_dir):
            paths = RunPaths(base / run_id)
            if paths.plan.exists():
                return paths
        raise RunNotFound(run_id)

    def exists(self, run_id: str) -> bool:
        try:
            self.locate(run_id)
        except RunNotFound:
            return False
        return True

    # -- plan ---------------------------------------------------------------

    def create_run(self, plan: RunPlan) -> RunPaths:
        """Create the run directory and persist its plan.

        Raises:
            RunStateError: If the run directory already exists or cannot be written.
        """
        paths = self.paths(plan.run_id)
        try:
            paths.run_dir.mkdir(parents=True, exist_ok=False)
            _save_data(paths.plan, plan.to_dict())
        except FileExistsError as exc:
            raise RunStateError(f"Run directory already exists: {paths.run_dir}") from exc
        except OSError as exc:
            raise RunStateError(f"Cannot persist plan for {plan.run_id}: {exc}") from exc
        return paths

    def load_plan(self, run_id: str) -> RunPlan:
        paths = self.locate(run_id)
        data, err = _load_data_with_error(paths.plan, {})
        if err:
            raise RunStateError(f"Cannot read plan for {run_id}: {err}")
        return RunPlan.from_dict(data)

    # -- run state ----------------------------------------------------------

    def load_state(self, run_id: str) -> dict[str, Any]:
        paths = self.locate(run_id)
        data, err = _load_data_with_error(paths.run_state, {})
        if err:
            raise RunStateError(f"Cannot read run state for {run_id}: {err}")
        return data

    def update_state(self, run_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge `updates` into run_state.yaml under the run lock.

        Raises:
            RunStateError: If the state file is corrupt or cannot be written.
        """
        paths = self.locate(run_id) if self.exists(run_id) else self.paths(run_id)
        try:
            with FileLock(paths.lock):
                current, err = _load_data_with_error(paths.run_state, {})
                if err:
                    raise RunStateError(f"Refusing to overwrite corrupt run state: {err}")
                current.update(updates)
                current["run_id"] = run_id
                current["updated_at"] = _now_iso()
                _save_data(paths.run_state, current)
        except OSError as exc:
            raise RunStateError(f"Cannot write run state for {run_id}: {exc}") from exc
        return current

    def record_launch(self, run_id: str, worker_id: str, handle_data: dict[str, Any]) -> None:
        state = self.load_state(run_id)
        launched = dict(state.get("launched") or {})
        launched[worker_id] = handle_data
        self.update_state(run_id, {"launched": launched})

    # -- events / report ----------------------------------------------------

    def append_event(self, run_id: str, event_type: str, **payload: Any) -> None:
        paths = self.paths(run_id)
        _append_event(paths.events, {"event": event_type, "run_id": run_id, **payload})

    def read_events(self, run_id: str) -> list[dict[str, Any]]:
        return _read_events(self.locate(run_id).events)

    def save_report(self, outcome: RunOutcome) -> Path:
        paths = self.paths(outcome.run_id)
        _save_data(paths.report, outcome.to_dict())
        return paths.report

    def load_report(self, run_id: str) -> Optional[RunOutcome]:
        paths = self.locate(run_id)
        if not paths.report.exists():
            return None
        data, err = _load_data_with_error(paths.report, {})
        if err:
            logger.warning("Ignoring unreadable report for {}: {}", run_id, err)
            return None
        return RunOutcome.from_dict(data)

    # -- cancellation -------------------------------------------------------

    def request_cancel(self, run_id: str) -> Path:
        paths = self.locate(run_id)
        paths.cancel_request.write_text(f"{_now_iso()} pid={os.getpid()}\n", encoding="utf-8")
        return paths.cancel_request

    def cancel_requested(self, run_id: str) -> bool:
        return self.paths(run_id).cancel_request.exists()

    # -- listing / archive --------------------------------------------------

    def list_runs(self) -> list[dict[str, Any]]:
        runs: list[dict[str, Any]] = []
        for base, archived in ((self.runs_dir, False), (self.archive_dir, True)):
            if not base.exists():
                continue
            for run_dir in sorted(p for p in base.iterdir() if p.is_dir()):
                paths = RunPaths(run_dir)
                if not paths.plan.exists():
                    continue
                plan = _load_data(paths.plan, {})
                state = _load_data(paths.run_state, {})
                runs.append(
                    {
                        "run_id": run_dir.name,
                        "feature_name": plan.get("feature_name"),
                        "status": state.get("status") or "unknown",
                        "created_at": plan.get("created_at"),
                        "finished_at": state.get("finished_at"),
                        "archived": archived,
                    }
                )
        runs.sort(key=lambda item: str(item.get("created_at") or ""))
        return runs

    def archive(self, run_id: str) -> Path:
        source = self.paths(run_id).run_dir
        target = self.archive_dir / run_id
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        logger.info("Archived run {} to {}", run_id, target)
        return target
