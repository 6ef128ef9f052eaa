"""Shared fakes for scheduler and coordinator tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agent_team_runner.config import RunnerSettings
from agent_team_runner.errors import LaunchError
from agent_team_runner.models import FailureReason, StatusError, StatusRecord, WorkerState
from agent_team_runner.status_store import StatusStore
from agent_team_runner.worker_handle import WorkerProcessHandle


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeProcess:
    worker_id: str
    run_id: str
    pid: int
    run_dir: Path
    alive: bool = True
    exit_code: Optional[int] = None


class FakeLauncher:
    """Scripted launcher: tests drive each worker's status file and exit."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.launched: list[str] = []
        self.attached: list[str] = []
        self.terminated: list[str] = []
        self.fail_launch: set[str] = set()
        self.processes: dict[int, FakeProcess] = {}
        self._by_worker: dict[str, FakeProcess] = {}
        self._next_pid = 41000

    # -- Launcher interface -------------------------------------------------

    def launch(
        self,
        worker_id: str,
        run_id: str,
        command: str,
        *,
        run_dir: Path,
        max_duration: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> WorkerProcessHandle:
        if worker_id in self.fail_launch:
            raise LaunchError(worker_id, "executable not found")
        self._next_pid += 1
        proc = FakeProcess(worker_id=worker_id, run_id=run_id, pid=self._next_pid, run_dir=run_dir)
        self.processes[proc.pid] = proc
        self._by_worker[worker_id] = proc
        self.launched.append(worker_id)
        started = self.clock()
        return WorkerProcessHandle(
            worker_id=worker_id,
            run_id=run_id,
            pid=proc.pid,
            started_at=started,
            deadline=started + max_duration,
            command=[command],
        )

    def attach(self, worker_id: str, run_id: str, pid: int, *, started_at: float, max_duration: float) -> WorkerProcessHandle:
        self.attached.append(worker_id)
        return WorkerProcessHandle(
            worker_id=worker_id,
            run_id=run_id,
            pid=pid,
            started_at=started_at,
            deadline=started_at + max_duration,
        )

    def is_alive(self, handle: WorkerProcessHandle) -> bool:
        proc = self.processes.get(handle.pid)
        return bool(proc and proc.alive)

    def exit_code(self, handle: WorkerProcessHandle) -> Optional[int]:
        proc = self.processes.get(handle.pid)
        return proc.exit_code if proc else None

    def terminate(self, handle: WorkerProcessHandle, grace_seconds: float = 0) -> None:
        proc = self.processes.get(handle.pid)
        if proc is None or not proc.alive:
            return
        proc.alive = False
        proc.exit_code = -15
        self.terminated.append(handle.worker_id)

    # -- worker-side script helpers -----------------------------------------

    def process(self, worker_id: str) -> FakeProcess:
        return self._by_worker[worker_id]

    def report(self, worker_id: str, status: str, **fields: Any) -> None:
        """Write a status record the way an external worker process would."""
        proc = self.process(worker_id)
        store = StatusStore(proc.run_dir.parent)
        state = {
            "in_progress": WorkerState.IN_PROGRESS,
            "completed": WorkerState.COMPLETED,
            "error": WorkerState.FAILED,
        }[status]
        error = None
        if state == WorkerState.FAILED:
            error = StatusError(reason=FailureReason.WORKER_REPORTED, detail=fields.pop("detail", "worker failed"))
        record = StatusRecord(worker_id=worker_id, state=state, error=error, **fields)
        store.write(proc.run_id, worker_id, record)

    def exit(self, worker_id: str, code: int = 0) -> None:
        proc = self.process(worker_id)
        proc.alive = False
        proc.exit_code = code

    def complete(self, worker_id: str, *tasks: str) -> None:
        self.report(worker_id, "completed", progress=100, completed_tasks=list(tasks))
        self.exit(worker_id, 0)

    def fail(self, worker_id: str, detail: str = "tests failed") -> None:
        self.report(worker_id, "error", detail=detail)
        self.exit(worker_id, 1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def launcher(clock: FakeClock) -> FakeLauncher:
    return FakeLauncher(clock)


@pytest.fixture
def settings() -> RunnerSettings:
    return RunnerSettings(
        poll_interval_seconds=1.0,
        stale_after_seconds=30.0,
        max_duration_seconds=100.0,
        default_command="fake-agent --role {worker_id}",
    )


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path
