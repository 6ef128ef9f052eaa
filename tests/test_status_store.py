"""Test tolerant reads and forward-only writes of worker status records."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agent_team_runner.errors import AlreadyInitialized, InvalidTransition
from agent_team_runner.models import FailureReason, StatusRecord, WorkerState
from agent_team_runner.status_store import StatusStore


@pytest.fixture
def store(tmp_path: Path) -> StatusStore:
    store = StatusStore(tmp_path / "runs")
    store.initialize("run-1", ["test_engineer", "backend_dev"])
    return store


def _write_raw(store: StatusStore, worker_id: str, payload) -> None:
    path = store.path_for("run-1", worker_id)
    if isinstance(payload, str):
        path.write_text(payload, encoding="utf-8")
    else:
        path.write_text(json.dumps(payload), encoding="utf-8")


def test_initialize_writes_pending_records(store: StatusStore) -> None:
    record = store.read("run-1", "test_engineer")
    assert record is not None
    assert record.state == WorkerState.PENDING
    data = json.loads(store.path_for("run-1", "test_engineer").read_text(encoding="utf-8"))
    assert data["agent"] == "test_engineer"
    assert data["status"] == "pending"


def test_initialize_twice_raises(store: StatusStore) -> None:
    with pytest.raises(AlreadyInitialized):
        store.initialize("run-1", ["test_engineer"])


def test_read_unknown_worker_returns_none(store: StatusStore) -> None:
    assert store.read("run-1", "qa_reviewer") is None


def test_read_torn_write_returns_last_good(store: StatusStore) -> None:
    _write_raw(
        store,
        "test_engineer",
        {"agent": "test_engineer", "status": "in_progress", "progress": 30, "current_task": "fixtures"},
    )
    assert store.read("run-1", "test_engineer").progress == 30

    _write_raw(store, "test_engineer", '{"agent": "test_engineer", "status": "in_pro')
    record = store.read("run-1", "test_engineer")
    assert record.state == WorkerState.IN_PROGRESS
    assert record.progress == 30


def test_read_corrupt_without_history_is_pending(tmp_path: Path) -> None:
    store = StatusStore(tmp_path / "runs")
    path = store.path_for("run-9", "qa_reviewer")
    path.parent.mkdir(parents=True)
    path.write_text("not json", encoding="utf-8")
    assert store.read("run-9", "qa_reviewer").state == WorkerState.PENDING


def test_read_ignores_regression(store: StatusStore) -> None:
    _write_raw(store, "backend_dev", {"agent": "backend_dev", "status": "completed", "progress": 100})
    assert store.read("run-1", "backend_dev").state == WorkerState.COMPLETED

    _write_raw(store, "backend_dev", {"agent": "backend_dev", "status": "in_progress", "progress": 10})
    assert store.read("run-1", "backend_dev").state == WorkerState.COMPLETED


def test_read_accepts_failed_alias_and_clamps_progress(store: StatusStore) -> None:
    _write_raw(store, "backend_dev", {"agent": "backend_dev", "status": "failed", "progress": 250})
    record = store.read("run-1", "backend_dev")
    assert record.state == WorkerState.FAILED
    assert record.progress == 100
    assert record.failure_reason == FailureReason.WORKER_REPORTED


def test_write_rejects_backward_transition(store: StatusStore) -> None:
    store.write("run-1", "test_engineer", StatusRecord("test_engineer", WorkerState.COMPLETED, progress=100))
    with pytest.raises(InvalidTransition):
        store.write("run-1", "test_engineer", StatusRecord("test_engineer", WorkerState.IN_PROGRESS))
    with pytest.raises(InvalidTransition):
        store.write(
            "run-1",
            "test_engineer",
            StatusRecord.failed("test_engineer", FailureReason.TIMEOUT, "too slow"),
        )


def test_write_rejects_progress_decrease(store: StatusStore) -> None:
    store.write("run-1", "test_engineer", StatusRecord("test_engineer", WorkerState.IN_PROGRESS, progress=40))
    with pytest.raises(InvalidTransition):
        store.write("run-1", "test_engineer", StatusRecord("test_engineer", WorkerState.IN_PROGRESS, progress=20))
    store.write("run-1", "test_engineer", StatusRecord("test_engineer", WorkerState.IN_PROGRESS, progress=40))


def test_write_is_visible_to_other_readers(store: StatusStore, tmp_path: Path) -> None:
    store.write(
        "run-1",
        "backend_dev",
        StatusRecord("backend_dev", WorkerState.IN_PROGRESS, progress=10, completed_tasks=["schema"]),
    )
    other = StatusStore(tmp_path / "runs")
    record = other.read("run-1", "backend_dev")
    assert record.completed_tasks == ["schema"]


def test_snapshot_fills_missing_with_pending(store: StatusStore) -> None:
    snapshot = store.snapshot("run-1", ["test_engineer", "qa_reviewer"])
    assert snapshot["qa_reviewer"].state == WorkerState.PENDING
    assert set(snapshot) == {"test_engineer", "qa_reviewer"}


def test_poll_yields_changes_until_terminal(store: StatusStore) -> None:
    script = iter(
        [
            StatusRecord("test_engineer", WorkerState.IN_PROGRESS, progress=50),
            None,
            StatusRecord("test_engineer", WorkerState.COMPLETED, progress=100),
        ]
    )

    def sleep(_seconds: float) -> None:
        record = next(script)
        if record is not None:
            store.write("run-1", "test_engineer", record)

    states = [(r.state, r.progress) for r in store.poll("run-1", "test_engineer", 0.01, sleep=sleep)]
    assert states == [
        (WorkerState.PENDING, 0),
        (WorkerState.IN_PROGRESS, 50),
        (WorkerState.COMPLETED, 100),
    ]


def test_poll_stops_when_event_set(store: StatusStore) -> None:
    stop = threading.Event()
    stop.set()
    assert list(store.poll("run-1", "test_engineer", 0.01, stop=stop)) == []
