"""Test the `agent-team-runner` CLI subcommands."""

from __future__ import annotations

import json
import shlex
import sys
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agent_team_runner import runner
from agent_team_runner.constants import ENV_RUN_DIR, ENV_WORKER_ID
from agent_team_runner.models import WorkerState
from agent_team_runner.status_store import StatusStore

PYTHON = shlex.quote(sys.executable)


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        runner.main(argv)
    return int(excinfo.value.code or 0)


def _run_id_from(out: str) -> str:
    for line in out.splitlines():
        if line.startswith("Started run "):
            return line.split()[-1]
    raise AssertionError(f"no run id in output: {out!r}")


@pytest.fixture
def worker_run_dir(tmp_path: Path) -> Path:
    run_dir = tmp_path / "runs" / "run-1"
    StatusStore(run_dir.parent).initialize("run-1", ["test_engineer"])
    return run_dir


# -- run / status --------------------------------------------------------------


def test_run_completes_with_reporting_workers(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("PYTHONPATH", str(PROJECT_ROOT / "src"))
    command = f"{PYTHON} -m agent_team_runner.runner report --status completed --completed-task {{worker_id}}-done"

    code = _exit_code(
        [
            "run",
            "demo",
            "--project-dir",
            str(tmp_path),
            "--workers",
            "test_engineer,backend_dev",
            "--command",
            command,
            "--poll-interval",
            "0.1",
            "--log-level",
            "ERROR",
        ]
    )
    out = capsys.readouterr().out
    assert code == 0
    run_id = _run_id_from(out)
    assert "completed" in out

    assert _exit_code(["status", run_id, "--project-dir", str(tmp_path), "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["state"] == "completed"
    assert payload["workers"]["backend_dev"]["completed_tasks"] == ["backend_dev-done"]
    assert payload["skipped"]["db_architect"] == "not_required"

    assert _exit_code(["status", "--project-dir", str(tmp_path), "--json"]) == 0
    runs = json.loads(capsys.readouterr().out)["runs"]
    assert [item["run_id"] for item in runs] == [run_id]

    assert _exit_code(["status", run_id, "--project-dir", str(tmp_path)]) == 0
    text = capsys.readouterr().out
    assert "test_engineer" in text
    assert "State: completed" in text


def test_run_with_crashing_worker_is_aborted(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _exit_code(
        [
            "run",
            "demo",
            "--project-dir",
            str(tmp_path),
            "--workers",
            "test_engineer,qa_reviewer",
            "--command",
            f"{PYTHON} -c 'import sys; sys.exit(3)'",
            "--poll-interval",
            "0.1",
            "--log-level",
            "ERROR",
        ]
    )
    out = capsys.readouterr().out
    assert code == 1
    assert "aborted" in out
    assert "qa_reviewer (dependency_blocked)" in out


def test_run_rejects_empty_plan(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = tmp_path / "plan.md"
    plan.write_text("- [ ] Test Engineer\n- [ ] QA\n", encoding="utf-8")
    code = _exit_code(["run", "demo", "--project-dir", str(tmp_path), "--plan", str(plan), "--command", "true"])
    assert code == 2
    assert "selects no workers" in capsys.readouterr().err


def test_run_rejects_unknown_worker(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _exit_code(["run", "demo", "--project-dir", str(tmp_path), "--workers", "designer", "--command", "true"])
    assert code == 2
    assert "designer" in capsys.readouterr().err


def test_status_of_unknown_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _exit_code(["status", "nope", "--project-dir", str(tmp_path)]) == 2
    assert "not found" in capsys.readouterr().err

    assert _exit_code(["status", "nope", "--project-dir", str(tmp_path), "--json"]) == 2
    assert json.loads(capsys.readouterr().out)["ok"] is False


def test_status_without_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _exit_code(["status", "--project-dir", str(tmp_path)]) == 0
    assert "No runs found" in capsys.readouterr().out


def test_cancel_unknown_run(tmp_path: Path) -> None:
    assert _exit_code(["cancel", "nope", "--project-dir", str(tmp_path), "--log-level", "ERROR"]) == 2


def test_missing_subcommand_exits_with_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert _exit_code([]) == 2
    assert _exit_code(["frobnicate"]) == 2


# -- report (worker side) ------------------------------------------------------


def test_report_updates_status_record(worker_run_dir: Path) -> None:
    base = ["--run-dir", str(worker_run_dir), "--worker", "test_engineer"]
    assert _exit_code(["report", "--status", "in_progress", "--progress", "40", "--task", "fixtures", *base]) == 0
    assert _exit_code(["report", "--status", "in_progress", "--completed-task", "fixtures", *base]) == 0

    record = StatusStore(worker_run_dir.parent).read("run-1", "test_engineer")
    assert record.state == WorkerState.IN_PROGRESS
    assert record.progress == 40
    assert record.current_task == "fixtures"
    assert record.completed_tasks == ["fixtures"]

    assert _exit_code(["report", "--status", "completed", "--completed-task", "api tests", *base]) == 0
    record = StatusStore(worker_run_dir.parent).read("run-1", "test_engineer")
    assert record.state == WorkerState.COMPLETED
    assert record.progress == 100
    assert record.completed_tasks == ["fixtures", "api tests"]


def test_report_rejects_backward_moves(worker_run_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    base = ["--run-dir", str(worker_run_dir), "--worker", "test_engineer"]
    assert _exit_code(["report", "--status", "in_progress", "--progress", "60", *base]) == 0
    assert _exit_code(["report", "--status", "in_progress", "--progress", "10", *base]) == 2
    assert "progress cannot decrease" in capsys.readouterr().err


def test_report_uses_worker_environment(worker_run_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_RUN_DIR, str(worker_run_dir))
    monkeypatch.setenv(ENV_WORKER_ID, "test_engineer")
    assert _exit_code(["report", "--status", "error", "--error", "fixtures missing"]) == 0

    record = StatusStore(worker_run_dir.parent).read("run-1", "test_engineer")
    assert record.state == WorkerState.FAILED
    assert record.error.detail == "fixtures missing"


def test_report_requires_a_target(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (ENV_RUN_DIR, ENV_WORKER_ID, "AGENT_TEAM_STATUS_FILE"):
        monkeypatch.delenv(name, raising=False)
    assert _exit_code(["report", "--status", "completed"]) == 2


# -- plan preview ----------------------------------------------------------------


def test_plan_preview_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = tmp_path / "plan.md"
    plan.write_text("- [x] Test Engineer\n- [x] Backend Developer\n- [x] QA Reviewer\n", encoding="utf-8")
    assert _exit_code(["plan", "--project-dir", str(tmp_path), "--plan", str(plan), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["required"] == ["test_engineer", "backend_dev", "qa_reviewer"]
    assert payload["skipped"] == ["db_architect", "frontend_dev", "e2e_tester"]
    assert ["test_engineer", "backend_dev"] in payload["edges"]


def test_plan_preview_tree(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _exit_code(["plan", "--project-dir", str(tmp_path), "--workers", "tests,frontend"]) == 0
    out = capsys.readouterr().out
    assert "test_engineer" in out
    assert "frontend_dev" in out


def test_detached_run_keeps_command_line_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("PYTHONPATH", str(PROJECT_ROOT / "src"))
    command = f"{PYTHON} -m agent_team_runner.runner report --status completed"

    code = _exit_code(
        [
            "run",
            "demo",
            "--project-dir",
            str(tmp_path),
            "--workers",
            "test_engineer",
            "--command",
            command,
            "--poll-interval",
            "0.1",
            "--max-duration",
            "120",
            "--detach",
            "--log-level",
            "ERROR",
        ]
    )
    out = capsys.readouterr().out
    assert code == 0
    run_id = _run_id_from(out)
    assert "running in background" in out

    payload: dict = {}
    deadline = time.monotonic() + 60
    while time.monotonic() < deadline:
        assert _exit_code(["status", run_id, "--project-dir", str(tmp_path), "--json"]) == 0
        payload = json.loads(capsys.readouterr().out)
        if payload["state"] in ("completed", "aborted"):
            break
        time.sleep(0.2)

    assert payload["state"] == "completed", payload["workers"]
    assert payload["workers"]["test_engineer"]["status"] == "completed"
