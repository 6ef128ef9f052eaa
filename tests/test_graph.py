"""Tests for dependency graph readiness and failure propagation."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agent_team_runner.config import default_template
from agent_team_runner.errors import PlanError
from agent_team_runner.graph import DependencyGraph, check_cycles, order_by_template, validate_template
from agent_team_runner.models import FailureReason, RunPlan, StatusRecord, WorkerSpec, WorkerState

ALL_WORKERS = ["test_engineer", "db_architect", "backend_dev", "frontend_dev", "e2e_tester", "qa_reviewer"]


def _plan(required, template=None) -> RunPlan:
    template = tuple(template or default_template())
    return RunPlan(
        run_id="run-1",
        feature_name="demo",
        required_workers=tuple(required),
        candidate_workers=tuple(spec.worker_id for spec in template),
        template=template,
    )


def _snapshot(**states: WorkerState) -> dict[str, StatusRecord]:
    out = {}
    for worker_id, state in states.items():
        if state == WorkerState.FAILED:
            out[worker_id] = StatusRecord.failed(worker_id, FailureReason.WORKER_REPORTED, "boom")
        else:
            out[worker_id] = StatusRecord(worker_id=worker_id, state=state)
    return out


C = WorkerState.COMPLETED
P = WorkerState.PENDING
R = WorkerState.IN_PROGRESS
F = WorkerState.FAILED


def test_default_template_is_valid() -> None:
    validate_template(default_template())
    assert check_cycles(default_template()) is None


def test_only_roots_are_ready_initially() -> None:
    graph = DependencyGraph.build(_plan(ALL_WORKERS))
    assert graph.ready_workers({}) == ["test_engineer"]


def test_ready_requires_all_predecessors_completed() -> None:
    graph = DependencyGraph.build(_plan(ALL_WORKERS))
    snapshot = _snapshot(test_engineer=C, db_architect=R)
    assert graph.ready_workers(snapshot) == []

    snapshot = _snapshot(test_engineer=C, db_architect=C)
    assert graph.ready_workers(snapshot) == ["backend_dev"]


def test_ready_workers_never_include_unfinished_predecessors() -> None:
    graph = DependencyGraph.build(_plan(ALL_WORKERS))
    states = [P, R, C, F]
    for a in states:
        for b in states:
            snapshot = _snapshot(test_engineer=a, db_architect=b)
            for worker_id in graph.ready_workers(snapshot):
                assert all(snapshot.get(dep, StatusRecord(dep)).state == C for dep in graph.predecessors(worker_id))


def test_ready_workers_are_deterministic() -> None:
    template = (WorkerSpec("root"), WorkerSpec("z_side", ("root",)), WorkerSpec("a_side", ("root",)))
    graph = DependencyGraph.build(_plan(["a_side", "z_side", "root"], template))
    snapshot = _snapshot(root=C)
    assert graph.ready_workers(snapshot) == ["z_side", "a_side"]
    assert graph.ready_workers(dict(reversed(list(snapshot.items())))) == ["z_side", "a_side"]


def test_skipped_workers_are_bridged() -> None:
    graph = DependencyGraph.build(_plan(["test_engineer", "backend_dev", "qa_reviewer"]))
    assert graph.predecessors("backend_dev") == ("test_engineer",)
    assert graph.predecessors("qa_reviewer") == ("test_engineer", "backend_dev")
    assert graph.skipped == ("db_architect", "frontend_dev", "e2e_tester")
    assert graph.ready_workers(_snapshot(test_engineer=C)) == ["backend_dev"]


def test_bridging_through_chain_of_skipped_workers() -> None:
    graph = DependencyGraph.build(_plan(["test_engineer", "e2e_tester"]))
    assert graph.predecessors("e2e_tester") == ("test_engineer",)


def test_failure_with_pending_dependent_is_fatal() -> None:
    graph = DependencyGraph.build(_plan(["test_engineer", "backend_dev", "frontend_dev", "qa_reviewer"]))
    snapshot = _snapshot(test_engineer=C, backend_dev=F)
    assert graph.has_fatal_failure(snapshot)
    assert graph.fatal_causes(snapshot) == ["backend_dev"]
    assert graph.blocked_workers(snapshot) == ["frontend_dev", "qa_reviewer"]
    assert graph.ready_workers(snapshot) == []


def test_failed_leaf_is_not_fatal_but_terminal() -> None:
    graph = DependencyGraph.build(_plan(["test_engineer", "backend_dev"]))
    snapshot = _snapshot(test_engineer=C, backend_dev=F)
    assert not graph.has_fatal_failure(snapshot)
    assert graph.is_terminal(snapshot)
    assert not graph.all_completed(snapshot)
    assert graph.failed_workers(snapshot) == ["backend_dev"]


def test_dependents_and_ancestors() -> None:
    graph = DependencyGraph.build(_plan(ALL_WORKERS))
    assert graph.dependents("frontend_dev") == ("e2e_tester", "qa_reviewer")
    assert graph.dependents("backend_dev", transitive=True) == ("frontend_dev", "e2e_tester", "qa_reviewer")
    assert graph.ancestors("frontend_dev") == ("test_engineer", "db_architect", "backend_dev")


def test_cycle_is_rejected() -> None:
    template = (WorkerSpec("a", ("c",)), WorkerSpec("b", ("a",)), WorkerSpec("c", ("b",)))
    cycle = check_cycles(template)
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    with pytest.raises(PlanError, match="Circular dependency"):
        DependencyGraph.build(_plan(["a"], template))


def test_unknown_predecessor_and_duplicate_are_rejected() -> None:
    with pytest.raises(PlanError, match="unknown worker"):
        validate_template((WorkerSpec("a", ("ghost",)),))
    with pytest.raises(PlanError, match="Duplicate"):
        validate_template((WorkerSpec("a"), WorkerSpec("a")))


def test_unknown_required_worker_is_rejected() -> None:
    with pytest.raises(PlanError, match="unknown worker"):
        DependencyGraph.build(_plan(["test_engineer", "designer"]))


def test_order_by_template() -> None:
    assert order_by_template(["qa_reviewer", "test_engineer", "backend_dev"], default_template()) == [
        "test_engineer",
        "backend_dev",
        "qa_reviewer",
    ]


def test_render_tree_lists_workers() -> None:
    graph = DependencyGraph.build(_plan(["test_engineer", "backend_dev", "qa_reviewer"]))
    text = graph.render_tree()
    assert "test_engineer" in text
    assert "qa_reviewer" in text
    assert "skipped: db_architect" in text
