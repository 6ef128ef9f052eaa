"""Provide the public `agent_team_runner` package exports."""

from __future__ import annotations

from .coordinator import RunCoordinator, RunStatusView
from .errors import (
    AlreadyInitialized,
    ConfigError,
    InvalidTransition,
    LaunchError,
    PlanError,
    RunActiveError,
    RunNotFound,
    RunStateError,
    TeamRunnerError,
)
from .graph import DependencyGraph
from .models import FailureReason, RunOutcome, RunPlan, RunState, StatusRecord, WorkerState
from .plan import all_selector, checklist_selector
from .scheduler import Scheduler
from .status_store import StatusStore
from .worker_handle import WorkerLauncher, WorkerProcessHandle

__all__ = [
    "AlreadyInitialized",
    "ConfigError",
    "DependencyGraph",
    "FailureReason",
    "InvalidTransition",
    "LaunchError",
    "PlanError",
    "RunActiveError",
    "RunCoordinator",
    "RunNotFound",
    "RunOutcome",
    "RunPlan",
    "RunState",
    "RunStateError",
    "RunStatusView",
    "Scheduler",
    "StatusRecord",
    "StatusStore",
    "TeamRunnerError",
    "WorkerLauncher",
    "WorkerProcessHandle",
    "WorkerState",
    "all_selector",
    "checklist_selector",
]
