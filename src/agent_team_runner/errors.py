"""Exceptions raised by the agent team runner."""

from __future__ import annotations


class TeamRunnerError(Exception):
    """Base class for runner errors surfaced to callers and the CLI."""

    pass


class ConfigError(TeamRunnerError):
    pass


class PlanError(TeamRunnerError):
    """The plan or role template cannot produce a valid dependency graph."""

    pass


class LaunchError(TeamRunnerError):
    """A worker process could not be started."""

    def __init__(self, worker_id: str, message: str):
        super().__init__(f"{worker_id}: {message}")
        self.worker_id = worker_id
        self.detail = message


class AlreadyInitialized(TeamRunnerError):
    def __init__(self, run_id: str):
        super().__init__(f"Run '{run_id}' is already initialized")
        self.run_id = run_id


class InvalidTransition(TeamRunnerError):
    """A status write or scheduler step would move state backward."""

    pass


class RunNotFound(TeamRunnerError):
    def __init__(self, run_id: str):
        super().__init__(f"Run '{run_id}' not found")
        self.run_id = run_id


class RunActiveError(TeamRunnerError):
    """Another live coordinator process owns the run."""

    def __init__(self, run_id: str, pid: int):
        super().__init__(f"Run '{run_id}' is owned by a running coordinator (pid {pid})")
        self.run_id = run_id
        self.pid = pid


class RunStateError(TeamRunnerError):
    """Coordinator bookkeeping failed; fatal to the whole run."""

    pass
