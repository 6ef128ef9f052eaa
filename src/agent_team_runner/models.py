"""Define worker status records, run plans, and run outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .constants import (
    WIRE_STATUS_COMPLETED,
    WIRE_STATUS_ERROR,
    WIRE_STATUS_IN_PROGRESS,
    WIRE_STATUS_PENDING,
)
from .utils import _coerce_int, _coerce_string_list, _now_iso, _parse_iso


class WorkerState(str, Enum):
    """Lifecycle state of one worker within a run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (WorkerState.COMPLETED, WorkerState.FAILED)

    def can_move_to(self, target: "WorkerState") -> bool:
        if self == target:
            return True
        if self.is_terminal:
            return False
        return target.rank > self.rank


_STATE_RANK = {
    WorkerState.PENDING: 0,
    WorkerState.IN_PROGRESS: 1,
    WorkerState.COMPLETED: 2,
    WorkerState.FAILED: 2,
}

_WIRE_TO_STATE = {
    WIRE_STATUS_PENDING: WorkerState.PENDING,
    WIRE_STATUS_IN_PROGRESS: WorkerState.IN_PROGRESS,
    WIRE_STATUS_COMPLETED: WorkerState.COMPLETED,
    WIRE_STATUS_ERROR: WorkerState.FAILED,
    "failed": WorkerState.FAILED,
}

_STATE_TO_WIRE = {
    WorkerState.PENDING: WIRE_STATUS_PENDING,
    WorkerState.IN_PROGRESS: WIRE_STATUS_IN_PROGRESS,
    WorkerState.COMPLETED: WIRE_STATUS_COMPLETED,
    WorkerState.FAILED: WIRE_STATUS_ERROR,
}


def parse_worker_state(value: Any) -> WorkerState:
    """Map a wire status string to a `WorkerState`.

    Raises:
        ValueError: If the value is not a known status.
    """
    key = str(value or "").strip().lower()
    if key not in _WIRE_TO_STATE:
        raise ValueError(f"Unknown worker status '{value}'")
    return _WIRE_TO_STATE[key]


class FailureReason(str, Enum):
    """Why a worker ended in the failed state."""

    WORKER_REPORTED = "worker_reported"
    LAUNCH_ERROR = "launch_error"
    ABNORMAL_EXIT = "abnormal_exit"
    TIMEOUT = "timeout"


class RunState(str, Enum):
    """Scheduler state for a whole run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_finished(self) -> bool:
        return self in (RunState.COMPLETED, RunState.ABORTED)


@dataclass(frozen=True)
class StatusError:
    reason: FailureReason
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason.value, "detail": self.detail}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["StatusError"]:
        if not isinstance(data, dict):
            return None
        try:
            reason = FailureReason(str(data.get("reason") or FailureReason.WORKER_REPORTED.value))
        except ValueError:
            reason = FailureReason.WORKER_REPORTED
        return cls(reason=reason, detail=str(data.get("detail") or ""))


@dataclass
class StatusRecord:
    """One worker's self-reported progress, as stored in `<worker>.status`."""

    worker_id: str
    state: WorkerState = WorkerState.PENDING
    progress: int = 0
    current_task: str = ""
    completed_tasks: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=_now_iso)
    error: Optional[StatusError] = None

    @classmethod
    def pending(cls, worker_id: str) -> "StatusRecord":
        return cls(worker_id=worker_id)

    @classmethod
    def failed(cls, worker_id: str, reason: FailureReason, detail: str, base: Optional["StatusRecord"] = None) -> "StatusRecord":
        """Build a failed record, keeping the progress already reported in `base`."""
        return cls(
            worker_id=worker_id,
            state=WorkerState.FAILED,
            progress=base.progress if base else 0,
            current_task=base.current_task if base else "",
            completed_tasks=list(base.completed_tasks) if base else [],
            updated_at=_now_iso(),
            error=StatusError(reason=reason, detail=detail),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        if self.state != WorkerState.FAILED:
            return None
        if self.error:
            return self.error.reason
        return FailureReason.WORKER_REPORTED

    def activity_key(self) -> tuple[Any, ...]:
        """Fields whose change counts as worker activity for stall detection."""
        return (self.state, self.progress, self.current_task, len(self.completed_tasks))

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the shared status file format."""
        data: dict[str, Any] = {
            "agent": self.worker_id,
            "status": _STATE_TO_WIRE[self.state],
            "progress": int(self.progress),
            "current_task": self.current_task,
            "completed_tasks": list(self.completed_tasks),
            "timestamp": self.updated_at,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, worker_id: Optional[str] = None) -> "StatusRecord":
        """Parse a status file payload.

        Args:
            data: Decoded JSON object.
            worker_id: Fallback id when the payload omits `agent`.

        Returns:
            The parsed record with progress clamped into 0..100.

        Raises:
            ValueError: If the payload is not an object or its status is unknown.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected object, got {type(data).__name__}")
        state = parse_worker_state(data.get("status"))
        agent = str(data.get("agent") or worker_id or "").strip()
        if not agent:
            raise ValueError("status record has no agent")
        progress = max(0, min(100, _coerce_int(data.get("progress"), 0)))
        updated_at = str(data.get("timestamp") or "")
        if not _parse_iso(updated_at):
            updated_at = _now_iso()
        error = StatusError.from_dict(data.get("error"))
        return cls(
            worker_id=agent,
            state=state,
            progress=progress,
            current_task=str(data.get("current_task") or ""),
            completed_tasks=_coerce_string_list(data.get("completed_tasks")),
            updated_at=updated_at,
            error=error,
        )


@dataclass(frozen=True)
class WorkerSpec:
    """One role in the dependency template."""

    worker_id: str
    after: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.worker_id, "after": list(self.after)}


@dataclass(frozen=True)
class RunPlan:
    """Which workers a run requires; immutable once the run has started."""

    run_id: str
    feature_name: str
    required_workers: tuple[str, ...]
    candidate_workers: tuple[str, ...]
    template: tuple[WorkerSpec, ...]
    project_dir: str = ""
    created_at: str = field(default_factory=_now_iso)

    @property
    def skipped_workers(self) -> tuple[str, ...]:
        required = set(self.required_workers)
        return tuple(spec.worker_id for spec in self.template if spec.worker_id not in required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "feature_name": self.feature_name,
            "required_workers": list(self.required_workers),
            "candidate_workers": list(self.candidate_workers),
            "template": [spec.to_dict() for spec in self.template],
            "project_dir": self.project_dir,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunPlan":
        template = tuple(
            WorkerSpec(worker_id=str(item.get("id")), after=tuple(_coerce_string_list(item.get("after"))))
            for item in list(data.get("template") or [])
            if isinstance(item, dict) and item.get("id")
        )
        return cls(
            run_id=str(data.get("run_id") or ""),
            feature_name=str(data.get("feature_name") or ""),
            required_workers=tuple(_coerce_string_list(data.get("required_workers"))),
            candidate_workers=tuple(_coerce_string_list(data.get("candidate_workers"))),
            template=template,
            project_dir=str(data.get("project_dir") or ""),
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass(frozen=True)
class StallWarning:
    """A worker made no reported progress within the stale interval."""

    worker_id: str
    idle_seconds: int
    raised_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"worker_id": self.worker_id, "idle_seconds": self.idle_seconds, "raised_at": self.raised_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StallWarning":
        return cls(
            worker_id=str(data.get("worker_id") or ""),
            idle_seconds=_coerce_int(data.get("idle_seconds"), 0),
            raised_at=str(data.get("raised_at") or _now_iso()),
        )


@dataclass
class RunOutcome:
    """Final (or current) result of a run, written to `report.json`."""

    run_id: str
    state: RunState
    snapshot: dict[str, StatusRecord] = field(default_factory=dict)
    fatal_workers: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    warnings: list[StallWarning] = field(default_factory=list)
    cancelled: bool = False
    finished_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    def completed_tasks(self) -> dict[str, list[str]]:
        return {wid: list(rec.completed_tasks) for wid, rec in self.snapshot.items() if rec.completed_tasks}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "cancelled": self.cancelled,
            "finished_at": self.finished_at,
            "fatal_workers": list(self.fatal_workers),
            "skipped": dict(self.skipped),
            "warnings": [w.to_dict() for w in self.warnings],
            "workers": {wid: rec.to_dict() for wid, rec in self.snapshot.items()},
            "completed_tasks": self.completed_tasks(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunOutcome":
        snapshot: dict[str, StatusRecord] = {}
        for wid, raw in dict(data.get("workers") or {}).items():
            try:
                snapshot[str(wid)] = StatusRecord.from_dict(raw, worker_id=str(wid))
            except ValueError:
                continue
        warnings = [
            StallWarning.from_dict(item)
            for item in list(data.get("warnings") or [])
            if isinstance(item, dict)
        ]
        try:
            state = RunState(str(data.get("state") or RunState.ABORTED.value))
        except ValueError:
            state = RunState.ABORTED
        return cls(
            run_id=str(data.get("run_id") or ""),
            state=state,
            snapshot=snapshot,
            fatal_workers=_coerce_string_list(data.get("fatal_workers")),
            skipped={str(k): str(v) for k, v in dict(data.get("skipped") or {}).items()},
            warnings=warnings,
            cancelled=bool(data.get("cancelled")),
            finished_at=data.get("finished_at"),
        )
