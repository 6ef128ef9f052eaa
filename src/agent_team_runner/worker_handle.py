"""Launch, probe, and stop external worker processes."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from loguru import logger

from .constants import (
    DEFAULT_TERMINATE_GRACE_SECONDS,
    ENV_RUN_DIR,
    ENV_RUN_ID,
    ENV_STATUS_FILE,
    ENV_WORKER_ID,
    LOGS_DIR_NAME,
)
from .errors import LaunchError
from .status_store import status_path_for
from .utils import _pid_is_running


@dataclass
class WorkerProcessHandle:
    """Runtime reference to one launched (or re-attached) worker process."""

    worker_id: str
    run_id: str
    pid: int
    started_at: float
    deadline: float
    command: list[str] = field(default_factory=list)
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    @property
    def attached(self) -> bool:
        """True when supervising a pid this process did not spawn."""
        return self.process is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "started_at": self.started_at,
            "deadline": self.deadline,
            "command": list(self.command),
            "stdout_path": self.stdout_path,
            "stderr_path": self.stderr_path,
        }


class Launcher(Protocol):
    """Interface the scheduler uses to manage worker processes."""

    def launch(
        self,
        worker_id: str,
        run_id: str,
        command: str,
        *,
        run_dir: Path,
        max_duration: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> WorkerProcessHandle: ...

    def attach(
        self,
        worker_id: str,
        run_id: str,
        pid: int,
        *,
        started_at: float,
        max_duration: float,
    ) -> WorkerProcessHandle: ...

    def is_alive(self, handle: WorkerProcessHandle) -> bool: ...

    def terminate(self, handle: WorkerProcessHandle, grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None: ...

    def exit_code(self, handle: WorkerProcessHandle) -> Optional[int]: ...


def _format_command(command: str, values: Mapping[str, str], worker_id: str) -> list[str]:
    if not command or not command.strip():
        raise LaunchError(worker_id, "no command configured")
    try:
        tokens = shlex.split(command)
    except ValueError as exc:
        raise LaunchError(worker_id, f"cannot parse command: {exc}") from exc
    parts: list[str] = []
    for token in tokens:
        try:
            parts.append(token.format(**values))
        except KeyError as exc:
            raise LaunchError(worker_id, f"unknown placeholder in command: {exc}") from exc
        except (IndexError, ValueError) as exc:
            raise LaunchError(worker_id, f"malformed command template: {exc}") from exc
    return parts


class WorkerLauncher:
    """Spawn workers as detached subprocesses of the coordinator.

    Output goes straight to log files (not pipes) so a worker keeps running if
    the coordinator dies and a later `resume` can re-attach to it by pid.
    """

    def __init__(self, project_dir: Path, *, clock: Any = time.time) -> None:
        self.project_dir = project_dir
        self._clock = clock

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
        """Start the worker and return immediately.

        Raises:
            LaunchError: If the command is empty or malformed, or the process
                cannot be created.
        """
        status_file = status_path_for(run_dir, worker_id)
        values = {
            "worker_id": worker_id,
            "run_id": run_id,
            "run_dir": str(run_dir),
            "status_file": str(status_file),
            "project_dir": str(self.project_dir),
        }
        argv = _format_command(command, values, worker_id)

        logs_dir = run_dir / LOGS_DIR_NAME
        logs_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = logs_dir / f"{worker_id}.stdout.log"
        stderr_path = logs_dir / f"{worker_id}.stderr.log"

        child_env = dict(os.environ)
        child_env.update(env or {})
        child_env.update(
            {
                ENV_RUN_ID: run_id,
                ENV_RUN_DIR: str(run_dir),
                ENV_WORKER_ID: worker_id,
                ENV_STATUS_FILE: str(status_file),
            }
        )

        started_at = self._clock()
        try:
            with open(stdout_path, "ab") as out, open(stderr_path, "ab") as err:
                process = subprocess.Popen(
                    argv,
                    cwd=self.project_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    env=child_env,
                    start_new_session=os.name != "nt",
                )
        except OSError as exc:
            raise LaunchError(worker_id, f"{exc.__class__.__name__}: {exc}") from exc

        logger.info("Launched worker {} (pid={}) for run {}", worker_id, process.pid, run_id)
        return WorkerProcessHandle(
            worker_id=worker_id,
            run_id=run_id,
            pid=process.pid,
            started_at=started_at,
            deadline=started_at + max_duration,
            command=argv,
            stdout_path=str(stdout_path),
            stderr_path=str(stderr_path),
            process=process,
        )

    def attach(
        self,
        worker_id: str,
        run_id: str,
        pid: int,
        *,
        started_at: float,
        max_duration: float,
    ) -> WorkerProcessHandle:
        logger.debug("Attaching to worker {} (pid={}) for run {}", worker_id, pid, run_id)
        return WorkerProcessHandle(
            worker_id=worker_id,
            run_id=run_id,
            pid=int(pid),
            started_at=started_at,
            deadline=started_at + max_duration,
        )

    def is_alive(self, handle: WorkerProcessHandle) -> bool:
        if handle.process is not None:
            return handle.process.poll() is None
        return _pid_is_running(handle.pid)

    def exit_code(self, handle: WorkerProcessHandle) -> Optional[int]:
        if handle.process is not None:
            return handle.process.poll()
        return None

    def terminate(self, handle: WorkerProcessHandle, grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None:
        """Best-effort stop of the worker and its process group.

        Safe to call on processes that already exited.
        """
        if not self.is_alive(handle):
            return
        logger.warning("Terminating worker {} (pid={})", handle.worker_id, handle.pid)
        if not _signal_worker(handle.pid, signal.SIGTERM):
            return
        if self._wait_for_exit(handle, grace_seconds):
            return
        _signal_worker(handle.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        if not self._wait_for_exit(handle, grace_seconds):
            logger.error("Worker {} (pid={}) did not exit after kill", handle.worker_id, handle.pid)

    def _wait_for_exit(self, handle: WorkerProcessHandle, timeout: float) -> bool:
        if handle.process is not None:
            try:
                handle.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return False
            return True
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _pid_is_running(handle.pid):
                return True
            time.sleep(0.1)
        return not _pid_is_running(handle.pid)


def _leads_process_group(pid: int) -> bool:
    if not hasattr(os, "killpg"):
        return False
    try:
        return os.getpgid(pid) == pid
    except OSError:
        return False


def _signal_worker(pid: int, sig: int) -> bool:
    """Signal a worker's whole process group, or just the pid when it leads none.

    Workers are started in their own session, so agent CLIs they spawn share
    the worker's group. Returns False when the process is already gone.
    """
    try:
        if _leads_process_group(pid):
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except OSError as exc:
        logger.warning("Cannot signal worker pid {}: {}", pid, exc)
        return False
    return True
