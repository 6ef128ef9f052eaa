"""File-backed store of per-worker status records.

Each worker owns exactly one file, ``<runs_dir>/<run_id>/.status/<worker_id>.status``,
and is its only writer; the coordinator only reads (except when it marks a dead
or timed-out worker as failed). Readers must therefore tolerate torn writes from
external processes that do not write atomically: an unparseable record is
treated as "unchanged since the last good read".
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from loguru import logger

from .constants import STATUS_DIR_NAME, STATUS_FILE_SUFFIX
from .errors import AlreadyInitialized, InvalidTransition
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import StatusRecord, WorkerState
from .utils import _now_iso


def status_dir_for(run_dir: Path) -> Path:
    return run_dir / STATUS_DIR_NAME


def status_path_for(run_dir: Path, worker_id: str) -> Path:
    return status_dir_for(run_dir) / f"{worker_id}{STATUS_FILE_SUFFIX}"


def _regresses(previous: StatusRecord, current: StatusRecord) -> bool:
    if current.state.rank < previous.state.rank:
        return True
    if previous.is_terminal and current.state != previous.state:
        return True
    if (
        previous.state == WorkerState.IN_PROGRESS
        and current.state == WorkerState.IN_PROGRESS
        and current.progress < previous.progress
    ):
        return True
    return False


class StatusStore:
    """Durable status records, scoped by run id.

    Parameters
    ----------
    runs_dir:
        Directory holding one sub-directory per run.
    """

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir
        self._last_good: dict[tuple[str, str], StatusRecord] = {}
        self._cache_lock = threading.Lock()

    # -- paths --------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def path_for(self, run_id: str, worker_id: str) -> Path:
        return status_path_for(self.run_dir(run_id), worker_id)

    # -- public API ---------------------------------------------------------

    def initialize(self, run_id: str, worker_ids: Iterable[str]) -> None:
        """Create a pending record for every worker of a new run.

        Raises:
            AlreadyInitialized: If the run already has status records.
        """
        status_dir = status_dir_for(self.run_dir(run_id))
        if status_dir.exists() and any(status_dir.glob(f"*{STATUS_FILE_SUFFIX}")):
            raise AlreadyInitialized(run_id)
        status_dir.mkdir(parents=True, exist_ok=True)
        for worker_id in worker_ids:
            record = StatusRecord.pending(worker_id)
            _atomic_write_json(self.path_for(run_id, worker_id), record.to_dict())
            self._remember(run_id, worker_id, record)
        logger.debug("Initialized status records for run {}", run_id)

    def read(self, run_id: str, worker_id: str) -> Optional[StatusRecord]:
        """Return the latest known record, or None when the worker has no status file.

        Never raises for corrupt or partially written files; the last good
        record (or a pending record) is returned instead.
        """
        path = self.path_for(run_id, worker_id)
        key = (run_id, worker_id)
        cached = self._cached(key)
        if not path.exists():
            return cached

        data, err = _load_data_with_error(path, {})
        if err:
            logger.debug("Unreadable status for {}/{}: {}", run_id, worker_id, err)
            return cached or StatusRecord.pending(worker_id)
        try:
            record = StatusRecord.from_dict(data, worker_id=worker_id)
        except ValueError as exc:
            logger.debug("Invalid status for {}/{}: {}", run_id, worker_id, exc)
            return cached or StatusRecord.pending(worker_id)

        # The file name is authoritative; a mismatched `agent` is kept as-is in the payload only.
        record.worker_id = worker_id
        if cached is not None and _regresses(cached, record):
            logger.debug(
                "Ignoring stale status for {}/{} ({} -> {})",
                run_id,
                worker_id,
                cached.state.value,
                record.state.value,
            )
            return cached
        self._remember(run_id, worker_id, record)
        return record

    def write(self, run_id: str, worker_id: str, record: StatusRecord) -> None:
        """Persist `record` atomically (last write wins).

        Raises:
            InvalidTransition: If the write would move state backward or lower
                progress while in progress.
        """
        current = self.read(run_id, worker_id)
        if current is not None:
            if not current.state.can_move_to(record.state):
                raise InvalidTransition(
                    f"{worker_id}: cannot move from {current.state.value} to {record.state.value}"
                )
            if _regresses(current, record):
                raise InvalidTransition(
                    f"{worker_id}: progress cannot decrease ({current.progress} -> {record.progress})"
                )
        record.worker_id = worker_id
        if not record.updated_at:
            record.updated_at = _now_iso()
        _atomic_write_json(self.path_for(run_id, worker_id), record.to_dict())
        self._remember(run_id, worker_id, record)

    def snapshot(self, run_id: str, worker_ids: Iterable[str]) -> dict[str, StatusRecord]:
        """Read every listed worker; missing records map to pending."""
        out: dict[str, StatusRecord] = {}
        for worker_id in worker_ids:
            out[worker_id] = self.read(run_id, worker_id) or StatusRecord.pending(worker_id)
        return out

    def list_workers(self, run_id: str) -> list[str]:
        status_dir = status_dir_for(self.run_dir(run_id))
        if not status_dir.exists():
            return []
        return sorted(p.name[: -len(STATUS_FILE_SUFFIX)] for p in status_dir.glob(f"*{STATUS_FILE_SUFFIX}"))

    def poll(
        self,
        run_id: str,
        worker_id: str,
        interval: float,
        *,
        stop: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> Iterator[StatusRecord]:
        """Yield the worker's record now and again each time it changes.

        The sequence ends after a terminal record is yielded, when `stop` is set,
        or when the caller closes the generator. Missing records are reported as
        pending.
        """
        wait = sleep or time.sleep
        last: Optional[dict] = None
        while True:
            if stop is not None and stop.is_set():
                return
            record = self.read(run_id, worker_id) or StatusRecord.pending(worker_id)
            payload = record.to_dict()
            if payload != last:
                last = payload
                yield record
            if record.is_terminal:
                return
            if stop is not None:
                if stop.wait(interval):
                    return
            else:
                wait(interval)

    # -- cache --------------------------------------------------------------

    def _cached(self, key: tuple[str, str]) -> Optional[StatusRecord]:
        with self._cache_lock:
            return self._last_good.get(key)

    def _remember(self, run_id: str, worker_id: str, record: StatusRecord) -> None:
        with self._cache_lock:
            self._last_good[(run_id, worker_id)] = record
