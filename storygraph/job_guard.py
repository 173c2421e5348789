from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from ._util import utc_iso

logger = logging.getLogger(__name__)

JOB_TYPES = ("ingestion", "clustering")

DEFAULT_LOCK_TTL_SECONDS = 2 * 3600


class LockHeldError(RuntimeError):
    pass


class UnknownJobTypeError(ValueError):
    pass


@dataclass(frozen=True)
class LockInfo:
    """Holder of a job lock file, as written by ``FileLock.acquire``."""

    job_type: str
    owner: str
    pid: int
    hostname: str
    acquired_at: str

    def describe(self) -> str:
        return f"{self.owner} (pid {self.pid} on {self.hostname or '?'}, since {self.acquired_at or '?'})"


def read_lock_info(lock_path: Path) -> LockInfo | None:
    """Parse a job lock file; None when it is missing or not ours."""
    try:
        obj = json.loads(lock_path.read_text(encoding="utf-8"))
        if not isinstance(obj, dict):
            return None
        return LockInfo(
            job_type=str(obj.get("job_type") or lock_path.stem),
            owner=str(obj.get("owner", "")),
            pid=int(obj.get("pid", 0)),
            hostname=str(obj.get("hostname", "")),
            acquired_at=str(obj.get("acquired_at", "")),
        )
    except (OSError, TypeError, ValueError):
        return None


def _holder_is_gone(info: LockInfo) -> bool:
    # Only a pid on this host can be checked.
    if not info.pid or info.hostname != socket.gethostname():
        return False
    try:
        os.kill(info.pid, 0)
    except ProcessLookupError:
        return True
    except OSError:
        return False
    return False


def _lock_is_abandoned(lock_path: Path, ttl_seconds: int) -> bool:
    """True when the lock outlived *ttl_seconds* or its holder process has exited."""
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False
    if age > ttl_seconds:
        return True
    info = read_lock_info(lock_path)
    return info is not None and _holder_is_gone(info)


class FileLock:
    """Per-job-type lock file shared by every process using the same lock dir.

    Created with O_EXCL; a run killed mid-flight leaves the file behind, and
    the next acquirer reclaims it once ttl_seconds pass or the holder pid no
    longer exists on this host.
    """

    def __init__(self, lock_path: Path, *, owner: str, ttl_seconds: int, job_type: str | None = None) -> None:
        self.lock_path = Path(lock_path)
        self.job_type = job_type or self.lock_path.stem
        self.owner = owner
        self.ttl_seconds = ttl_seconds
        self.acquired = False

    def _held_error(self) -> LockHeldError:
        info = read_lock_info(self.lock_path)
        holder = info.describe() if info else "unknown holder"
        return LockHeldError(f"{self.job_type} lock held by {holder}: {self.lock_path}")

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "job_type": self.job_type,
            "owner": self.owner,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": utc_iso(),
        }

        fd: int | None = None
        reclaimed = False
        while fd is None:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                # One reclaim per acquire; a lock recreated meanwhile belongs to a live run.
                if reclaimed or not _lock_is_abandoned(self.lock_path, self.ttl_seconds):
                    raise self._held_error() from None
                info = read_lock_info(self.lock_path)
                logger.warning(
                    "Reclaiming abandoned %s lock from %s",
                    self.job_type,
                    info.describe() if info else "unknown holder",
                )
                self.lock_path.unlink(missing_ok=True)
                reclaimed = True

        try:
            os.write(fd, (json.dumps(record, sort_keys=True) + "\n").encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        self.acquired = True

    def release(self) -> None:
        if self.acquired:
            self.lock_path.unlink(missing_ok=True)
            self.acquired = False

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class _JobState:
    running: bool = False
    last_run: float | None = None
    last_result: dict[str, Any] | None = None
    file_lock: FileLock | None = None


class JobGuard:
    """Single-flight admission per job type.

    ``try_start`` returns False while a run of the same type is in flight in
    this process, or (when ``lock_dir`` is set) while another process holds
    that type's lock file. Different job types never block each other.
    ``last_run`` is the start time of the most recently admitted run.
    """

    def __init__(
        self,
        job_types: Iterable[str] = JOB_TYPES,
        *,
        lock_dir: Path | None = None,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        owner: str | None = None,
    ) -> None:
        self._states = {str(t): _JobState() for t in job_types}
        if not self._states:
            raise ValueError("JobGuard needs at least one job type")
        self._lock = threading.Lock()
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None
        self._lock_ttl_seconds = int(lock_ttl_seconds)
        self._owner = owner or f"storygraph:{os.getpid()}"

    @property
    def job_types(self) -> tuple[str, ...]:
        return tuple(self._states)

    def _state(self, job_type: str) -> _JobState:
        state = self._states.get(job_type)
        if state is None:
            raise UnknownJobTypeError(f"unknown job type: {job_type!r}")
        return state

    def lock_path(self, job_type: str) -> Path | None:
        if self._lock_dir is None:
            return None
        return self._lock_dir / f"{job_type}.lock"

    def is_running(self, job_type: str) -> bool:
        with self._lock:
            return self._state(job_type).running

    def try_start(self, job_type: str) -> bool:
        with self._lock:
            state = self._state(job_type)
            if state.running:
                logger.info("%s job already running, skipping", job_type)
                return False
            lock_path = self.lock_path(job_type)
            if lock_path is not None:
                file_lock = FileLock(
                    lock_path,
                    owner=self._owner,
                    ttl_seconds=self._lock_ttl_seconds,
                    job_type=job_type,
                )
                try:
                    file_lock.acquire()
                except LockHeldError as e:
                    logger.info("Skipping %s run: %s", job_type, e)
                    return False
                state.file_lock = file_lock
            state.running = True
            state.last_run = time.time()
            return True

    def finish(self, job_type: str, result: dict[str, Any] | None) -> None:
        with self._lock:
            state = self._state(job_type)
            state.running = False
            state.last_result = dict(result) if result is not None else None
            if state.file_lock is not None:
                state.file_lock.release()
                state.file_lock = None

    def run(self, job_type: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any] | None:
        """Run *fn* under the guard; None when the trigger was skipped.

        ``finish`` is recorded on every exit path. A failing body is recorded
        as ``{"error": "..."}`` and the exception propagates.
        """
        if not self.try_start(job_type):
            return None
        result: dict[str, Any] | None = None
        try:
            result = fn()
            return result
        except Exception as e:
            result = {"error": str(e) or type(e).__name__}
            raise
        finally:
            self.finish(job_type, result)

    def status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                job_type: {
                    "running": state.running,
                    "last_run": utc_iso(state.last_run) if state.last_run is not None else None,
                    "last_result": dict(state.last_result) if state.last_result is not None else None,
                }
                for job_type, state in self._states.items()
            }
