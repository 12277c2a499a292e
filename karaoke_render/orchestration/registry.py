from __future__ import annotations

import logging
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Iterator

from ..constants import JOB_STATUS_INIT, TERMINAL_STATUSES
from ..errors import RenderCancelled


@dataclass
class RenderJob:
    id: str
    progress: int = 0
    status: str = JOB_STATUS_INIT
    output_path: str | None = None
    error_message: str | None = None
    pipeline: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "renderId": self.id,
            "progress": int(self.progress),
            "status": self.status,
        }
        if self.output_path is not None:
            payload["outputPath"] = self.output_path
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        if self.pipeline is not None:
            payload["pipeline"] = self.pipeline
        return payload


class JobStore:
    """Process-wide job-id -> RenderJob map.

    Implementations must be safe for concurrent insert/delete/read. Only the
    task that owns a job writes to it, except for the optimistic cancel write.
    """

    def get(self, job_id: str) -> RenderJob | None:
        raise NotImplementedError

    def set(self, job: RenderJob) -> None:
        raise NotImplementedError

    def update(self, job_id: str, **changes: Any) -> RenderJob | None:
        raise NotImplementedError

    def delete(self, job_id: str) -> bool:
        raise NotImplementedError

    def sweep(self, now: float | None = None) -> int:
        raise NotImplementedError

    def list(self) -> list[RenderJob]:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    def __init__(self, *, ttl_seconds: float = 3600.0, max_entries: int = 500):
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self.max_entries = max(1, int(max_entries))
        self._jobs: dict[str, RenderJob] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> RenderJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def set(self, job: RenderJob) -> None:
        with self._lock:
            self._jobs[job.id] = replace(job)

    def update(self, job_id: str, **changes: Any) -> RenderJob | None:
        """Apply ``changes`` unless the job is unknown or already terminal.

        While the job is running, progress never moves backwards.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return None

            status = changes.get("status", job.status)
            if "progress" in changes:
                progress = max(0, min(100, int(changes["progress"])))
                if status not in TERMINAL_STATUSES:
                    progress = max(job.progress, progress)
                changes["progress"] = progress

            now = time.time()
            updated = replace(job, updated_at=now, **changes)
            if updated.is_terminal:
                updated.finished_at = now
            self._jobs[job_id] = updated
            return replace(updated)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.ttl_seconds
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and (job.finished_at or job.updated_at) <= cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]

            overflow = len(self._jobs) - self.max_entries
            if overflow > 0:
                finished = sorted(
                    (job for job in self._jobs.values() if job.is_terminal),
                    key=lambda job: job.finished_at or job.updated_at,
                )
                for job in finished[:overflow]:
                    del self._jobs[job.id]
                    expired.append(job.id)

        if expired:
            logging.info("[render] swept %s finished jobs from registry", len(expired))
        return len(expired)

    def list(self) -> list[RenderJob]:
        with self._lock:
            return [replace(job) for job in self._jobs.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class CancellationHandle:
    """Cancel token of one in-flight job plus the child processes it runs."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: list[subprocess.Popen] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            _terminate(process)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RenderCancelled(self.job_id)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @contextmanager
    def tracking(self, process: subprocess.Popen) -> Iterator[subprocess.Popen]:
        with self._lock:
            self._processes.append(process)
        if self._event.is_set():
            _terminate(process)
        try:
            yield process
        finally:
            with self._lock:
                if process in self._processes:
                    self._processes.remove(process)


class CancellationRegistry:
    def __init__(self) -> None:
        self._handles: dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def register(self, handle: CancellationHandle) -> None:
        with self._lock:
            self._handles[handle.job_id] = handle

    def get(self, job_id: str) -> CancellationHandle | None:
        with self._lock:
            return self._handles.get(job_id)

    def pop(self, job_id: str) -> CancellationHandle | None:
        with self._lock:
            return self._handles.pop(job_id, None)

    def items(self) -> list[tuple[str, CancellationHandle]]:
        with self._lock:
            return list(self._handles.items())

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._handles


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        logging.warning("[render] failed to terminate child process pid=%s", process.pid)
