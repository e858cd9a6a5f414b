"""File-based delayed job queue and job waiter.

The importer fans per-pull-request work out to this queue and hands the caller
a JobWaiter. Workers pick jobs whose run_at has passed, and report completion
with complete(), which records the job id against the job's waiter key so the
caller can poll for the join.

Key Features:
- JSONL format (one JSON object per line)
- File locking (fcntl.flock) for concurrent access across processes
- Delayed execution via per-job run_at timestamps
- Completion log keyed by waiter key

Queue layout:
    <state_dir>/job_queue.jsonl          pending jobs
    <state_dir>/job_queue.done.jsonl     {"waiter_key", "job_id", "completed_at"}
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .locking import LOCK_TIMEOUT_SECONDS, LockedFileAppend, LockedJSONLines, read_jsonl
from .metrics import queue_size

logger = logging.getLogger("bitbucket_import.queue")

__all__ = [
    "FileJobQueue",
    "JobEntry",
    "JobQueue",
    "JobStatusSource",
    "JobWaiter",
]


def _utc_iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


@runtime_checkable
class JobQueue(Protocol):
    """Delayed job queue consumed by the importer."""

    def enqueue_delayed(self, job_type: str, args: dict[str, Any], delay: float) -> str:
        ...


@runtime_checkable
class JobStatusSource(Protocol):
    """Completion record a JobWaiter polls."""

    def completed_jobs(self, waiter_key: str) -> set[str]:
        ...


@dataclass
class JobEntry:
    """One scheduled unit of work.

    Attributes:
        id: UUID v4 string identifying the job
        job_type: Worker name (e.g., import_pull_request)
        args: JSON-serialisable job arguments
        enqueued_at: ISO 8601 timestamp when scheduled
        run_at: ISO 8601 timestamp when the job becomes eligible
    """

    id: str
    job_type: str
    args: dict
    enqueued_at: str = ""
    run_at: str = ""

    def __post_init__(self):
        if not self.enqueued_at:
            self.enqueued_at = _utc_iso(datetime.now(timezone.utc))
        if not self.run_at:
            self.run_at = self.enqueued_at

    @property
    def waiter_key(self) -> str | None:
        return self.args.get("waiter_key")


class FileJobQueue:
    """JSONL-backed delayed job queue.

    Process-safe: every mutation holds an exclusive flock on the queue file.

    Example:
        queue = FileJobQueue(Path("state/job_queue.jsonl"))
        job_id = queue.enqueue_delayed("import_pull_request", {"project_id": 1}, delay=61)

        # Worker side
        for entry in queue.get_ready(limit=10):
            handle(entry)
            queue.complete(entry.id)
    """

    def __init__(self, queue_path: Path | str, lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS):
        self.queue_path = Path(queue_path)
        self.done_path = self.queue_path.with_name(self.queue_path.stem + ".done.jsonl")
        self.lock_timeout_seconds = lock_timeout_seconds

    def enqueue_delayed(self, job_type: str, args: dict[str, Any], delay: float) -> str:
        """Schedule a job to become eligible after ``delay`` seconds.

        Returns:
            str: Job ID (UUID v4)

        Raises:
            LockTimeoutError: If the queue file lock cannot be acquired
        """
        now = datetime.now(timezone.utc)
        entry = JobEntry(
            id=str(uuid.uuid4()),
            job_type=job_type,
            args=dict(args),
            enqueued_at=_utc_iso(now),
            run_at=_utc_iso(now + timedelta(seconds=max(0.0, delay))),
        )

        with LockedFileAppend(self.queue_path, self.lock_timeout_seconds) as f:
            f.write(json.dumps(asdict(entry)) + "\n")

        logger.debug(
            "job_enqueued",
            extra={"job_id": entry.id, "job_type": job_type, "delay": delay},
        )
        self._update_queue_metrics()
        return entry.id

    def get_ready(self, limit: int = 10, job_type: str | None = None) -> list[JobEntry]:
        """Return jobs whose run_at has passed, oldest first."""
        now = _utc_iso(datetime.now(timezone.utc))
        ready = [
            JobEntry(**e)
            for e in read_jsonl(self.queue_path)
            if e.get("run_at", "") <= now and (job_type is None or e.get("job_type") == job_type)
        ]
        ready.sort(key=lambda e: e.run_at)
        return ready[:limit]

    def complete(self, job_id: str) -> bool:
        """Remove a finished job and record it against its waiter key.

        Returns:
            True if the job was found in the queue
        """
        finished: dict | None = None
        with LockedJSONLines(self.queue_path, self.lock_timeout_seconds) as (entries, write):
            remaining = []
            for e in entries:
                if finished is None and e.get("id") == job_id:
                    finished = e
                else:
                    remaining.append(e)
            if finished is not None:
                write(remaining)

        if finished is None:
            logger.warning("job_not_found", extra={"job_id": job_id})
            return False

        waiter_key = (finished.get("args") or {}).get("waiter_key")
        if waiter_key:
            with LockedFileAppend(self.done_path, self.lock_timeout_seconds) as f:
                f.write(
                    json.dumps(
                        {
                            "waiter_key": waiter_key,
                            "job_id": job_id,
                            "completed_at": _utc_iso(datetime.now(timezone.utc)),
                        }
                    )
                    + "\n"
                )

        logger.info("job_completed", extra={"job_id": job_id, "waiter_key": waiter_key})
        self._update_queue_metrics()
        return True

    def completed_jobs(self, waiter_key: str) -> set[str]:
        """Job ids completed for a waiter key."""
        return {e["job_id"] for e in read_jsonl(self.done_path) if e.get("waiter_key") == waiter_key}

    def pending_jobs(self, waiter_key: str | None = None) -> list[JobEntry]:
        """All queued jobs, optionally filtered by waiter key."""
        entries = [JobEntry(**e) for e in read_jsonl(self.queue_path)]
        if waiter_key is None:
            return entries
        return [e for e in entries if e.waiter_key == waiter_key]

    def get_stats(self) -> dict:
        """Return queue statistics for monitoring.

        Returns:
            dict with total_items, ready, delayed and by_job_type counts
        """
        entries = read_jsonl(self.queue_path)
        now = _utc_iso(datetime.now(timezone.utc))
        by_type: dict[str, int] = {}
        for e in entries:
            job_type = e.get("job_type", "unknown")
            by_type[job_type] = by_type.get(job_type, 0) + 1
        ready = sum(1 for e in entries if e.get("run_at", "") <= now)
        return {
            "total_items": len(entries),
            "ready": ready,
            "delayed": len(entries) - ready,
            "by_job_type": by_type,
        }

    def _update_queue_metrics(self) -> None:
        stats = self.get_stats()
        queue_size.labels(status="ready").set(stats["ready"])
        queue_size.labels(status="delayed").set(stats["delayed"])


@dataclass
class JobWaiter:
    """Join handle for a batch of dispatched jobs.

    A value object: the importer only increments jobs_remaining while it
    schedules. Callers poll the queue's completion log with wait().

    Attributes:
        key: Unique waiter key carried in each job's args
        jobs_remaining: Number of jobs dispatched under this key
    """

    key: str = field(default_factory=lambda: JobWaiter.generate_key())
    jobs_remaining: int = 0
    finished: set[str] = field(default_factory=set)

    @staticmethod
    def generate_key() -> str:
        return f"job_waiter:{uuid.uuid4()}"

    async def wait(self, queue: JobStatusSource, timeout: float = 60.0, poll_interval: float = 1.0) -> set[str]:
        """Poll the queue until all jobs finish or the timeout passes.

        Decrements jobs_remaining for each newly finished job.

        Returns:
            Job ids finished during this call
        """
        deadline = time.monotonic() + timeout
        newly_finished: set[str] = set()
        while self.jobs_remaining > 0:
            done = queue.completed_jobs(self.key) - self.finished
            if done:
                self.finished |= done
                newly_finished |= done
                self.jobs_remaining = max(0, self.jobs_remaining - len(done))
                continue
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(poll_interval)
        return newly_finished
