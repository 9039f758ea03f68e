"""Priority queue of payments awaiting a status poll against the gateway.

One job per idempotency key. Ready jobs are served by priority class, then
oldest first; jobs whose `not_before` lies in the future wait. The queue is an
injected instance; nothing here is module-global, so tests own its lifetime.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

from paysync.common.metrics import reconciliation_queue_depth
from paysync.common.state_machine import PaymentStatus


class JobPriority(IntEnum):
    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass
class SyncJob:
    idempotency_key: str
    last_known_status: str
    enqueued_at: float
    attempt_count: int = 0
    max_attempts: int = 3
    priority: JobPriority = JobPriority.NORMAL
    not_before: float = 0.0
    recheck_count: int = 0

    def sort_key(self) -> tuple[int, float]:
        return (int(self.priority), self.enqueued_at)


def priority_for(status: str) -> JobPriority:
    """Authorized payments are one step from final and are polled first."""

    if PaymentStatus(status) is PaymentStatus.AUTHORIZED:
        return JobPriority.HIGH
    return JobPriority.NORMAL


class ReconciliationQueue:
    def __init__(
        self,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
        service_name: str = "paysync",
    ) -> None:
        self.max_attempts = max_attempts
        self._clock = clock
        self._jobs: dict[str, SyncJob] = {}
        self._changed = asyncio.Event()
        self._closed = False
        self.service_name = service_name

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, idempotency_key: str) -> bool:
        return idempotency_key in self._jobs

    @property
    def closed(self) -> bool:
        return self._closed

    def _updated(self) -> None:
        reconciliation_queue_depth.labels(service=self.service_name).set(len(self._jobs))
        self._changed.set()

    def enqueue(
        self,
        idempotency_key: str,
        last_known_status: str,
        priority: JobPriority | None = None,
        delay: float = 0.0,
    ) -> SyncJob:
        """Add a job, or refresh the existing one for the same key."""

        now = self._clock()
        priority = priority if priority is not None else priority_for(last_known_status)
        job = self._jobs.get(idempotency_key)
        if job is None:
            job = SyncJob(
                idempotency_key=idempotency_key,
                last_known_status=last_known_status,
                enqueued_at=now,
                max_attempts=self.max_attempts,
                priority=priority,
                not_before=now + delay,
            )
            self._jobs[idempotency_key] = job
        else:
            job.last_known_status = last_known_status
            job.priority = min(job.priority, priority)
            job.not_before = min(job.not_before, now + delay)
        self._updated()
        return job

    def requeue(self, job: SyncJob, priority: JobPriority, delay: float = 0.0) -> SyncJob:
        """Put a job taken by a worker back, keeping its attempt counters."""

        now = self._clock()
        job.priority = priority
        job.not_before = now + delay
        pending = self._jobs.get(job.idempotency_key)
        if pending is not None:
            # A fresh enqueue arrived while the job was in flight; keep the newer status.
            job.last_known_status = pending.last_known_status
            job.priority = min(job.priority, pending.priority)
            job.not_before = min(job.not_before, pending.not_before)
        self._jobs[job.idempotency_key] = job
        self._updated()
        return job

    def remove(self, idempotency_key: str) -> SyncJob | None:
        job = self._jobs.pop(idempotency_key, None)
        self._updated()
        return job

    def _next_ready(self, now: float) -> tuple[SyncJob | None, float | None]:
        ready = [job for job in self._jobs.values() if job.not_before <= now]
        if ready:
            return min(ready, key=SyncJob.sort_key), None
        if not self._jobs:
            return None, None
        return None, min(job.not_before for job in self._jobs.values()) - now

    def pop_ready(self) -> SyncJob | None:
        job, _ = self._next_ready(self._clock())
        if job is not None:
            del self._jobs[job.idempotency_key]
            self._updated()
        return job

    async def get(self) -> SyncJob | None:
        """Wait for the next ready job; returns None once the queue is closed."""

        while not self._closed:
            self._changed.clear()
            job, wait = self._next_ready(self._clock())
            if job is not None:
                del self._jobs[job.idempotency_key]
                self._updated()
                return job
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=wait)
            except asyncio.TimeoutError:
                continue
        return None

    def close(self) -> None:
        self._closed = True
        self._changed.set()

    def reopen(self) -> None:
        self._closed = False

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        jobs = sorted(self._jobs.values(), key=SyncJob.sort_key)
        return {
            "queue_size": len(jobs),
            "closed": self._closed,
            "jobs": [
                {
                    "idempotency_key": job.idempotency_key,
                    "last_known_status": job.last_known_status,
                    "attempt_count": job.attempt_count,
                    "max_attempts": job.max_attempts,
                    "priority": job.priority.name,
                    "ready_in_seconds": max(0.0, job.not_before - now),
                }
                for job in jobs
            ],
        }
