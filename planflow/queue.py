# planflow/queue.py
"""Distributed job queue: durable storage, retries, stall recovery and retention."""

import asyncio
import logging
import uuid
from datetime import datetime, UTC, timedelta
from typing import Any, Dict, List, Optional

from .circuit import CircuitBreaker
from .common.exceptions import JobCancelledError, JobFailedError
from .common.job import Job, JobHandle, JobStatus
from .common.states import (
    BaseState,
    CancelledState,
    CompletedState,
    DelayedState,
    FailedState,
    PendingState,
)
from .config import Settings, get_settings
from .execution.registry import ProcessorRegistry
from .filters.base import JobFilter, notify_state_applied
from .filters.builtin import LifecycleLogFilter, RetryFilter
from .server.context import ApplyStateContext
from .server.worker import Worker
from .storage.base import JobStorage

logger = logging.getLogger(__name__)

STAT_KEYS = ("waiting", "active", "completed", "failed", "delayed")


def empty_stats(error: Optional[str] = None) -> Dict[str, Any]:
    stats: Dict[str, Any] = {key: 0 for key in STAT_KEYS}
    stats["total"] = 0
    if error:
        stats["error"] = error
    return stats


class DistributedJobQueue:
    backend_name = "distributed"

    def __init__(
        self,
        storage: JobStorage,
        registry: ProcessorRegistry,
        filters: Optional[List[JobFilter]] = None,
        settings: Optional[Settings] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.registry = registry
        self.filters: List[JobFilter] = [RetryFilter(), LifecycleLogFilter()] + list(filters or [])
        self.breaker = breaker or CircuitBreaker(
            name=f"{self.settings.queue_name}-store", settings=self.settings
        )
        self.worker = Worker(storage, registry, filters=self.filters, settings=self.settings)

    # --- Lifecycle ---

    async def start(self, run_worker: bool = True) -> None:
        if run_worker:
            self.worker.start()
        self.breaker.start_monitoring()
        logger.info(f"Distributed queue '{self.settings.queue_name}' started (worker={run_worker})")

    async def close(self, timeout: Optional[float] = 10.0) -> None:
        if self.worker.running:
            await self.worker.stop(timeout=timeout)
        await self.breaker.stop_monitoring()
        await self.storage.close()

    # --- Submission ---

    async def submit(
        self,
        job_id: Optional[str],
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay_ms: int = 0,
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> JobHandle:
        """Adds a job; resubmitting an existing id returns the existing job's handle."""
        job = Job(
            id=job_id or str(uuid.uuid4()),
            type=job_type,
            payload=payload,
            queue=self.settings.queue_name,
            priority=priority,
            max_attempts=attempts or self.settings.job_attempts,
            backoff_ms=backoff_ms if backoff_ms is not None else self.settings.backoff_delay_ms,
            timeout_ms=timeout_ms or self.settings.job_timeout_ms,
        )
        state: BaseState
        if delay_ms > 0:
            state = DelayedState(
                enqueue_at=datetime.now(UTC) + timedelta(milliseconds=delay_ms),
                delay_ms=delay_ms,
                reason="Delayed submission",
            )
        else:
            state = PendingState(reason="Job submitted")
        job.status = state.name
        job.state_data = state.serialize_data()

        if not await self.storage.add(job):
            existing = await self.storage.get_job_data(job.id)
            logger.info(f"Job {job.id} already exists, returning existing job")
            return JobHandle(
                job_id=job.id,
                job_type=existing.type if existing else job_type,
                backend=self.backend_name,
                status=existing.status if existing else job.status,
                created=False,
                _waiter=lambda: self.wait_for(job.id),
            )

        notify_state_applied(self.filters, ApplyStateContext(job, "", state, self.backend_name))
        return JobHandle(
            job_id=job.id,
            job_type=job_type,
            backend=self.backend_name,
            status=job.status,
            _waiter=lambda: self.wait_for(job.id),
        )

    async def wait_for(self, job_id: str, poll_interval: Optional[float] = None) -> Any:
        """Polls the store until the job is terminal; returns its result or raises."""
        poll_interval = poll_interval or self.settings.worker_poll_interval_ms / 1000
        while True:
            job = await self.storage.get_job_data(job_id)
            if job is None:
                raise JobFailedError(job_id, "job record no longer exists")
            if job.status == CompletedState.NAME:
                return job.result
            if job.status == FailedState.NAME:
                raise JobFailedError(job_id, job.failure_reason)
            if job.status == CancelledState.NAME:
                raise JobCancelledError(job_id, job.failure_reason or "Job was cancelled")
            await asyncio.sleep(poll_interval)

    # --- Queries ---

    async def status(self, job_id: str) -> Optional[JobStatus]:
        async def read():
            job = await self.storage.get_job_data(job_id)
            return job.to_status(self.backend_name) if job else None

        return await self.breaker.execute(read, fallback=lambda: None)

    async def stats(self) -> Dict[str, Any]:
        async def read():
            counts = await self.storage.get_state_counts()
            stats: Dict[str, Any] = {
                "waiting": counts.get(PendingState.NAME, 0),
                "active": counts.get("active", 0),
                "completed": counts.get(CompletedState.NAME, 0),
                "failed": counts.get(FailedState.NAME, 0),
                "delayed": counts.get(DelayedState.NAME, 0),
            }
            stats["total"] = sum(stats.values())
            stats["paused"] = await self.storage.is_paused()
            return stats

        return await self.breaker.execute(
            read, fallback=lambda: empty_stats("queue store unavailable")
        )

    # --- Control ---
    # Store errors here are logged and reported through the return value.

    async def cancel(self, job_id: str) -> bool:
        state = CancelledState(reason="Cancelled by request")
        try:
            job = await self.storage.get_job_data(job_id)
            if job is None or not await self.storage.cancel(job_id, state):
                return False
        except Exception as e:
            logger.error(f"Failed to cancel job {job_id}: {e}")
            return False
        old_state = job.status
        job.apply_state(state)
        notify_state_applied(self.filters, ApplyStateContext(job, old_state, state, self.backend_name))
        return True

    async def drain_old_jobs(self, grace_ms: Optional[int] = None) -> int:
        """Purges terminal records that finished more than ``grace_ms`` ago."""
        grace_ms = self.settings.clean_grace_ms if grace_ms is None else grace_ms
        cutoff = datetime.now(UTC) - timedelta(milliseconds=grace_ms)
        removed = 0
        for state_name in (CompletedState.NAME, FailedState.NAME, CancelledState.NAME):
            try:
                removed += await self.storage.clean(state_name, cutoff)
            except Exception as e:
                logger.error(f"Failed to drain {state_name} jobs: {e}")
        logger.info(f"Drained {removed} finished jobs older than {grace_ms}ms")
        return removed

    async def pause(self) -> bool:
        try:
            await self.storage.pause()
        except Exception as e:
            logger.error(f"Failed to pause queue '{self.settings.queue_name}': {e}")
            return False
        logger.info(f"Queue '{self.settings.queue_name}' paused")
        return True

    async def resume(self) -> bool:
        try:
            await self.storage.resume()
        except Exception as e:
            logger.error(f"Failed to resume queue '{self.settings.queue_name}': {e}")
            return False
        logger.info(f"Queue '{self.settings.queue_name}' resumed")
        return True

    async def check_stalled(self) -> List[str]:
        return await self.worker.check_stalled()
