# planflow/runner.py
"""In-process job runner: FIFO, bounded concurrency, terminal records kept for a TTL."""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from .common.exceptions import DuplicateJobError, JobCancelledError, JobFailedError
from .common.job import Job, JobStatus
from .common.states import (
    ActiveState,
    BaseState,
    CancelledState,
    CompletedState,
    FailedState,
    PendingState,
)
from .config import Settings, get_settings
from .execution.performer import perform_job_async
from .execution.registry import Processor
from .filters.base import JobFilter, notify_state_applied
from .filters.builtin import LifecycleLogFilter
from .server.context import ApplyStateContext, PerformContext

logger = logging.getLogger(__name__)

SERVER_ID = "in-process"


def _consume_exception(future: asyncio.Future) -> None:
    # Rejected handles nobody awaits must not log "exception was never retrieved".
    if not future.cancelled():
        future.exception()


async def _no_progress_sink(progress: int) -> None:
    return None


class InProcessJobRunner:
    """
    Runs jobs in the current event loop.

    Pending jobs wait in a FIFO and are started while fewer than
    ``max_concurrent`` are active. Each finished job starts the next drain
    pass, so there is no polling. Processor errors fail only their own job;
    there is no retry at this layer.
    """

    backend_name = "in-process"

    def __init__(
        self,
        max_concurrent: Optional[int] = None,
        retention_s: Optional[float] = None,
        filters: Optional[List[JobFilter]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.max_concurrent = max_concurrent or settings.max_concurrent_jobs
        self.retention_s = (
            retention_s if retention_s is not None else settings.job_retention_ms / 1000
        )
        self.filters = filters if filters is not None else [LifecycleLogFilter()]
        self._jobs: Dict[str, Job] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._processors: Dict[str, Processor] = {}
        self._pending: Deque[str] = deque()
        self._active_count = 0
        self._tasks: Set[asyncio.Task] = set()
        self._evictions: Dict[str, asyncio.TimerHandle] = {}

    @property
    def active_count(self) -> int:
        return self._active_count

    def submit(
        self, job_id: str, payload: Any, processor: Processor, job_type: str = "in-process"
    ) -> asyncio.Future:
        """Queues a job and returns a future resolved with its result.

        Raises DuplicateJobError if ``job_id`` is still known to the runner.
        """
        if job_id in self._jobs:
            raise DuplicateJobError(job_id)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)

        job = Job(id=job_id, type=job_type, payload=payload, queue=SERVER_ID)
        job.state_data = PendingState(reason="Job submitted").serialize_data()
        self._jobs[job_id] = job
        self._futures[job_id] = future
        self._processors[job_id] = processor
        self._pending.append(job_id)
        self._notify(job, "", PendingState())

        self._drain()
        return future

    def _drain(self) -> None:
        while self._active_count < self.max_concurrent and self._pending:
            job_id = self._pending.popleft()
            job = self._jobs[job_id]
            state = ActiveState(SERVER_ID, f"slot:{self._active_count}")
            job.apply_state(state)
            self._active_count += 1
            self._notify(job, PendingState.NAME, state)

            task = asyncio.create_task(self._run(job), name=f"job.{job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job) -> None:
        processor = self._processors.pop(job.id)
        future = self._futures[job.id]
        state: BaseState
        try:
            result = await perform_job_async(
                processor, job.payload, PerformContext(job, _no_progress_sink)
            )
            state = CompletedState(result=result)
            job.attempts += 1
            job.apply_state(state)
            if not future.done():
                future.set_result(result)
        except asyncio.CancelledError:
            # Task cancelled from outside, e.g. at loop shutdown; no drain.
            state = FailedState(
                exception_type="CancelledError", exception_message="job task was cancelled"
            )
            job.apply_state(state)
            if not future.done():
                future.set_exception(JobFailedError(job.id, state.exception_message))
            self._finish(job, state)
            raise
        except Exception as e:
            logger.error(f"In-process job {job.id} failed.", exc_info=True)
            state = FailedState(exception_type=type(e).__name__, exception_message=str(e))
            job.attempts += 1
            job.apply_state(state)
            if not future.done():
                future.set_exception(e)

        self._finish(job, state)
        self._drain()

    def _finish(self, job: Job, state: BaseState) -> None:
        self._active_count -= 1
        self._notify(job, ActiveState.NAME, state)
        self._schedule_eviction(job.id)

    def _schedule_eviction(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._evictions[job_id] = loop.call_later(self.retention_s, self._evict, job_id)

    def _evict(self, job_id: str) -> None:
        self._evictions.pop(job_id, None)
        self._jobs.pop(job_id, None)
        self._futures.pop(job_id, None)
        logger.debug(f"Evicted in-process job {job_id}")

    def _notify(self, job: Job, old_state: str, new_state: BaseState) -> None:
        notify_state_applied(
            self.filters, ApplyStateContext(job, old_state, new_state, self.backend_name)
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def status(self, job_id: str) -> Optional[JobStatus]:
        job = self._jobs.get(job_id)
        return job.to_status(self.backend_name) if job else None

    def cancel(self, job_id: str) -> bool:
        """Cancels a job that has not started; active and finished jobs are left alone."""
        job = self._jobs.get(job_id)
        if job is None or job.status != PendingState.NAME:
            return False

        self._pending.remove(job_id)
        self._processors.pop(job_id, None)
        state = CancelledState(reason="Job was cancelled")
        job.apply_state(state)
        future = self._futures[job_id]
        if not future.done():
            future.set_exception(JobCancelledError(job_id))
        self._notify(job, PendingState.NAME, state)
        self._schedule_eviction(job_id)
        return True

    def stats(self) -> Dict[str, int]:
        counts = {name: 0 for name in ("pending", "active", "completed", "failed", "cancelled")}
        for job in self._jobs.values():
            if job.status in counts:
                counts[job.status] += 1
        return {
            "total_jobs": len(self._jobs),
            "pending": counts["pending"],
            "processing": counts["active"],
            "completed": counts["completed"],
            "failed": counts["failed"],
            "cancelled": counts["cancelled"],
            "queue_length": len(self._pending),
            "active_jobs": self._active_count,
            "max_concurrent": self.max_concurrent,
        }

    async def close(self) -> None:
        """Cancels pending jobs, waits for active ones and drops eviction timers."""
        for job_id in list(self._pending):
            self.cancel(job_id)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
