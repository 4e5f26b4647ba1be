# planflow/server/worker.py
import asyncio
import logging
import uuid
from contextlib import suppress
from datetime import datetime, UTC, timedelta
from typing import List, Optional, Set

from planflow.config import Settings, get_settings
from planflow.storage.base import JobStorage
from planflow.execution.registry import ProcessorRegistry
from planflow.server.processor import JobProcessor
from planflow.server.context import ApplyStateContext
from planflow.filters.base import JobFilter, notify_state_applied
from planflow.common.states import ActiveState, FailedState, PendingState, StalledState

logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        storage: JobStorage,
        registry: ProcessorRegistry,
        filters: Optional[List[JobFilter]] = None,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
        backend: str = "distributed",
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.registry = registry
        self.filters = filters or []
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = settings.worker_poll_interval_ms / 1000
        self.stalled_interval = settings.stalled_interval_ms / 1000
        self.max_stalled_count = settings.max_stalled_count
        self.keep_completed = settings.remove_on_complete
        self.keep_failed = settings.remove_on_fail
        self.backend = backend
        self.server_id = f"server:{uuid.uuid4()}"
        self.worker_id = f"worker:{uuid.uuid4()}"
        self.error_cooldown = 5.0
        self._shutdown_requested = False
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    async def run(self):
        """Starts the worker's processing loop."""
        logger.info(f"[{self.worker_id}] Starting worker (concurrency={self.concurrency})")
        loop = asyncio.get_running_loop()
        next_stall_check = loop.time() + self.stalled_interval

        while not self._shutdown_requested:
            try:
                # 1. Release delayed jobs and sweep for stalled ones
                await self.storage.promote_delayed()
                if loop.time() >= next_stall_check:
                    await self.check_stalled()
                    next_stall_check = loop.time() + self.stalled_interval

                if len(self._in_flight) >= self.concurrency:
                    await asyncio.wait(
                        self._in_flight,
                        timeout=self.poll_interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    continue

                # 2. Claim a job
                job = await self.storage.dequeue(self.server_id, self.worker_id)
                if job is None:
                    await asyncio.sleep(self.poll_interval)
                    continue

                # 3. Process it without blocking the loop
                logger.info(f"[{self.worker_id}] Picked up job {job.id}")
                processor = JobProcessor(
                    job,
                    self.storage,
                    self.registry,
                    filters=self.filters,
                    heartbeat_interval=self.stalled_interval / 2,
                    keep_completed=self.keep_completed,
                    keep_failed=self.keep_failed,
                    backend=self.backend,
                )
                task = asyncio.create_task(processor.process(), name=f"job.{job.id}")
                self._in_flight.add(task)
                task.add_done_callback(self._on_task_done)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[{self.worker_id}] Unhandled exception in worker loop: {e}")
                await asyncio.sleep(self.error_cooldown)

        logger.info(f"[{self.worker_id}] Worker has stopped.")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[{self.worker_id}] Processing task {task.get_name()} crashed",
                exc_info=task.exception(),
            )

    def start(self) -> None:
        if self._loop_task is None:
            self._shutdown_requested = False
            self._loop_task = asyncio.create_task(self.run(), name=f"planflow.{self.worker_id}")

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stops claiming jobs and waits for in-flight jobs to finish.

        The loop is joined first, so a job claimed by a dequeue that was in
        progress is tracked before the wait. Jobs still running after
        ``timeout`` are cancelled and left active; the stall sweep hands them
        to another worker.
        """
        self.request_shutdown()
        if self._loop_task is not None:
            # The loop notices the flag after its current dequeue or poll sleep.
            done, _ = await asyncio.wait({self._loop_task}, timeout=timeout)
            if not done:
                self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if not self._in_flight:
            return
        done, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    async def check_stalled(self) -> List[str]:
        """Moves active jobs with an expired heartbeat back to pending, or to failed."""
        cutoff = datetime.now(UTC) - timedelta(seconds=self.stalled_interval)
        recovered = []
        for job in await self.storage.get_stalled_jobs(cutoff):
            stalled = StalledState(reason="Job heartbeat expired")
            if not await self.storage.set_job_state(
                job.id, stalled, ActiveState.NAME, lock_token=job.lock_token
            ):
                continue  # finished, re-claimed or swept elsewhere meanwhile
            job.apply_state(stalled)
            notify_state_applied(
                self.filters, ApplyStateContext(job, ActiveState.NAME, stalled, self.backend)
            )

            job.stalled_count += 1
            await self.storage.update_job_field(job.id, "stalled_count", job.stalled_count)
            if job.stalled_count > self.max_stalled_count:
                next_state = FailedState(
                    exception_type="StalledJobError",
                    exception_message="job stalled more than allowable limit",
                )
            else:
                next_state = PendingState(reason="Recovered after stall")

            if await self.storage.set_job_state(job.id, next_state, StalledState.NAME):
                job.apply_state(next_state)
                notify_state_applied(
                    self.filters,
                    ApplyStateContext(job, StalledState.NAME, next_state, self.backend),
                )
                if isinstance(next_state, FailedState):
                    await self.storage.trim(FailedState.NAME, self.keep_failed)
            recovered.append(job.id)
        return recovered
