# planflow/server/processor.py
import asyncio
import traceback
import logging
from contextlib import suppress
from typing import List, Optional

from planflow.common.job import Job
from planflow.common.states import (
    BaseState,
    CompletedState,
    FailedState,
    ActiveState,
)
from planflow.common.exceptions import JobTimeoutError
from planflow.execution.performer import perform_job_async
from planflow.execution.registry import ProcessorRegistry
from planflow.storage.base import JobStorage
from ..filters.base import JobFilter, notify_state_applied
from ..filters.builtin import RetryFilter
from .context import ApplyStateContext, ElectStateContext, PerformContext

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(
        self,
        job: Job,
        storage: JobStorage,
        registry: ProcessorRegistry,
        filters: Optional[List[JobFilter]] = None,
        heartbeat_interval: float = 15.0,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
        backend: str = "distributed",
    ):
        self.job = job
        self.storage = storage
        self.registry = registry
        self.filters = filters if filters is not None else [RetryFilter()]
        self.heartbeat_interval = heartbeat_interval
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.backend = backend

    async def process(self) -> Optional[BaseState]:
        """Runs the job and records its next state; returns None if the job was taken away."""
        heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            final_state = await self._perform()
        finally:
            heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat_task

        # The stall sweep may have handed the job to another worker meanwhile.
        applied = await self.storage.set_job_state(
            self.job.id,
            final_state,
            expected_old_state=ActiveState.NAME,
            lock_token=self.job.lock_token,
            fields={"attempts": self.job.attempts},
        )
        if not applied:
            logger.warning(
                f"Job {self.job.id} is no longer held by this worker; discarding {final_state.name} outcome"
            )
            return None

        self.job.apply_state(final_state)
        notify_state_applied(
            self.filters,
            ApplyStateContext(self.job, ActiveState.NAME, final_state, self.backend),
        )
        await self._trim_history(final_state)
        return final_state

    async def _perform(self) -> BaseState:
        try:
            # 1. Resolve the processor for this job type
            processor = self.registry.resolve(self.job.type)
            context = PerformContext(self.job, self._report_progress)

            # 2. Perform the job within its timeout
            work = perform_job_async(processor, self.job.payload, context)
            if self.job.timeout_ms:
                try:
                    result = await asyncio.wait_for(work, timeout=self.job.timeout_ms / 1000)
                except asyncio.TimeoutError:
                    raise JobTimeoutError(self.job.id, self.job.timeout_ms) from None
            else:
                result = await work

            self.job.attempts += 1
            return CompletedState(result=result, reason="Job performed successfully")

        except Exception as e:
            # 3. Handle failure, letting filters elect a retry
            logger.error(f"Job {self.job.id} failed.", exc_info=True)
            self.job.attempts += 1
            failed_state = FailedState(
                exception_type=type(e).__name__,
                exception_message=str(e),
                exception_details=traceback.format_exc(),
            )

            elect_state_context = ElectStateContext(
                job=self.job, candidate_state=failed_state, exception=e
            )
            for f in self.filters:
                f.on_state_election(elect_state_context)

            logger.debug(
                f"Job {self.job.id}: After filters, attempts={self.job.attempts}, final_state={elect_state_context.candidate_state.name}"
            )
            return elect_state_context.candidate_state

    async def _report_progress(self, progress: int) -> None:
        await self.storage.update_job_field(
            self.job.id, "progress", progress, lock_token=self.job.lock_token
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.storage.heartbeat(self.job.id, lock_token=self.job.lock_token)
            except Exception as e:
                logger.warning(f"Heartbeat for job {self.job.id} failed: {e}")

    async def _trim_history(self, final_state: BaseState) -> None:
        if isinstance(final_state, CompletedState) and self.keep_completed is not None:
            await self.storage.trim(CompletedState.NAME, self.keep_completed)
        elif isinstance(final_state, FailedState) and self.keep_failed is not None:
            await self.storage.trim(FailedState.NAME, self.keep_failed)
