# planflow/filters/builtin.py
from datetime import datetime, UTC, timedelta
from typing import Optional

from planflow.filters.base import JobFilter
from planflow.common.exceptions import JobLoadError
from planflow.common.states import (
    DelayedState,
    FailedState,
    CompletedState,
    StalledState,
    CancelledState,
)
import logging
from planflow.server.context import ElectStateContext, ApplyStateContext

logger = logging.getLogger(__name__)


def backoff_delay_ms(base_ms: int, attempts_made: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
    return int(base_ms * (2 ** max(0, attempts_made - 1)))


class RetryFilter(JobFilter):
    def __init__(self, attempts: Optional[int] = None, backoff_ms: Optional[int] = None):
        self.attempts = attempts
        self.backoff_ms = backoff_ms

    def on_state_election(self, elect_state_context: ElectStateContext):
        job = elect_state_context.job
        candidate_state = elect_state_context.candidate_state

        if not isinstance(candidate_state, FailedState):
            return
        if isinstance(elect_state_context.exception, JobLoadError):
            logger.debug(f"RetryFilter: Job {job.id} has no processor, not retrying")
            return

        max_attempts = self.attempts or job.max_attempts
        logger.debug(
            f"RetryFilter: Job {job.id} failed. Attempts made: {job.attempts}, Max attempts: {max_attempts}"
        )

        if job.attempts < max_attempts:
            base_ms = self.backoff_ms if self.backoff_ms is not None else job.backoff_ms
            delay_ms = backoff_delay_ms(base_ms, job.attempts)
            logger.debug(f"RetryFilter: Delaying job {job.id} for {delay_ms}ms before retry")
            elect_state_context.candidate_state = DelayedState(
                enqueue_at=datetime.now(UTC) + timedelta(milliseconds=delay_ms),
                delay_ms=delay_ms,
                reason=f"Retrying job... Attempt {job.attempts + 1} of {max_attempts}",
            )
        else:
            logger.debug(f"RetryFilter: Job {job.id} retries exhausted. Moving to Failed state.")


class LifecycleLogFilter(JobFilter):
    """Logs every state a job enters."""

    def on_state_applied(self, apply_state_context: ApplyStateContext):
        job = apply_state_context.job
        state = apply_state_context.new_state
        prefix = f"[{apply_state_context.backend}] Job {job.id} ({job.type})"

        if isinstance(state, FailedState):
            logger.error(f"{prefix} failed: {state.exception_message}")
        elif isinstance(state, StalledState):
            logger.warning(f"{prefix} stalled")
        elif isinstance(state, DelayedState):
            logger.info(f"{prefix} delayed until {state.enqueue_at.isoformat()}")
        elif isinstance(state, CompletedState):
            logger.info(f"{prefix} completed successfully")
        elif isinstance(state, CancelledState):
            logger.info(f"{prefix} cancelled")
        else:
            logger.info(f"{prefix} {state.name}")
