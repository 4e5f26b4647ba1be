from typing import Awaitable, Callable, Optional

from planflow.common.job import Job
from planflow.common.states import BaseState


class ElectStateContext:
    def __init__(self, job: Job, candidate_state: BaseState, exception: Optional[BaseException] = None):
        self.job = job
        self.candidate_state = candidate_state
        self.exception = exception


class ApplyStateContext:
    def __init__(self, job: Job, old_state: str, new_state: BaseState, backend: str):
        self.job = job
        self.old_state = old_state
        self.new_state = new_state
        self.backend = backend


class PerformContext:
    """Handed to processors so they can report progress while running."""

    def __init__(self, job: Job, progress_cb: Callable[[int], Awaitable[None]]):
        self.job = job
        self._progress_cb = progress_cb

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def attempt(self) -> int:
        return self.job.attempts + 1

    async def report_progress(self, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        self.job.progress = progress
        await self._progress_cb(progress)
