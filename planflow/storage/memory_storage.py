# planflow/storage/memory_storage.py
import copy
import heapq
import itertools
from datetime import datetime, UTC
from threading import RLock
from typing import Optional, List, Dict, Any, Tuple

from planflow.storage.base import JobStorage
from planflow.common.exceptions import InvalidStateTransition
from planflow.common.job import Job
from planflow.common.states import (
    ALL_STATES,
    BaseState,
    ActiveState,
    DelayedState,
    PendingState,
)


class MemoryStorage(JobStorage):
    """Single-process storage with the same semantics as RedisStorage."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._pending: List[Tuple[int, int, str]] = []  # (-priority, seq, job_id)
        self._pending_seq: Dict[str, int] = {}
        self._delayed: Dict[str, datetime] = {}
        self._counter = itertools.count()
        self._paused = False
        self._lock = RLock()

    def _index(self, job: Job) -> None:
        if job.status == PendingState.NAME:
            seq = next(self._counter)
            self._pending_seq[job.id] = seq
            heapq.heappush(self._pending, (-job.priority, seq, job.id))
        elif job.status == DelayedState.NAME:
            self._delayed[job.id] = datetime.fromisoformat(job.state_data["enqueue_at"])

    def _unindex(self, job_id: str) -> None:
        self._pending_seq.pop(job_id, None)
        self._delayed.pop(job_id, None)

    async def ping(self) -> bool:
        return True

    async def add(self, job: Job) -> bool:
        with self._lock:
            if job.id in self._jobs:
                return False
            self._jobs[job.id] = copy.copy(job)
            self._index(job)
            return True

    async def dequeue(self, server_id: str, worker_id: str) -> Optional[Job]:
        with self._lock:
            if self._paused:
                return None
            while self._pending:
                _, seq, job_id = heapq.heappop(self._pending)
                if self._pending_seq.get(job_id) != seq:
                    continue  # stale entry left by a cancel or re-queue
                del self._pending_seq[job_id]
                job = self._jobs[job_id]
                job.apply_state(ActiveState(server_id, worker_id))
                return copy.copy(job)
            return None

    def _transition(
        self,
        job_id: str,
        state: BaseState,
        expected_old_state: Optional[str] = None,
        lock_token: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        # Callers hold self._lock.
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if expected_old_state and job.status != expected_old_state:
            return False
        if lock_token is not None and job.lock_token != lock_token:
            return False
        try:
            job.apply_state(state)
        except InvalidStateTransition:
            return False
        for name, value in (fields or {}).items():
            setattr(job, name, value)
        self._unindex(job_id)
        self._index(job)
        return True

    async def set_job_state(
        self,
        job_id: str,
        state: BaseState,
        expected_old_state: Optional[str] = None,
        lock_token: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            return self._transition(job_id, state, expected_old_state, lock_token, fields)

    async def get_job_data(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.copy(job) if job else None

    async def update_job_field(
        self, job_id: str, field_name: str, value: Any, lock_token: Optional[str] = None
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (lock_token is not None and job.lock_token != lock_token):
                return False
            setattr(job, field_name, value)
            return True

    async def heartbeat(self, job_id: str, lock_token: Optional[str] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != ActiveState.NAME:
                return
            if lock_token is not None and job.lock_token != lock_token:
                return
            job.heartbeat_at = datetime.now(UTC)

    async def promote_delayed(self, now: Optional[datetime] = None) -> List[str]:
        now = now or datetime.now(UTC)
        with self._lock:
            due = [job_id for job_id, at in self._delayed.items() if at <= now]
            for job_id in due:
                self._transition(job_id, PendingState(reason="Delay elapsed"), DelayedState.NAME)
            return due

    async def get_stalled_jobs(self, heartbeat_before: datetime) -> List[Job]:
        with self._lock:
            return [
                copy.copy(job)
                for job in self._jobs.values()
                if job.status == ActiveState.NAME
                and (job.heartbeat_at or job.started_at or job.created_at) < heartbeat_before
            ]

    async def cancel(self, job_id: str, state: BaseState) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in (PendingState.NAME, DelayedState.NAME):
                return False
            return self._transition(job_id, state, job.status)

    async def get_state_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {state: 0 for state in ALL_STATES}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts

    def _finished(self, state_name: str) -> List[Job]:
        jobs = [job for job in self._jobs.values() if job.status == state_name]
        return sorted(jobs, key=lambda j: j.finished_at or j.created_at, reverse=True)

    async def trim(self, state_name: str, keep: int) -> int:
        with self._lock:
            stale = self._finished(state_name)[keep:]
            for job in stale:
                del self._jobs[job.id]
            return len(stale)

    async def clean(self, state_name: str, finished_before: datetime) -> int:
        with self._lock:
            stale = [
                job
                for job in self._finished(state_name)
                if (job.finished_at or job.created_at) < finished_before
            ]
            for job in stale:
                del self._jobs[job.id]
            return len(stale)

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused
