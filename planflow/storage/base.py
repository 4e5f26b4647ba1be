# planflow/storage/base.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Any, Dict

from planflow.common.job import Job
from planflow.common.states import BaseState


class JobStorage(ABC):
    """
    Durable job store behind the distributed queue.

    Every state change goes through ``set_job_state`` so implementations can
    move the job between their per-state indexes atomically.

    Writes made by a processor carry the ``lock_token`` of its claim. A
    token that no longer matches the stored one means the job was claimed
    again after a stall, and the write is refused.
    """

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def add(self, job: Job) -> bool:
        """Stores a new job; returns False if the id is already taken."""

    @abstractmethod
    async def dequeue(self, server_id: str, worker_id: str) -> Optional[Job]:
        """Claims the highest-priority pending job, or None when paused or empty."""

    @abstractmethod
    async def set_job_state(
        self,
        job_id: str,
        state: BaseState,
        expected_old_state: Optional[str] = None,
        lock_token: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Moves the job to ``state`` and writes ``fields`` with it, atomically."""

    @abstractmethod
    async def get_job_data(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def update_job_field(
        self, job_id: str, field_name: str, value: Any, lock_token: Optional[str] = None
    ) -> bool: ...

    @abstractmethod
    async def heartbeat(self, job_id: str, lock_token: Optional[str] = None) -> None: ...

    @abstractmethod
    async def promote_delayed(self, now: Optional[datetime] = None) -> List[str]: ...

    @abstractmethod
    async def get_stalled_jobs(self, heartbeat_before: datetime) -> List[Job]: ...

    @abstractmethod
    async def cancel(self, job_id: str, state: BaseState) -> bool:
        """Cancels a pending or delayed job; False for any other state."""

    @abstractmethod
    async def get_state_counts(self) -> Dict[str, int]: ...

    @abstractmethod
    async def trim(self, state_name: str, keep: int) -> int:
        """Removes the oldest records in ``state_name`` beyond the newest ``keep``."""

    @abstractmethod
    async def clean(self, state_name: str, finished_before: datetime) -> int: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def resume(self) -> None: ...

    @abstractmethod
    async def is_paused(self) -> bool: ...

    async def close(self) -> None:
        pass
