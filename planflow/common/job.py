# planflow/common/job.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Dict, Any, Callable, Awaitable

from .exceptions import InvalidStateTransition
from .states import BaseState, PendingState, can_transition, is_terminal


@dataclass
class Job:
    """
    Represents a unit of asynchronous work.

    This is the central data model shared by the in-process runner and the
    distributed queue storages.
    """

    # Processor selection
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = PendingState.NAME
    state_data: Dict[str, Any] = field(default_factory=dict)

    # Scheduling
    queue: str = "default"
    priority: int = 0

    # Retry bookkeeping
    attempts: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    timeout_ms: Optional[int] = None
    stalled_count: int = 0
    lock_token: Optional[str] = None

    # Timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None

    progress: int = 0
    result: Any = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def apply_state(self, state: BaseState) -> str:
        """Move the job into ``state``; returns the previous state name."""
        if not can_transition(self.status, state.name):
            raise InvalidStateTransition(self.id, self.status, state.name)
        old_state = self.status
        self.status = state.name
        self.state_data = state.serialize_data()
        for name, value in state.job_fields().items():
            setattr(self, name, value)
        return old_state

    def to_status(self, backend: str) -> "JobStatus":
        return JobStatus(
            id=self.id,
            type=self.type,
            status=self.status,
            progress=self.progress,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            failure_reason=self.failure_reason,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            result=self.result,
            backend=backend,
        )


@dataclass
class JobStatus:
    """Read-only snapshot returned by status queries."""

    id: str
    type: str
    status: str
    progress: int
    created_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    failure_reason: Optional[str]
    attempts: int
    max_attempts: int
    result: Any = None
    backend: str = "distributed"

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "failure_reason": self.failure_reason,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "backend": self.backend,
        }


@dataclass
class JobHandle:
    job_id: str
    job_type: str
    backend: str
    status: str
    created: bool = True
    _waiter: Optional[Callable[[], Awaitable[Any]]] = field(default=None, repr=False)

    async def result(self) -> Any:
        """Wait for the job to finish and return its result.

        Raises JobFailedError or JobCancelledError when the job did not complete.
        """
        if self._waiter is None:
            raise RuntimeError(f"Job handle {self.job_id} cannot be awaited")
        return await self._waiter()
