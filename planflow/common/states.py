# planflow/common/states.py

import uuid
from datetime import datetime, UTC
from typing import Dict, Any, Optional


class BaseState:
    NAME = "base"

    def __init__(self, reason: Optional[str] = None, created_at: datetime = None):
        self.reason = reason
        self.created_at = created_at or datetime.now(UTC)

    @property
    def name(self) -> str:
        return self.NAME

    def serialize_data(self) -> Dict[str, Any]:
        data = {"created_at": self.created_at.isoformat()}
        if self.reason:
            data["reason"] = self.reason
        return data

    def job_fields(self) -> Dict[str, Any]:
        """Job attributes that change when a job enters this state."""
        return {}


class PendingState(BaseState):
    NAME = "pending"


class DelayedState(BaseState):
    NAME = "delayed"

    def __init__(self, enqueue_at: datetime, delay_ms: int = 0, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enqueue_at = enqueue_at
        self.delay_ms = delay_ms

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update({"enqueue_at": self.enqueue_at.isoformat(), "delay_ms": self.delay_ms})
        return data


class ActiveState(BaseState):
    NAME = "active"

    def __init__(
        self, server_id: str, worker_id: str, *args, lock_token: Optional[str] = None, **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.server_id = server_id
        self.worker_id = worker_id
        # Unique per claim; only the holder may finish the job.
        self.lock_token = lock_token or str(uuid.uuid4())

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update({"server_id": self.server_id, "worker_id": self.worker_id})
        return data

    def job_fields(self) -> Dict[str, Any]:
        return {
            "started_at": self.created_at,
            "heartbeat_at": self.created_at,
            "lock_token": self.lock_token,
        }


class CompletedState(BaseState):
    NAME = "completed"

    def __init__(self, result: Any = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["result"] = self.result
        return data

    def job_fields(self) -> Dict[str, Any]:
        return {"finished_at": self.created_at, "result": self.result, "progress": 100}


class FailedState(BaseState):
    NAME = "failed"

    def __init__(
        self,
        exception_type: str,
        exception_message: str,
        exception_details: Optional[str] = None,
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.exception_type = exception_type
        self.exception_message = exception_message
        self.exception_details = exception_details

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update(
            {
                "exception_type": self.exception_type,
                "exception_message": self.exception_message,
                "exception_details": self.exception_details,
            }
        )
        return data

    def job_fields(self) -> Dict[str, Any]:
        return {"finished_at": self.created_at, "failure_reason": self.exception_message}


class CancelledState(BaseState):
    NAME = "cancelled"

    def job_fields(self) -> Dict[str, Any]:
        return {"finished_at": self.created_at, "failure_reason": self.reason or "cancelled"}


class StalledState(BaseState):
    NAME = "stalled"


ALL_STATES = [
    PendingState.NAME,
    DelayedState.NAME,
    ActiveState.NAME,
    CompletedState.NAME,
    FailedState.NAME,
    CancelledState.NAME,
    StalledState.NAME,
]

TERMINAL_STATES = frozenset({CompletedState.NAME, FailedState.NAME, CancelledState.NAME})

# active -> delayed is the retry path, stalled -> pending the stall recovery path.
ALLOWED_TRANSITIONS = {
    PendingState.NAME: {ActiveState.NAME, CancelledState.NAME},
    DelayedState.NAME: {PendingState.NAME, CancelledState.NAME},
    ActiveState.NAME: {
        CompletedState.NAME,
        FailedState.NAME,
        DelayedState.NAME,
        StalledState.NAME,
    },
    StalledState.NAME: {PendingState.NAME, FailedState.NAME},
    CompletedState.NAME: set(),
    FailedState.NAME: set(),
    CancelledState.NAME: set(),
}


def can_transition(old_state: str, new_state: str) -> bool:
    return new_state in ALLOWED_TRANSITIONS.get(old_state, set())


def is_terminal(state_name: str) -> bool:
    return state_name in TERMINAL_STATES
