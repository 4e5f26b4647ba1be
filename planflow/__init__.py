from .admission import AdmissionDecision, AdmissionGate
from .backends import DistributedBackend, InProcessBackend, QueueBackend, build_backend
from .circuit import CircuitBreaker, CircuitState
from .common.exceptions import (
    ConfigurationError,
    DuplicateJobError,
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    PlanFlowException,
    QueueOverloadedError,
)
from .common.job import Job, JobHandle, JobStatus
from .config import Settings, configure, configure_logging, get_settings
from .execution.registry import ProcessorRegistry
from .queue import DistributedJobQueue
from .runner import InProcessJobRunner
from .service import JobService

__all__ = [
    "AdmissionDecision",
    "AdmissionGate",
    "CircuitBreaker",
    "CircuitState",
    "ConfigurationError",
    "DistributedBackend",
    "DistributedJobQueue",
    "DuplicateJobError",
    "InProcessBackend",
    "InProcessJobRunner",
    "Job",
    "JobCancelledError",
    "JobFailedError",
    "JobHandle",
    "JobService",
    "JobStatus",
    "JobTimeoutError",
    "PlanFlowException",
    "ProcessorRegistry",
    "QueueBackend",
    "QueueOverloadedError",
    "Settings",
    "build_backend",
    "configure",
    "configure_logging",
    "get_settings",
]
