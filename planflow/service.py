# planflow/service.py
import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from .admission import AdmissionGate
from .backends import QueueBackend, build_backend
from .common.exceptions import DuplicateJobError
from .common.job import JobHandle, JobStatus
from .config import Settings, get_settings
from .execution.registry import ProcessorRegistry
from .filters.base import JobFilter
from .storage.base import JobStorage

logger = logging.getLogger(__name__)


class JobService:
    """
    Job submission, status, cancellation and statistics for route handlers.

    One instance per process. Build it with ``JobService.create`` and call
    ``start`` and ``stop`` around the application's lifetime.
    """

    def __init__(
        self,
        backend: QueueBackend,
        registry: ProcessorRegistry,
        settings: Optional[Settings] = None,
        admission: Optional[AdmissionGate] = None,
    ):
        self.settings = settings or get_settings()
        self.backend = backend
        self.registry = registry
        self.admission = admission or AdmissionGate(self.get_queue_stats, settings=self.settings)

    @classmethod
    async def create(
        cls,
        registry: ProcessorRegistry,
        settings: Optional[Settings] = None,
        filters: Optional[List[JobFilter]] = None,
        storage: Optional[JobStorage] = None,
        run_worker: bool = True,
    ) -> "JobService":
        settings = settings or get_settings()
        backend = await build_backend(
            registry, settings=settings, filters=filters, storage=storage, run_worker=run_worker
        )
        return cls(backend, registry, settings=settings)

    async def start(self) -> None:
        await self.backend.start()
        logger.info(f"Job service started on the {self.backend.name} backend")

    async def stop(self) -> None:
        await self.backend.close()
        logger.info("Job service stopped")

    async def submit_job(
        self,
        job_id: Optional[str],
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay: int = 0,
        scheduled_for: Optional[datetime] = None,
    ) -> JobHandle:
        """
        Submits a job.

        ``delay`` is in milliseconds; ``scheduled_for`` is converted to a delay
        and wins over ``delay`` when both are given. Raises DuplicateJobError
        if ``job_id`` is already known.
        """
        if scheduled_for is not None:
            delay = max(0, int((scheduled_for - datetime.now(UTC)).total_seconds() * 1000))

        handle = await self.backend.submit(job_id, job_type, payload, priority=priority, delay_ms=delay)
        if not handle.created:
            raise DuplicateJobError(handle.job_id)
        logger.debug(f"Submitted job {handle.job_id} ({job_type}) to {handle.backend}")
        return handle

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return await self.backend.status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.backend.cancel(job_id)

    async def get_queue_stats(self) -> Dict[str, Any]:
        return await self.backend.stats()

    async def health(self) -> Dict[str, Any]:
        health = self.backend.health()
        health["queue"] = await self.get_queue_stats()
        health["job_types"] = self.registry.job_types()
        return health
