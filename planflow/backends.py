# planflow/backends.py
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .common.exceptions import ConfigurationError
from .common.job import JobHandle, JobStatus
from .config import Settings, get_settings
from .execution.performer import perform_job_async
from .execution.registry import ProcessorRegistry
from .filters.base import JobFilter
from .filters.builtin import LifecycleLogFilter
from .queue import DistributedJobQueue
from .runner import InProcessJobRunner
from .storage.base import JobStorage
from .storage.redis_storage import RedisStorage

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    """The queue the service talks to; picked once at start-up by ``build_backend``."""

    name: str = "base"
    degraded: bool = False

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def submit(
        self,
        job_id: Optional[str],
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay_ms: int = 0,
    ) -> JobHandle: ...

    @abstractmethod
    async def status(self, job_id: str) -> Optional[JobStatus]: ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool: ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]: ...

    def health(self) -> Dict[str, Any]:
        return {"backend": self.name, "degraded": self.degraded}


class DistributedBackend(QueueBackend):
    name = DistributedJobQueue.backend_name

    def __init__(self, queue: DistributedJobQueue, run_worker: bool = True):
        self.queue = queue
        self.run_worker = run_worker

    async def start(self) -> None:
        await self.queue.start(run_worker=self.run_worker)

    async def close(self) -> None:
        await self.queue.close()

    async def submit(self, job_id, job_type, payload, priority=0, delay_ms=0) -> JobHandle:
        return await self.queue.submit(job_id, job_type, payload, priority=priority, delay_ms=delay_ms)

    async def status(self, job_id: str) -> Optional[JobStatus]:
        return await self.queue.status(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.queue.cancel(job_id)

    async def stats(self) -> Dict[str, Any]:
        return await self.queue.stats()

    def health(self) -> Dict[str, Any]:
        health = super().health()
        health["circuit"] = self.queue.breaker.status()
        return health


class InProcessBackend(QueueBackend):
    """
    Runs jobs on an ``InProcessJobRunner`` using the same processor registry.

    Used when no shared store is configured or reachable. Statuses are real;
    there is no retry, priority or durability.
    """

    name = InProcessJobRunner.backend_name

    def __init__(self, runner: InProcessJobRunner, registry: ProcessorRegistry, degraded: bool = False):
        self.runner = runner
        self.registry = registry
        self.degraded = degraded

    async def close(self) -> None:
        await self.runner.close()

    async def submit(self, job_id, job_type, payload, priority=0, delay_ms=0) -> JobHandle:
        job_id = job_id or str(uuid.uuid4())
        processor = self.registry.resolve(job_type)
        if delay_ms > 0:
            # No delayed state here; the job simply starts late.
            processor = _delayed(processor, delay_ms / 1000)
        future = self.runner.submit(job_id, payload, processor, job_type=job_type)
        return JobHandle(
            job_id=job_id,
            job_type=job_type,
            backend=self.name,
            status=self.runner.get_job(job_id).status,
            _waiter=lambda: asyncio.shield(future),
        )

    async def status(self, job_id: str) -> Optional[JobStatus]:
        return self.runner.status(job_id)

    async def cancel(self, job_id: str) -> bool:
        return self.runner.cancel(job_id)

    async def stats(self) -> Dict[str, Any]:
        runner_stats = self.runner.stats()
        stats: Dict[str, Any] = {
            "waiting": runner_stats["pending"],
            "active": runner_stats["processing"],
            "completed": runner_stats["completed"],
            "failed": runner_stats["failed"],
            "delayed": 0,
        }
        stats["total"] = sum(stats.values())
        stats["degraded"] = self.degraded
        return stats

    def health(self) -> Dict[str, Any]:
        health = super().health()
        health["runner"] = self.runner.stats()
        return health


def _delayed(processor, delay_s: float):
    async def run_later(payload, context):
        await asyncio.sleep(delay_s)
        return await perform_job_async(processor, payload, context)

    return run_later


async def build_backend(
    registry: ProcessorRegistry,
    settings: Optional[Settings] = None,
    filters: Optional[List[JobFilter]] = None,
    storage: Optional[JobStorage] = None,
    run_worker: bool = True,
) -> QueueBackend:
    """
    Selects the queue backend.

    An explicit ``storage`` or a reachable ``redis_url`` gives the distributed
    queue. With no Redis configured the in-process runner is used. An
    unreachable Redis degrades to the in-process runner unless
    ``require_redis`` is set, in which case ConfigurationError is raised.
    """
    settings = settings or get_settings()

    if storage is None and settings.redis_url:
        storage = RedisStorage(queue_name=settings.queue_name, url=settings.redis_url)
        if not await storage.ping():
            await storage.close()
            if settings.require_redis:
                raise ConfigurationError(f"Redis at {settings.redis_url} is unreachable")
            logger.warning(
                f"Redis at {settings.redis_url} is unreachable; running jobs in-process (degraded)"
            )
            return _in_process(registry, settings, filters, degraded=True)

    if storage is None:
        logger.info("No Redis configured; running jobs in-process")
        return _in_process(registry, settings, filters, degraded=False)

    queue = DistributedJobQueue(storage, registry, filters=filters, settings=settings)
    return DistributedBackend(queue, run_worker=run_worker)


def _in_process(registry, settings, filters, degraded: bool) -> InProcessBackend:
    runner = InProcessJobRunner(
        settings=settings, filters=[LifecycleLogFilter()] + list(filters or [])
    )
    return InProcessBackend(runner, registry, degraded=degraded)
