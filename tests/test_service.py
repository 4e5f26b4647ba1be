import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, UTC, timedelta

from planflow.backends import DistributedBackend, InProcessBackend, build_backend
from planflow.common.exceptions import ConfigurationError, DuplicateJobError, JobLoadError
from planflow.config import Settings, configure, get_settings
from planflow.execution.registry import ProcessorRegistry
from planflow.service import JobService
from planflow.storage.memory_storage import MemoryStorage
from tests.test_tasks import failure_task, success_task

# Nothing listens on this port, so connections are refused immediately.
UNREACHABLE_REDIS = "redis://127.0.0.1:1/0"


@pytest.fixture
def registry():
    registry = ProcessorRegistry()
    registry.register("add", success_task)
    registry.register("fail", failure_task)
    return registry


@pytest.fixture
def settings():
    return Settings(worker_poll_interval_ms=10, backoff_delay_ms=10, redis_url=None)


# --- Backend selection ---

@pytest.mark.asyncio
async def test_no_redis_configured_runs_in_process(registry, settings):
    backend = await build_backend(registry, settings=settings)
    assert isinstance(backend, InProcessBackend)
    assert not backend.degraded


@pytest.mark.asyncio
async def test_explicit_storage_runs_distributed(registry, settings):
    backend = await build_backend(registry, settings=settings, storage=MemoryStorage())
    assert isinstance(backend, DistributedBackend)
    assert backend.health()["circuit"]["state"] == "CLOSED"


@pytest.mark.asyncio
async def test_unreachable_redis_degrades(registry, settings):
    settings = settings.model_copy(update={"redis_url": UNREACHABLE_REDIS})
    service = await JobService.create(registry, settings=settings)
    assert isinstance(service.backend, InProcessBackend)
    assert service.backend.degraded
    await service.start()

    handle = await service.submit_job("job-1", "add", {"x": 2, "y": 2})
    assert handle.backend == "in-process"
    assert await asyncio.wait_for(handle.result(), 2) == 4
    status = await service.get_job_status("job-1")
    assert status.status == "completed"

    stats = await service.get_queue_stats()
    assert stats["degraded"] is True
    assert stats["completed"] == 1
    await service.stop()


@pytest.mark.asyncio
async def test_unreachable_redis_is_fatal_when_required(registry, settings):
    settings = settings.model_copy(update={"redis_url": UNREACHABLE_REDIS, "require_redis": True})
    with pytest.raises(ConfigurationError):
        await build_backend(registry, settings=settings)


def test_invalid_redis_url_rejected():
    with pytest.raises(ValueError):
        Settings(redis_url="http://localhost:6379")


def test_blank_redis_url_means_unset():
    assert Settings(redis_url="  ").redis_url is None


def test_global_settings():
    custom = Settings(queue_name="custom")
    configure(custom)
    try:
        assert get_settings() is custom
    finally:
        configure(None)


# --- Service API on the distributed backend ---

@pytest_asyncio.fixture
async def service(registry, settings):
    service = await JobService.create(registry, settings=settings, storage=MemoryStorage())
    await service.start()
    yield service
    await service.stop()


@pytest.mark.asyncio
async def test_submit_status_and_stats(service):
    handle = await service.submit_job("plan-1", "add", {"x": 1, "y": 2})
    assert handle.backend == "distributed"
    assert await asyncio.wait_for(handle.result(), 2) == 3

    status = await service.get_job_status("plan-1")
    assert status.status == "completed"
    stats = await service.get_queue_stats()
    assert stats["completed"] == 1
    assert stats["total"] == 1


@pytest.mark.asyncio
async def test_duplicate_submission_rejected(service):
    await service.submit_job("plan-1", "add", {"x": 1, "y": 2}, delay=10_000)
    with pytest.raises(DuplicateJobError):
        await service.submit_job("plan-1", "add", {"x": 1, "y": 2})
    assert (await service.get_queue_stats())["total"] == 1


@pytest.mark.asyncio
async def test_scheduled_for_becomes_delay(service):
    when = datetime.now(UTC) + timedelta(hours=1)
    handle = await service.submit_job("plan-1", "add", {"x": 1, "y": 2}, scheduled_for=when)
    assert handle.status == "delayed"
    assert await service.cancel_job("plan-1") is True
    assert (await service.get_job_status("plan-1")).status == "cancelled"


@pytest.mark.asyncio
async def test_missing_job(service):
    assert await service.get_job_status("nope") is None
    assert await service.cancel_job("nope") is False


@pytest.mark.asyncio
async def test_health(service):
    health = await service.health()
    assert health["backend"] == "distributed"
    assert health["degraded"] is False
    assert health["job_types"] == ["add", "fail"]
    assert "waiting" in health["queue"]


@pytest.mark.asyncio
async def test_admission_uses_live_stats(registry, settings):
    settings = settings.model_copy(update={"max_queue_size": 2})
    service = await JobService.create(
        registry, settings=settings, storage=MemoryStorage(), run_worker=False
    )
    await service.start()
    await service.submit_job("a", "add", {"x": 1, "y": 1})
    assert (await service.admission.check()).accepted
    await service.submit_job("b", "add", {"x": 1, "y": 1})
    decision = await service.admission.check()
    assert not decision.accepted
    assert decision.in_flight == 2
    await service.stop()


# --- In-process backend specifics ---

@pytest.mark.asyncio
async def test_in_process_duplicate_and_unknown_type(registry, settings):
    service = await JobService.create(registry, settings=settings)
    await service.start()
    await service.submit_job("job-1", "add", {"x": 1, "y": 1})
    with pytest.raises(DuplicateJobError):
        await service.submit_job("job-1", "add", {"x": 1, "y": 1})
    with pytest.raises(JobLoadError):
        await service.submit_job("job-2", "missing", {})
    await service.stop()


@pytest.mark.asyncio
async def test_in_process_delay(registry, settings):
    service = await JobService.create(registry, settings=settings)
    await service.start()
    handle = await service.submit_job("job-1", "add", {"x": 1, "y": 1}, delay=30)
    assert await asyncio.wait_for(handle.result(), 2) == 2
    health = await service.health()
    assert health["backend"] == "in-process"
    assert health["runner"]["completed"] == 1
    await service.stop()
