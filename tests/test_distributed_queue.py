import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, UTC, timedelta

from planflow.common.exceptions import JobCancelledError, JobFailedError
from planflow.common.states import ActiveState, DelayedState, StalledState
from planflow.config import Settings
from planflow.execution.registry import ProcessorRegistry
from planflow.filters.base import JobFilter
from planflow.queue import DistributedJobQueue
from planflow.server.processor import JobProcessor
from planflow.storage.memory_storage import MemoryStorage
from tests.test_tasks import Gate, failure_task, progress_task, slow_task, success_task


class RecordingFilter(JobFilter):
    def __init__(self):
        self.states = []
        self.delays = []

    def on_state_applied(self, apply_state_context):
        state = apply_state_context.new_state
        self.states.append((apply_state_context.job.id, state.name))
        if isinstance(state, DelayedState) and apply_state_context.old_state == "active":
            self.delays.append(state.delay_ms)


class BrokenStorage(MemoryStorage):
    async def get_state_counts(self):
        raise ConnectionError("store unreachable")

    async def get_job_data(self, job_id):
        raise ConnectionError("store unreachable")

    async def clean(self, state_name, finished_before):
        raise ConnectionError("store unreachable")

    async def pause(self):
        raise ConnectionError("store unreachable")

    async def resume(self):
        raise ConnectionError("store unreachable")


class SlowClaimStorage(MemoryStorage):
    """Holds every dequeue until released, like a claim still in flight on Redis."""

    def __init__(self):
        super().__init__()
        self.dequeue_started = asyncio.Event()
        self.release = asyncio.Event()

    async def dequeue(self, server_id, worker_id):
        self.dequeue_started.set()
        await self.release.wait()
        return await super().dequeue(server_id, worker_id)


# --- Fixtures ---
@pytest.fixture
def settings():
    return Settings(
        worker_poll_interval_ms=10,
        worker_concurrency=2,
        job_attempts=3,
        backoff_delay_ms=20,
        job_timeout_ms=5_000,
        stalled_interval_ms=30_000,
        max_stalled_count=1,
        remove_on_complete=10,
        remove_on_fail=25,
    )


@pytest.fixture
def registry():
    registry = ProcessorRegistry()
    registry.register("add", success_task)
    registry.register("fail", failure_task)
    registry.register("slow", slow_task)
    registry.register("progress", progress_task)
    return registry


@pytest.fixture
def recorder():
    return RecordingFilter()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest_asyncio.fixture
async def queue(storage, registry, settings, recorder):
    queue = DistributedJobQueue(storage, registry, filters=[recorder], settings=settings)
    yield queue
    await queue.close()


async def _wait_for_status(queue, job_id, status, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        current = await queue.status(job_id)
        if current is not None and current.status == status:
            return current
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {status}")


async def _make_stale(storage, job_id):
    await storage.update_job_field(job_id, "heartbeat_at", datetime.now(UTC) - timedelta(minutes=5))


# --- Submission and execution ---

@pytest.mark.asyncio
async def test_submit_and_complete(queue):
    await queue.start()
    handle = await queue.submit("job-1", "add", {"x": 1, "y": 2})
    assert handle.created
    assert handle.status == "pending"
    assert await asyncio.wait_for(handle.result(), 2) == 3

    status = await queue.status("job-1")
    assert status.status == "completed"
    assert status.attempts == 1
    assert status.max_attempts == 3
    assert status.started_at is not None
    assert status.finished_at is not None
    assert status.result == 3


@pytest.mark.asyncio
async def test_submit_is_idempotent(queue, storage):
    first = await queue.submit("job-1", "add", {"x": 1, "y": 2})
    second = await queue.submit("job-1", "add", {"x": 5, "y": 5})
    assert first.created and not second.created
    assert (await storage.get_job_data("job-1")).payload == {"x": 1, "y": 2}
    assert (await queue.stats())["waiting"] == 1


@pytest.mark.asyncio
async def test_generated_id_when_none_given(queue):
    handle = await queue.submit(None, "add", {"x": 1, "y": 2})
    assert handle.job_id
    assert (await queue.status(handle.job_id)).status == "pending"


@pytest.mark.asyncio
async def test_status_of_unknown_job(queue):
    assert await queue.status("missing") is None


@pytest.mark.asyncio
async def test_always_failing_job_is_attempted_max_attempts(queue, recorder, registry):
    calls = []

    async def flaky(payload, context):
        calls.append(context.attempt)
        raise RuntimeError("generation failed")

    registry.register("flaky", flaky)
    await queue.start()
    handle = await queue.submit("job-1", "flaky", {})

    with pytest.raises(JobFailedError) as exc_info:
        await asyncio.wait_for(handle.result(), 3)
    assert exc_info.value.reason == "generation failed"

    assert calls == [1, 2, 3]
    assert recorder.delays == [20, 40]
    assert recorder.delays == sorted(recorder.delays)
    status = await queue.status("job-1")
    assert status.status == "failed"
    assert status.attempts == 3
    assert status.failure_reason == "generation failed"


@pytest.mark.asyncio
async def test_per_job_attempt_and_backoff_overrides(queue, recorder):
    await queue.start()
    handle = await queue.submit("job-1", "fail", {}, attempts=2, backoff_ms=5)
    with pytest.raises(JobFailedError):
        await asyncio.wait_for(handle.result(), 3)
    assert recorder.delays == [5]
    assert (await queue.status("job-1")).attempts == 2


@pytest.mark.asyncio
async def test_retry_then_success(queue, registry):
    async def second_time_lucky(payload, context):
        if context.attempt < 2:
            raise RuntimeError("transient")
        return "ok"

    registry.register("lucky", second_time_lucky)
    await queue.start()
    handle = await queue.submit("job-1", "lucky", {})
    assert await asyncio.wait_for(handle.result(), 3) == "ok"
    assert (await queue.status("job-1")).attempts == 2


@pytest.mark.asyncio
async def test_unknown_job_type_fails_without_retry(queue, recorder):
    await queue.start()
    handle = await queue.submit("job-1", "no-such-type", {})
    with pytest.raises(JobFailedError):
        await asyncio.wait_for(handle.result(), 2)
    assert recorder.delays == []
    assert (await queue.status("job-1")).attempts == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(queue):
    await queue.start()
    handle = await queue.submit("job-1", "slow", {"seconds": 1}, attempts=1, timeout_ms=20)
    with pytest.raises(JobFailedError) as exc_info:
        await asyncio.wait_for(handle.result(), 2)
    assert "timed out" in exc_info.value.reason


@pytest.mark.asyncio
async def test_progress_is_persisted(queue, storage, registry):
    seen = []

    async def reporting(payload, context):
        await context.report_progress(40)
        seen.append((await storage.get_job_data(context.job_id)).progress)
        return None

    registry.register("reporting", reporting)
    await queue.start()
    handle = await queue.submit("job-1", "reporting", {})
    await asyncio.wait_for(handle.result(), 2)
    assert seen == [40]
    assert (await queue.status("job-1")).progress == 100


# --- Ordering ---

@pytest.mark.asyncio
async def test_priority_ordering(queue, storage):
    await queue.submit("low", "add", {"x": 0, "y": 0}, priority=0)
    await queue.submit("high", "add", {"x": 0, "y": 0}, priority=5)
    await queue.submit("low-2", "add", {"x": 0, "y": 0}, priority=0)

    order = [(await storage.dequeue("s", "w")).id for _ in range(3)]
    assert order == ["high", "low", "low-2"]


@pytest.mark.asyncio
async def test_delayed_submission(queue, storage):
    handle = await queue.submit("job-1", "add", {"x": 1, "y": 1}, delay_ms=50)
    assert handle.status == "delayed"
    assert await storage.promote_delayed() == []
    assert await storage.dequeue("s", "w") is None

    await asyncio.sleep(0.06)
    assert await storage.promote_delayed() == ["job-1"]
    assert (await storage.dequeue("s", "w")).id == "job-1"


# --- Cancellation ---

@pytest.mark.asyncio
async def test_cancel_pending_job(queue, recorder):
    handle = await queue.submit("job-1", "add", {"x": 1, "y": 1})
    assert await queue.cancel("job-1") is True
    with pytest.raises(JobCancelledError):
        await asyncio.wait_for(handle.result(), 1)
    assert (await queue.status("job-1")).status == "cancelled"
    assert ("job-1", "cancelled") in recorder.states
    assert (await queue.stats())["waiting"] == 0


@pytest.mark.asyncio
async def test_cancel_delayed_job(queue):
    await queue.submit("job-1", "add", {"x": 1, "y": 1}, delay_ms=10_000)
    assert await queue.cancel("job-1") is True
    assert (await queue.stats())["delayed"] == 0


@pytest.mark.asyncio
async def test_cancel_finished_or_active_job_fails(queue, storage):
    await queue.start()
    handle = await queue.submit("done", "add", {"x": 1, "y": 1})
    await asyncio.wait_for(handle.result(), 2)
    assert await queue.cancel("done") is False
    assert (await queue.status("done")).status == "completed"

    await queue.submit("running", "slow", {"seconds": 0.2})
    await _wait_for_status(queue, "running", "active")
    assert await queue.cancel("running") is False
    assert await queue.cancel("missing") is False


# --- Stats, retention and maintenance ---

@pytest.mark.asyncio
async def test_stats_counts(queue, storage):
    await queue.submit("a", "add", {"x": 1, "y": 1})
    await queue.submit("b", "add", {"x": 1, "y": 1})
    await queue.submit("c", "add", {"x": 1, "y": 1}, delay_ms=10_000)
    await storage.dequeue("s", "w")

    stats = await queue.stats()
    assert stats["waiting"] == 1
    assert stats["active"] == 1
    assert stats["delayed"] == 1
    assert stats["completed"] == 0
    assert stats["failed"] == 0
    assert stats["total"] == 3
    assert stats["paused"] is False
    assert "error" not in stats


@pytest.mark.asyncio
async def test_stats_fall_back_when_store_fails(registry, settings):
    queue = DistributedJobQueue(BrokenStorage(), registry, settings=settings)
    stats = await queue.stats()
    assert stats["waiting"] == 0
    assert stats["total"] == 0
    assert "error" in stats
    assert await queue.status("job-1") is None
    assert queue.breaker.failure_count == 2
    await queue.close()


@pytest.mark.asyncio
async def test_completed_history_is_bounded(storage, registry, settings):
    settings = settings.model_copy(update={"remove_on_complete": 2})
    queue = DistributedJobQueue(storage, registry, settings=settings)
    await queue.start()
    for i in range(4):
        handle = await queue.submit(f"job-{i}", "add", {"x": i, "y": i})
        await asyncio.wait_for(handle.result(), 2)
    stats = await queue.stats()
    assert stats["completed"] == 2
    assert await queue.status("job-0") is None
    assert await queue.status("job-3") is not None
    await queue.close()


@pytest.mark.asyncio
async def test_drain_old_jobs(queue):
    await queue.start()
    for i in range(2):
        handle = await queue.submit(f"job-{i}", "add", {"x": i, "y": i})
        await asyncio.wait_for(handle.result(), 2)
    await queue.submit("cancelled", "add", {"x": 0, "y": 0}, delay_ms=10_000)
    await queue.cancel("cancelled")

    # Nothing is older than the default 24h grace period.
    assert await queue.drain_old_jobs() == 0
    assert await queue.drain_old_jobs(grace_ms=0) == 3
    assert (await queue.stats())["completed"] == 0
    assert await queue.status("cancelled") is None


@pytest.mark.asyncio
async def test_pause_and_resume(queue):
    await queue.start()
    assert await queue.pause() is True
    handle = await queue.submit("job-1", "add", {"x": 1, "y": 1})
    await asyncio.sleep(0.05)
    assert (await queue.status("job-1")).status == "pending"
    assert (await queue.stats())["paused"] is True

    assert await queue.resume() is True
    assert await asyncio.wait_for(handle.result(), 2) == 2


# --- Stall detection ---

@pytest.mark.asyncio
async def test_stalled_job_is_requeued_then_failed(queue, storage, recorder):
    await queue.submit("job-1", "add", {"x": 1, "y": 1})

    # A worker claims the job and dies without reporting.
    await storage.dequeue("dead-server", "dead-worker")
    await _make_stale(storage, "job-1")
    assert await queue.check_stalled() == ["job-1"]
    job = await storage.get_job_data("job-1")
    assert job.status == "pending"
    assert job.stalled_count == 1
    assert ("job-1", "stalled") in recorder.states

    await storage.dequeue("dead-server", "dead-worker")
    await _make_stale(storage, "job-1")
    assert await queue.check_stalled() == ["job-1"]
    status = await queue.status("job-1")
    assert status.status == "failed"
    assert status.failure_reason == "job stalled more than allowable limit"


@pytest.mark.asyncio
async def test_fresh_heartbeat_is_not_stalled(queue, storage):
    await queue.submit("job-1", "add", {"x": 1, "y": 1})
    await storage.dequeue("s", "w")
    await storage.heartbeat("job-1")
    assert await queue.check_stalled() == []
    assert (await queue.status("job-1")).status == "active"


@pytest.mark.asyncio
async def test_late_result_after_stall_is_discarded(storage, registry, settings):
    queue = DistributedJobQueue(storage, registry, settings=settings)
    await queue.submit("job-1", "add", {"x": 1, "y": 1})
    stale_claim = await storage.dequeue("server-a", "worker-a")
    await _make_stale(storage, "job-1")
    assert await queue.check_stalled() == ["job-1"]

    # Another worker picks the job up again before the first one finishes.
    current_claim = await storage.dequeue("server-b", "worker-b")
    assert current_claim.lock_token != stale_claim.lock_token

    assert await JobProcessor(stale_claim, storage, registry).process() is None
    job = await storage.get_job_data("job-1")
    assert job.status == "active"
    assert job.attempts == 0
    assert not await storage.update_job_field(
        "job-1", "progress", 50, lock_token=stale_claim.lock_token
    )

    final_state = await JobProcessor(current_claim, storage, registry).process()
    assert final_state.name == "completed"
    job = await storage.get_job_data("job-1")
    assert job.status == "completed"
    assert job.result == 2
    assert job.attempts == 1
    await queue.close()


@pytest.mark.asyncio
async def test_stall_sweep_skips_a_reclaimed_job(storage, registry, settings):
    queue = DistributedJobQueue(storage, registry, settings=settings)
    await queue.submit("job-1", "add", {"x": 1, "y": 1})
    stale_claim = await storage.dequeue("server-a", "worker-a")
    await _make_stale(storage, "job-1")
    await queue.check_stalled()
    await storage.dequeue("server-b", "worker-b")

    assert not await storage.set_job_state(
        "job-1", StalledState(), ActiveState.NAME, lock_token=stale_claim.lock_token
    )
    assert (await storage.get_job_data("job-1")).status == "active"
    await queue.close()


# --- Store failures and shutdown ---

@pytest.mark.asyncio
async def test_control_operations_survive_store_failure(registry, settings, caplog):
    queue = DistributedJobQueue(BrokenStorage(), registry, settings=settings)
    assert await queue.cancel("job-1") is False
    assert await queue.drain_old_jobs(grace_ms=0) == 0
    assert await queue.pause() is False
    assert await queue.resume() is False
    assert "Failed to cancel job job-1: store unreachable" in caplog.text
    assert "Failed to pause queue" in caplog.text
    await queue.close()


@pytest.mark.asyncio
async def test_close_waits_for_job_claimed_during_shutdown(registry, settings):
    storage = SlowClaimStorage()
    queue = DistributedJobQueue(storage, registry, settings=settings)
    await queue.submit("job-1", "add", {"x": 1, "y": 2})
    await queue.start()
    await asyncio.wait_for(storage.dequeue_started.wait(), 1)

    closing = asyncio.create_task(queue.close())
    await asyncio.sleep(0.02)
    storage.release.set()
    await asyncio.wait_for(closing, 2)

    job = await storage.get_job_data("job-1")
    assert job.status == "completed"
    assert job.result == 3
    assert queue.worker.active_count == 0
    assert not queue.worker.running


@pytest.mark.asyncio
async def test_worker_concurrency_is_bounded(queue, registry):
    gate = Gate()
    registry.register("gated", gate)
    await queue.start()
    for i in range(4):
        await queue.submit(f"job-{i}", "gated", {})
    await _wait_for_status(queue, "job-1", "active")
    await asyncio.sleep(0.05)

    stats = await queue.stats()
    assert stats["active"] == 2
    assert stats["waiting"] == 2
    assert queue.worker.active_count == 2

    gate.release()
    for i in range(4):
        await _wait_for_status(queue, f"job-{i}", "completed")
