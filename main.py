# main.py
import asyncio

from planflow import ProcessorRegistry, Settings, JobService, configure_logging
from planflow.storage.memory_storage import MemoryStorage

registry = ProcessorRegistry()


@registry.processor("generate-plan")
async def generate_plan(payload, context):
    for step in range(1, 5):
        await asyncio.sleep(0.2)
        await context.report_progress(step * 25)
    return {"user_id": payload["user_id"], "weeks": payload.get("weeks", 4)}


async def demo():
    # 1. Configure PlanFlow
    settings = Settings(worker_poll_interval_ms=100)
    configure_logging("INFO")

    # 2. Create the service on in-memory storage
    service = await JobService.create(registry, settings=settings, storage=MemoryStorage())
    await service.start()

    # 3. Submit a job
    handle = await service.submit_job("plan-42", "generate-plan", {"user_id": "u-1", "weeks": 6})
    print(f"Submitted job {handle.job_id} ({handle.status})")

    # 4. Wait and check job status
    result = await handle.result()
    print(f"\nResult: {result}")
    status = await service.get_job_status(handle.job_id)
    print(f"Status after execution: {status.to_dict()}")
    print(f"Queue stats: {await service.get_queue_stats()}")

    await service.stop()
    print("\nDemonstration finished.")


if __name__ == "__main__":
    asyncio.run(demo())
