"""FastAPI integration helpers for PlanFlow."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

try:
    from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install planflow[fastapi]`."
    ) from exc

from planflow.admission import AdmissionDecision
from planflow.service import JobService

OVERLOADED_MESSAGE = "The system is currently overloaded. Please try again in a few minutes."


class PlanFlowFastAPIPlugin:
    def __init__(self, app: FastAPI, service: JobService):
        self.app = app
        self.service = service
        app.state.planflow_service = service
        app.router.lifespan_context = self.lifespan

    def include_monitoring(self, prefix: str = "/queue") -> None:
        self.app.include_router(monitoring_router(), prefix=prefix)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await self.service.start()
        try:
            yield
        finally:
            await self.service.stop()


def add_planflow_to_fastapi(app: FastAPI, service: JobService) -> PlanFlowFastAPIPlugin:
    """Stores the service on ``app.state`` and starts/stops it with the app."""
    return PlanFlowFastAPIPlugin(app, service)


def get_job_service(request: Request) -> JobService:
    return request.app.state.planflow_service


async def require_capacity(
    request: Request, service: JobService = Depends(get_job_service)
) -> AdmissionDecision:
    """Rejects with 503 when the queue is full; otherwise sets ``request.state.queue_priority``."""
    decision = await service.admission.check()
    if not decision.accepted:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "error",
                "message": OVERLOADED_MESSAGE,
                "queue_size": decision.in_flight,
                "retry_after": decision.retry_after,
            },
            headers={"Retry-After": str(decision.retry_after)},
        )
    request.state.queue_priority = decision.priority
    return decision


def monitoring_router() -> APIRouter:
    router = APIRouter(tags=["queue"])

    @router.get("/stats")
    async def queue_stats(service: JobService = Depends(get_job_service)) -> Dict[str, Any]:
        return await service.get_queue_stats()

    @router.get("/health")
    async def queue_health(service: JobService = Depends(get_job_service)) -> Dict[str, Any]:
        return await service.health()

    @router.get("/jobs/{job_id}")
    async def job_status(job_id: str, service: JobService = Depends(get_job_service)) -> Dict[str, Any]:
        status = await service.get_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return status.to_dict()

    @router.delete("/jobs/{job_id}")
    async def cancel_job(job_id: str, service: JobService = Depends(get_job_service)) -> Dict[str, Any]:
        return {"id": job_id, "cancelled": await service.cancel_job(job_id)}

    return router
