"""Litestar integration helpers for PlanFlow."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict

try:
    from litestar import Litestar, Router, get
    from litestar.connection import ASGIConnection
    from litestar.datastructures import State
    from litestar.di import Provide
    from litestar.exceptions import NotFoundException, ServiceUnavailableException
    from litestar.handlers.base import BaseRouteHandler
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install planflow[litestar]`."
    ) from exc

from planflow.service import JobService

OVERLOADED_MESSAGE = "The system is currently overloaded. Please try again in a few minutes."


def get_job_service(state: State) -> JobService:
    return state.planflow_service


def planflow_dependency() -> Provide:
    return Provide(get_job_service, sync_to_thread=False)


def configure_planflow(app: Litestar, service: JobService) -> JobService:
    app.state.planflow_service = service
    return service


def planflow_lifespan(service: JobService) -> Callable[[Litestar], Any]:
    @asynccontextmanager
    async def lifespan(app: Litestar) -> AsyncIterator[None]:
        configure_planflow(app, service)
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    return lifespan


async def backpressure_guard(connection: ASGIConnection, _: BaseRouteHandler) -> None:
    """Route guard: 503 when the queue is full, lowered ``queue_priority`` near capacity."""
    service: JobService = connection.app.state.planflow_service
    decision = await service.admission.check()
    if not decision.accepted:
        raise ServiceUnavailableException(
            detail=OVERLOADED_MESSAGE,
            headers={"Retry-After": str(decision.retry_after)},
            extra={"queue_size": decision.in_flight, "retry_after": decision.retry_after},
        )
    connection.state.queue_priority = decision.priority


def monitoring_router(path: str = "/queue") -> Router:
    @get("/stats")
    async def queue_stats(job_service: JobService) -> Dict[str, Any]:
        return await job_service.get_queue_stats()

    @get("/health")
    async def queue_health(job_service: JobService) -> Dict[str, Any]:
        return await job_service.health()

    @get("/jobs/{job_id:str}")
    async def job_status(job_id: str, job_service: JobService) -> Dict[str, Any]:
        status = await job_service.get_job_status(job_id)
        if status is None:
            raise NotFoundException(detail=f"Job {job_id} not found")
        return status.to_dict()

    return Router(
        path=path,
        route_handlers=[queue_stats, queue_health, job_status],
        dependencies={"job_service": planflow_dependency()},
    )
