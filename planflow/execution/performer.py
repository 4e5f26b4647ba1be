# planflow/execution/performer.py
import asyncio
import inspect
from typing import Any

from planflow.execution.registry import Processor
from planflow.server.context import PerformContext


def _is_async(processor: Processor) -> bool:
    return inspect.iscoroutinefunction(processor) or inspect.iscoroutinefunction(
        getattr(processor, "__call__", None)
    )


async def perform_job_async(processor: Processor, payload: Any, context: PerformContext) -> Any:
    """Runs a processor, awaiting coroutines and moving sync callables off the event loop."""
    if _is_async(processor):
        return await processor(payload, context)
    result = await asyncio.to_thread(processor, payload, context)
    if inspect.isawaitable(result):
        result = await result
    return result
