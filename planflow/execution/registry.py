# planflow/execution/registry.py
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from planflow.common.exceptions import JobLoadError

logger = logging.getLogger(__name__)

Processor = Callable[[Any, Any], Union[Any, Awaitable[Any]]]


class ProcessorRegistry:
    """
    Maps a job type tag to the processor that handles it.

    Processors are registered once at start-up and looked up by type when a
    job is dequeued. A processor receives ``(payload, context)`` where
    ``context`` is a ``PerformContext``.
    """

    def __init__(self):
        self._processors: Dict[str, Processor] = {}

    def register(self, job_type: str, processor: Processor) -> None:
        if job_type in self._processors:
            raise ValueError(f"A processor is already registered for job type '{job_type}'")
        self._processors[job_type] = processor
        logger.debug(f"Registered processor for job type '{job_type}'")

    def processor(self, job_type: str) -> Callable[[Processor], Processor]:
        def decorator(fn: Processor) -> Processor:
            self.register(job_type, fn)
            return fn

        return decorator

    def resolve(self, job_type: str) -> Processor:
        try:
            return self._processors[job_type]
        except KeyError:
            raise JobLoadError(f"No processor registered for job type '{job_type}'") from None

    def job_types(self) -> List[str]:
        return sorted(self._processors)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._processors
