# planflow/admission.py
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .common.exceptions import QueueOverloadedError
from .config import Settings, get_settings

logger = logging.getLogger(__name__)

StatsSource = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass
class AdmissionDecision:
    accepted: bool
    priority: int
    in_flight: Optional[int] = None
    retry_after: Optional[int] = None
    reason: Optional[str] = None

    @property
    def lowered(self) -> bool:
        return self.accepted and self.reason == "near_capacity"


class AdmissionGate:
    """
    Backpressure check run before accepting new work.

    Reads the queue statistics on every call; nothing is cached. When the
    statistics cannot be read the request is admitted unchanged.
    """

    def __init__(self, stats_source: StatsSource, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.stats_source = stats_source
        self.max_queue_size = settings.max_queue_size
        self.near_capacity = settings.near_capacity_ratio * settings.max_queue_size
        self.retry_after = settings.overload_retry_after_s
        self.lowered_priority = settings.lowered_priority

    async def check(self, priority: int = 0) -> AdmissionDecision:
        try:
            stats = await self.stats_source()
            if stats.get("error"):
                raise RuntimeError(stats["error"])
            in_flight = int(stats.get("waiting", 0)) + int(stats.get("active", 0))
        except Exception as e:
            logger.warning(f"Admission check could not read queue stats, admitting: {e}")
            return AdmissionDecision(accepted=True, priority=priority, reason="stats_unavailable")

        if in_flight >= self.max_queue_size:
            logger.warning(
                f"Rejecting submission: {in_flight} jobs in flight (limit {self.max_queue_size})"
            )
            return AdmissionDecision(
                accepted=False,
                priority=priority,
                in_flight=in_flight,
                retry_after=self.retry_after,
                reason="overloaded",
            )

        if in_flight > self.near_capacity:
            lowered = min(priority, self.lowered_priority)
            logger.info(f"Queue near capacity ({in_flight} in flight); priority lowered to {lowered}")
            return AdmissionDecision(
                accepted=True, priority=lowered, in_flight=in_flight, reason="near_capacity"
            )

        return AdmissionDecision(accepted=True, priority=priority, in_flight=in_flight)

    async def enforce(self, priority: int = 0) -> AdmissionDecision:
        """Like ``check`` but raises QueueOverloadedError on rejection."""
        decision = await self.check(priority)
        if not decision.accepted:
            raise QueueOverloadedError(decision.in_flight, decision.retry_after)
        return decision
