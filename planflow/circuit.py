# planflow/circuit.py
"""Circuit breaker guarding calls to one shared external dependency."""

import asyncio
import inspect
import logging
import time
from contextlib import suppress
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

Operation = Callable[[], Union[Any, Awaitable[Any]]]


class CircuitState:
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


async def _call(fn: Operation) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class CircuitBreaker:
    """
    In-process circuit breaker.

    - CLOSED: every call goes through; failures are counted.
    - OPEN: calls short-circuit to the fallback until ``reset_timeout`` elapses.
    - HALF_OPEN: exactly one trial call goes through; success closes the
      circuit, failure opens it again and restarts the timer.

    One instance guards one dependency. Counters are only mutated under
    ``self._lock``.
    """

    def __init__(
        self,
        name: str = "CircuitBreaker",
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        monitoring_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.name = name
        self.failure_threshold = failure_threshold or settings.breaker_failure_threshold
        self.reset_timeout = (
            reset_timeout
            if reset_timeout is not None
            else settings.breaker_reset_timeout_ms / 1000
        )
        self.monitoring_interval = (
            monitoring_interval
            if monitoring_interval is not None
            else settings.breaker_monitoring_interval_ms / 1000
        )
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.next_attempt = clock()
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        self._monitor_task: Optional[asyncio.Task] = None

    async def execute(self, operation: Operation, fallback: Optional[Operation] = None) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._clock() < self.next_attempt:
                    logger.debug(f"{self.name}: Circuit OPEN, using fallback")
                    return await self._short_circuit(fallback)
                self.state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"{self.name}: Circuit transitioning to HALF_OPEN")

            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return await self._short_circuit(fallback)
                self._trial_in_flight = True

        try:
            result = await _call(operation)
        except Exception as e:
            await self._on_failure(e)
            if fallback is not None:
                logger.debug(f"{self.name}: Operation failed, using fallback")
                return await _call(fallback)
            raise

        await self._on_success()
        return result

    async def _short_circuit(self, fallback: Optional[Operation]) -> Any:
        return await _call(fallback) if fallback is not None else None

    async def _on_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self._trial_in_flight = False
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.CLOSED
                logger.info(f"{self.name}: Circuit CLOSED after successful operation")

    async def _on_failure(self, error: Exception) -> None:
        async with self._lock:
            self.failure_count += 1
            self._trial_in_flight = False
            logger.warning(
                f"{self.name}: Failure {self.failure_count}/{self.failure_threshold} - {error}"
            )
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.next_attempt = self._clock() + self.reset_timeout
                logger.error(
                    f"{self.name}: Circuit OPEN for {self.reset_timeout}s after {self.failure_count} failures"
                )

    def status(self) -> Dict[str, Any]:
        next_attempt = None
        if self.state == CircuitState.OPEN:
            next_attempt = datetime.fromtimestamp(self.next_attempt, UTC).isoformat()
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "next_attempt": next_attempt,
            "healthy": self.state == CircuitState.CLOSED,
        }

    def reset(self) -> None:
        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self.next_attempt = self._clock()
        self._trial_in_flight = False
        logger.info(f"{self.name}: Circuit manually reset")

    # --- Monitoring ---

    def start_monitoring(self) -> None:
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(
                self._monitor_loop(), name=f"circuit.{self.name}.monitor"
            )

    async def stop_monitoring(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._monitor_task
        self._monitor_task = None

    async def _monitor_loop(self) -> None:
        # Reports only; probing happens through execute().
        while True:
            await asyncio.sleep(self.monitoring_interval)
            status = self.status()
            if status["state"] != CircuitState.CLOSED:
                logger.info(f"{self.name}: Circuit Status {status}")
