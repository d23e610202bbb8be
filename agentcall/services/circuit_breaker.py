from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from agentcall.core import metrics
from agentcall.core.exceptions import CircuitOpenError
from agentcall.core.logging import get_logger

logger = get_logger(name=__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(slots=True)
class CircuitBreakerState:
    failure_count: int = 0
    last_failure_time: float | None = None
    state: CircuitState = CircuitState.CLOSED


class CircuitBreaker:
    """Per-agent failure isolation.

    State is keyed by agent id and created lazily on the first call for that
    agent. Each executor owns its own breaker so independently configured
    executors never share failure counts.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = asyncio.Lock()

    @property
    def failure_threshold(self) -> int:
        return self._threshold

    @property
    def reset_timeout(self) -> float:
        return self._reset_timeout

    async def call(self, agent_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``fn`` unless the circuit for ``agent_id`` is open."""
        await self._before_call(agent_id)
        try:
            result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            await self._record_failure(agent_id)
            raise
        await self._record_success(agent_id)
        return result

    async def _before_call(self, agent_id: str) -> None:
        async with self._lock:
            state = self._states.setdefault(agent_id, CircuitBreakerState())
            if state.state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - (state.last_failure_time or 0.0)
            if elapsed >= self._reset_timeout:
                state.state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", agent=agent_id)
                return
            metrics.increment_circuit_open(agent=agent_id)
            retry_in = max(0.0, self._reset_timeout - elapsed)
            logger.warning("circuit_open_fast_fail", agent=agent_id, retry_in=retry_in)
            raise CircuitOpenError(agent_id, retry_in=retry_in)

    async def _record_success(self, agent_id: str) -> None:
        async with self._lock:
            state = self._states.setdefault(agent_id, CircuitBreakerState())
            if state.state is not CircuitState.CLOSED:
                logger.info("circuit_closed", agent=agent_id)
            state.failure_count = 0
            state.state = CircuitState.CLOSED

    async def _record_failure(self, agent_id: str) -> None:
        async with self._lock:
            state = self._states.setdefault(agent_id, CircuitBreakerState())
            state.failure_count += 1
            state.last_failure_time = self._clock()
            if state.state is CircuitState.HALF_OPEN or state.failure_count >= self._threshold:
                if state.state is not CircuitState.OPEN:
                    metrics.increment_circuit_trip(agent=agent_id)
                    logger.warning("circuit_opened", agent=agent_id, failures=state.failure_count)
                state.state = CircuitState.OPEN

    def state_for(self, agent_id: str) -> CircuitBreakerState:
        """Return a copy of the breaker state for an agent (closed if never called)."""
        state = self._states.get(agent_id)
        if state is None:
            return CircuitBreakerState()
        return CircuitBreakerState(
            failure_count=state.failure_count,
            last_failure_time=state.last_failure_time,
            state=state.state,
        )

    def reset(self, agent_id: str | None = None) -> None:
        if agent_id is None:
            self._states.clear()
        else:
            self._states.pop(agent_id, None)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            agent_id: {
                "state": state.state.value,
                "failure_count": state.failure_count,
                "last_failure_time": state.last_failure_time,
            }
            for agent_id, state in self._states.items()
        }


__all__ = ["CircuitBreaker", "CircuitBreakerState", "CircuitState"]
