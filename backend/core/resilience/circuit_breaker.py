"""Circuit breaker for shared storage backends.

When the remote cache keeps failing, calls are short-circuited for a cool-down
period instead of piling up connection attempts on every request. Callers see
the same ``Err`` they would on a real failure and apply their usual fail-open
default.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Awaitable, Callable, Generic, TypeVar

from core.errors import (
    AppError,
    ErrorCode,
    ErrorMapper,
    Err,
    Ok,
    Result,
    circuit_open,
    internal_error,
)
from core.logging import get_logger

T = TypeVar("T")

log = get_logger("resilience.circuit_breaker")


class CircuitState(Enum):
    CLOSED = auto()     # Normal operation
    OPEN = auto()       # Failing, calls rejected immediately
    HALF_OPEN = auto()  # Probing whether the backend recovered


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 1
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    excluded_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            ErrorCode.E2000_VALIDATION_GENERIC,
            ErrorCode.E2001_REQUIRED_FIELD_MISSING,
            ErrorCode.E2002_INVALID_FORMAT,
            ErrorCode.E4010_NOT_FOUND,
        })
    )


@dataclass
class CircuitStats:
    state: CircuitState
    failure_count: int
    last_failure: datetime | None
    last_state_change: datetime
    total_requests: int
    total_failures: int


class CircuitBreaker(Generic[T]):
    """Tracks consecutive failures of one backend and opens after a threshold.

    Usage:
        breaker = CircuitBreaker("redis", mapper=StorageErrorMapper("redis"))
        result = await breaker.call(lambda: read_partition(key))
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        mapper: ErrorMapper | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.mapper = mapper
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure: datetime | None = None
        self._last_state_change = datetime.now(timezone.utc)
        self._total_requests = 0
        self._total_failures = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self._state,
            failure_count=self._failure_count,
            last_failure=self._last_failure,
            last_state_change=self._last_state_change,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state != self._state:
            log.info(
                "circuit_state_change",
                breaker=self.name,
                from_state=self._state.name,
                to_state=new_state.name,
            )
        self._state = new_state
        self._last_state_change = self._now()
        self._success_count = 0
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0

    async def _can_execute(self) -> Result[None, AppError]:
        async with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.OPEN:
                elapsed = (self._now() - self._last_state_change).total_seconds()
                if elapsed < self.config.timeout_seconds:
                    return circuit_open(self.name, origin="circuit_breaker")
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return circuit_open(self.name, origin="circuit_breaker")
                self._half_open_calls += 1

            return Ok(None)

    async def _record_success(self) -> None:
        async with self._lock:
            self._success_count += 1
            if self._state == CircuitState.HALF_OPEN:
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            else:
                self._failure_count = 0

    async def _record_failure(self, error: AppError) -> None:
        if error.code in self.config.excluded_codes:
            return
        async with self._lock:
            self._failure_count += 1
            self._total_failures += 1
            self._last_failure = self._now()
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _map_exception(self, exc: Exception) -> AppError:
        if self.mapper is not None:
            return self.mapper.map_exception(exc)
        return internal_error(f"{self.name}: {exc}", origin="circuit_breaker", cause=exc).error

    async def call(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        """Execute ``fn`` unless the circuit is open.

        Raised exceptions are mapped through the breaker's ErrorMapper and
        counted as failures.
        """
        can_exec = await self._can_execute()
        if can_exec.is_err():
            return can_exec  # type: ignore

        try:
            result = await fn()
        except Exception as e:
            error = self._map_exception(e)
            await self._record_failure(error)
            return Err(error)

        match result:
            case Ok(_):
                await self._record_success()
            case Err(error):
                await self._record_failure(error)

        return result
