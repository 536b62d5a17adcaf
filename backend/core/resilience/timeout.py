"""Timeout policy for calls to slow collaborators."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

from core.errors import AppError, Result, timeout_error

T = TypeVar("T")


class TimeoutPolicy(Generic[T]):
    """Timeout wrapper for async operations returning a Result.

    Usage:
        policy = TimeoutPolicy(timeout_seconds=45.0, operation_name="generate_exercise")
        result = await policy.execute(lambda: generator.generate(...))
    """

    def __init__(self, timeout_seconds: float, operation_name: str = "operation"):
        self.timeout_seconds = timeout_seconds
        self.operation_name = operation_name

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return timeout_error(
                self.operation_name,
                self.timeout_seconds,
                origin="timeout_policy",
            )
