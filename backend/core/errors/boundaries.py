"""Error mappers applied at module boundaries.

Each storage adapter exposes a single error type at its edge: whatever the
driver raises (Redis, SQLAlchemy, filesystem, JSON decoding) becomes a
``BackendUnavailable`` AppError tagged with the adapter's origin.
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .types import AppError, ErrorCode, ErrorContext, Err, Ok, Result
from .builders import (
    backend_unavailable,
    generation_failed,
    internal_error,
    transaction_failed,
)

T = TypeVar("T")


class ErrorMapper(ABC, Generic[T]):
    """Abstract base for error mappers at module boundaries."""

    @abstractmethod
    def map_exception(self, exc: Exception) -> AppError:
        """Map a raised exception to the boundary's error."""

    def map_error(self, error: AppError) -> AppError:
        return error

    def map_result(self, result: Result[T, AppError]) -> Result[T, AppError]:
        match result:
            case Ok(_):
                return result
            case Err(e):
                return Err(self.map_error(e))


class StorageErrorMapper(ErrorMapper[T]):
    """Maps cache/ledger driver exceptions to BackendUnavailable."""

    def __init__(self, backend: str, origin: str | None = None):
        self.backend = backend
        self.origin = origin or f"storage.{backend}"

    def map_error(self, error: AppError) -> AppError:
        if 4000 <= error.code.value < 5000:
            return error
        return error.with_context(origin=self.origin)

    def map_exception(self, exc: Exception) -> AppError:
        if isinstance(exc, SQLAlchemyError) and not _is_connection_error(exc):
            return transaction_failed(str(exc), origin=self.origin, cause=exc).error
        if isinstance(exc, (RedisError, SQLAlchemyError, OSError, asyncio.TimeoutError)):
            return backend_unavailable(self.backend, str(exc), origin=self.origin, cause=exc).error
        if isinstance(exc, (json.JSONDecodeError, PydanticValidationError, TypeError, ValueError)):
            return backend_unavailable(
                self.backend, f"unreadable payload: {exc}", origin=self.origin, cause=exc
            ).error
        return internal_error(f"Storage error in {self.backend}: {exc}", origin=self.origin, cause=exc).error


class GenerationErrorMapper(ErrorMapper[T]):
    """Maps anything the generation collaborator raises to GenerationFailed."""

    def __init__(self, origin: str = "generation"):
        self.origin = origin

    def map_error(self, error: AppError) -> AppError:
        if error.code is ErrorCode.E1015_GENERATION_FAILED:
            return error
        return AppError(
            code=ErrorCode.E1015_GENERATION_FAILED,
            message=f"Exercise generation failed: {error.message}",
            context=ErrorContext(
                correlation_id=error.context.correlation_id,
                timestamp=error.context.timestamp,
                origin=self.origin,
            ),
            metadata={**error.metadata, "cause_code": error.code.name},
            cause=error.cause,
        )

    def map_exception(self, exc: Exception) -> AppError:
        return generation_failed(str(exc) or type(exc).__name__, origin=self.origin, cause=exc).error


def _is_connection_error(exc: SQLAlchemyError) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return "connect" in message or "unable to open" in message

