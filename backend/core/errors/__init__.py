"""Result-based error handling.

Domain operations return ``Result[T, AppError]``; the HTTP layer converts an
``Err`` into a structured response with ``raise_result``.

Usage:
    from core.errors import Ok, Result, AppError, not_found

    async def find_exercise(exercise_id: str) -> Result[CachedExercise, AppError]:
        exercise = await cache.get_exercise_by_id(exercise_id, keys)
        if exercise is None:
            return not_found("Exercise", exercise_id, origin="exercises")
        return Ok(exercise)
"""
from .types import (
    Result,
    Ok,
    Err,
    AppError,
    ErrorCode,
    ErrorContext,
)

from .builders import (
    # External (E1xxx)
    timeout_error,
    circuit_open,
    generation_failed,
    # Validation / configuration (E2xxx)
    validation_error,
    required_field,
    configuration_error,
    unsupported_exercise_type,
    # Storage (E4xxx)
    backend_unavailable,
    transaction_failed,
    not_found,
    solution_not_found,
    # Internal (E9xxx)
    internal_error,
)

from .boundaries import (
    ErrorMapper,
    StorageErrorMapper,
    GenerationErrorMapper,
)

from .handlers import (
    AppErrorException,
    register_error_handlers,
    result_to_response,
    raise_result,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "AppError",
    "ErrorCode",
    "ErrorContext",
    "timeout_error",
    "circuit_open",
    "generation_failed",
    "validation_error",
    "required_field",
    "configuration_error",
    "unsupported_exercise_type",
    "backend_unavailable",
    "transaction_failed",
    "not_found",
    "solution_not_found",
    "internal_error",
    "ErrorMapper",
    "StorageErrorMapper",
    "GenerationErrorMapper",
    "AppErrorException",
    "register_error_handlers",
    "result_to_response",
    "raise_result",
]
