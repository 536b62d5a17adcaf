"""Error builders for the exercise service's failure taxonomy.

Each builder returns ``Err(AppError)`` with the right code so call sites read
``return generation_failed(...)`` rather than assembling errors by hand.
"""
from .types import AppError, ErrorCode, ErrorContext, Err


def _err(
    code: ErrorCode,
    message: str,
    *,
    origin: str = "",
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata={k: v for k, v in metadata.items() if v is not None},
        cause=cause,
    ))


# =============================================================================
# External collaborators (E1xxx)
# =============================================================================

def timeout_error(operation: str, timeout_seconds: float, origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E1002_TIMEOUT,
        f"Operation '{operation}' timed out after {timeout_seconds}s",
        origin=origin,
        operation=operation,
        timeout_seconds=timeout_seconds,
    )


def circuit_open(service: str, origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E1012_CIRCUIT_OPEN,
        f"Circuit breaker open for '{service}'",
        origin=origin,
        service=service,
    )


def generation_failed(
    reason: str,
    *,
    exercise_type: str | None = None,
    cefr_level: str | None = None,
    theme: str | None = None,
    origin: str = "",
    cause: Exception | None = None,
) -> Err[AppError]:
    """The generation collaborator failed or did not answer in time."""
    return _err(
        ErrorCode.E1015_GENERATION_FAILED,
        f"Exercise generation failed: {reason}",
        origin=origin,
        cause=cause,
        exercise_type=exercise_type,
        cefr_level=cefr_level,
        theme=theme,
    )


# =============================================================================
# Validation / configuration (E2xxx)
# =============================================================================

def validation_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E2000_VALIDATION_GENERIC,
    field: str | None = None,
    origin: str = "",
    **metadata,
) -> Err[AppError]:
    """Malformed request shape; rejected before any store is touched."""
    return _err(code, message, origin=origin, field=field, **metadata)


def required_field(field: str, origin: str = "") -> Err[AppError]:
    return validation_error(
        f"Field '{field}' is required",
        code=ErrorCode.E2001_REQUIRED_FIELD_MISSING,
        field=field,
        origin=origin,
    )


def configuration_error(
    message: str,
    *,
    exercise_type: str | None = None,
    worksheet_id: str | None = None,
    origin: str = "",
    cause: Exception | None = None,
) -> Err[AppError]:
    """Unsupported exercise type or malformed worksheet data."""
    code = (
        ErrorCode.E2031_MALFORMED_WORKSHEET
        if worksheet_id is not None or cause is not None
        else ErrorCode.E2030_UNSUPPORTED_EXERCISE_TYPE
    )
    return _err(
        code,
        message,
        origin=origin,
        cause=cause,
        exercise_type=exercise_type,
        worksheet_id=worksheet_id,
    )


def unsupported_exercise_type(exercise_type: str, origin: str = "") -> Err[AppError]:
    return configuration_error(
        f"Unsupported exercise type: {exercise_type}",
        exercise_type=exercise_type,
        origin=origin,
    )


# =============================================================================
# Storage (E4xxx)
# =============================================================================

def backend_unavailable(
    backend: str,
    reason: str = "",
    *,
    origin: str = "",
    cause: Exception | None = None,
) -> Err[AppError]:
    """A cache or ledger store could not be reached. Never shown to end users."""
    msg = f"Storage backend '{backend}' unavailable"
    if reason:
        msg += f": {reason}"
    return _err(ErrorCode.E4005_BACKEND_UNAVAILABLE, msg, origin=origin, cause=cause, backend=backend)


def transaction_failed(reason: str, origin: str = "", cause: Exception | None = None) -> Err[AppError]:
    return _err(ErrorCode.E4003_TRANSACTION_FAILED, f"Transaction failed: {reason}", origin=origin, cause=cause)


def not_found(entity: str, identifier: object | None = None, origin: str = "") -> Err[AppError]:
    msg = f"{entity} not found" if identifier is None else f"{entity} '{identifier}' not found"
    return _err(
        ErrorCode.E4010_NOT_FOUND,
        msg,
        origin=origin,
        entity=entity,
        identifier=str(identifier) if identifier is not None else None,
    )


def solution_not_found(question_id: str, origin: str = "") -> Err[AppError]:
    """Answer check for a question whose cached solution expired or never existed."""
    return _err(
        ErrorCode.E4010_NOT_FOUND,
        "Question not found or expired",
        origin=origin,
        entity="solution",
        identifier=question_id,
    )


# =============================================================================
# Internal (E9xxx)
# =============================================================================

def internal_error(message: str, origin: str = "", cause: Exception | None = None) -> Err[AppError]:
    return _err(ErrorCode.E9000_INTERNAL_GENERIC, message, origin=origin, cause=cause)
