"""Result types and the application error taxonomy.

Domain operations return ``Ok(value)`` or ``Err(AppError)`` instead of raising,
so callers must decide explicitly what a failure means for them. Storage
failures are converted to safe defaults at the cache/ledger boundary; domain
failures travel up to the HTTP layer as typed errors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Generic, NoReturn, TypeVar, Union, final
from uuid import uuid4

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound="AppError")


class ErrorCode(Enum):
    """Hierarchical error code taxonomy.

    E1xxx: External collaborators (generation, network)
    E2xxx: Validation and configuration of requests/catalog data
    E4xxx: Storage (cache, ledger) and lookups
    E9xxx: Internal/Unknown errors
    """
    # External (E1xxx)
    E1000_NETWORK_GENERIC = 1000
    E1002_TIMEOUT = 1002
    E1010_EXTERNAL_SERVICE_UNAVAILABLE = 1010
    E1012_CIRCUIT_OPEN = 1012
    E1015_GENERATION_FAILED = 1015

    # Validation / configuration (E2xxx)
    E2000_VALIDATION_GENERIC = 2000
    E2001_REQUIRED_FIELD_MISSING = 2001
    E2002_INVALID_FORMAT = 2002
    E2030_UNSUPPORTED_EXERCISE_TYPE = 2030
    E2031_MALFORMED_WORKSHEET = 2031

    # Storage (E4xxx)
    E4000_STORAGE_GENERIC = 4000
    E4003_TRANSACTION_FAILED = 4003
    E4005_BACKEND_UNAVAILABLE = 4005
    E4010_NOT_FOUND = 4010

    # Internal (E9xxx)
    E9000_INTERNAL_GENERIC = 9000
    E9001_UNEXPECTED_ERROR = 9001

    @property
    def http_status(self) -> int:
        """Map error code to an HTTP status."""
        code = self.value
        if code == 1015:
            return 502
        if 1000 <= code < 2000:
            return 503
        if code == 2031:
            return 422
        if 2000 <= code < 3000:
            return 400
        if code == 4010:
            return 404
        if 4000 <= code < 5000:
            return 503
        return 500

    @property
    def category(self) -> str:
        code = self.value
        if 1000 <= code < 2000:
            return "external"
        if 2000 <= code < 3000:
            return "validation"
        if 4000 <= code < 5000:
            return "storage"
        return "internal"


@dataclass(frozen=True, slots=True)
class ErrorContext:
    """Immutable context for error tracing."""
    correlation_id: str = field(default_factory=lambda: str(uuid4())[:8])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    origin: str = ""
    user_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True, slots=True)
class AppError:
    """Application error carrying a taxonomy code, message, metadata and cause."""
    code: ErrorCode
    message: str
    context: ErrorContext = field(default_factory=ErrorContext)
    metadata: dict = field(default_factory=dict)
    cause: Exception | None = None

    @property
    def error_id(self) -> str:
        return f"{self.code.name}:{self.context.correlation_id}"

    def with_context(self, **kwargs) -> AppError:
        """Create new error with updated context fields."""
        ctx = self.context
        new_ctx = ErrorContext(
            correlation_id=kwargs.get("correlation_id") or ctx.correlation_id,
            timestamp=ctx.timestamp,
            origin=kwargs.get("origin", ctx.origin),
            user_id=kwargs.get("user_id", ctx.user_id),
            request_id=kwargs.get("request_id", ctx.request_id),
        )
        return AppError(
            code=self.code,
            message=self.message,
            context=new_ctx,
            metadata=self.metadata,
            cause=self.cause,
        )

    def with_metadata(self, **kwargs) -> AppError:
        return AppError(
            code=self.code,
            message=self.message,
            context=self.context,
            metadata={**self.metadata, **kwargs},
            cause=self.cause,
        )

    def to_dict(self) -> dict:
        """Serialize error for API responses."""
        return {
            "error": {
                "code": self.code.name,
                "code_num": self.code.value,
                "message": self.message,
                "category": self.code.category,
                "correlation_id": self.context.correlation_id,
                "timestamp": self.context.timestamp.isoformat(),
                "metadata": self.metadata,
            }
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (correlation_id={self.context.correlation_id})"


@final
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Success variant of Result."""
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U, AppError]:
        return Ok(f(self.value))


@final
@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failure variant of Result."""
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error

    def map(self, f: Callable[[T], U]) -> Result[U, E]:
        return self  # type: ignore


Result = Union[Ok[T], Err[E]]

