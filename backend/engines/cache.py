"""Shared exercise cache.

Generated exercise sets are pooled per ``CacheKey`` so other learners can
reuse them; answer solutions are kept briefly for server-side checking.

The cache is an optimization, not a source of truth: every backend failure is
logged and turned into an empty result or a no-op. Callers never see an
exception from a provider.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import redis.asyncio as redis
from pydantic import ValidationError

from core.config import Settings, StorageConfig
from core.errors import AppError, Err, Ok, Result, StorageErrorMapper
from core.logging import cache_logger
from core.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitStats
from models.exercise import (
    CacheKey,
    CachedExercise,
    CachedSolution,
    now_ms,
    solution_key,
)

log = cache_logger()

T = TypeVar("T")


class ExerciseCache(ABC):
    """Key-partitioned pool of generated exercises plus ephemeral solutions."""

    backend: str = "abstract"

    @abstractmethod
    async def get_cached_exercises(self, key: CacheKey) -> list[CachedExercise]:
        """All exercises under ``key`` in insertion order; ``[]`` on failure."""

    @abstractmethod
    async def set_cached_exercise(self, key: CacheKey, exercise: CachedExercise) -> None:
        """Append ``exercise`` under ``key``."""

    @abstractmethod
    async def invalidate_exercise(self, key: CacheKey, exercise_id: str) -> None:
        """Remove the entry with ``exercise_id``; drop the key once empty."""

    @abstractmethod
    async def invalidate_all_exercises(self, key: CacheKey) -> None:
        ...

    @abstractmethod
    async def set_cached_solution(self, question_id: str, solution: CachedSolution) -> None:
        ...

    @abstractmethod
    async def get_cached_solution(self, question_id: str) -> CachedSolution | None:
        """The stored solution, or None when unknown or expired."""

    @abstractmethod
    async def known_keys(self) -> list[CacheKey]:
        """Keys that currently hold at least one exercise."""

    @abstractmethod
    async def cleanup(self) -> int:
        """Evict expired entries; returns how many were removed."""

    async def close(self) -> None:
        return None

    def circuit_stats(self) -> CircuitStats | None:
        return None

    async def get_exercise_by_id(
        self,
        exercise_id: str,
        keys: Iterable[CacheKey] | None = None,
    ) -> CachedExercise | None:
        """Find a cached exercise by its cache id or exercise-set id."""
        search = list(keys) if keys is not None else await self.known_keys()
        for key in search:
            for cached in await self.get_cached_exercises(key):
                if exercise_id in (cached.id, cached.data.id):
                    return cached
        return None

    async def describe(self, keys: Iterable[CacheKey] | None = None) -> dict[str, int]:
        """Exercise count per key, for diagnostics."""
        search = list(keys) if keys is not None else await self.known_keys()
        return {str(key): len(await self.get_cached_exercises(key)) for key in search}


class InMemoryExerciseCache(ExerciseCache):
    """Process-local fallback used when no remote store is configured.

    Exercises do not expire on their own; ``cleanup`` is run periodically by
    the application to evict old entries. Solutions are checked for expiry on
    read as well.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        exercise_ttl_seconds: int,
        solution_ttl_seconds: int,
        clock: Callable[[], int] = now_ms,
    ):
        self.exercise_ttl_seconds = exercise_ttl_seconds
        self.solution_ttl_seconds = solution_ttl_seconds
        self._clock = clock
        self._exercises: dict[CacheKey, list[CachedExercise]] = {}
        self._solutions: dict[str, tuple[CachedSolution, int]] = {}

    async def get_cached_exercises(self, key: CacheKey) -> list[CachedExercise]:
        return [e.model_copy(deep=True) for e in self._exercises.get(key, [])]

    async def set_cached_exercise(self, key: CacheKey, exercise: CachedExercise) -> None:
        self._exercises.setdefault(key, []).append(exercise.model_copy(deep=True))
        log.debug("exercise_cached", key=str(key), exercise_id=exercise.id, backend=self.backend)

    async def invalidate_exercise(self, key: CacheKey, exercise_id: str) -> None:
        remaining = [
            e for e in self._exercises.get(key, []) if exercise_id not in (e.id, e.data.id)
        ]
        if remaining:
            self._exercises[key] = remaining
        else:
            self._exercises.pop(key, None)

    async def invalidate_all_exercises(self, key: CacheKey) -> None:
        self._exercises.pop(key, None)

    async def set_cached_solution(self, question_id: str, solution: CachedSolution) -> None:
        expires_at = self._clock() + self.solution_ttl_seconds * 1000
        self._solutions[question_id] = (solution.model_copy(deep=True), expires_at)

    async def get_cached_solution(self, question_id: str) -> CachedSolution | None:
        entry = self._solutions.get(question_id)
        if entry is None:
            return None
        solution, expires_at = entry
        if expires_at <= self._clock():
            del self._solutions[question_id]
            return None
        return solution.model_copy(deep=True)

    async def known_keys(self) -> list[CacheKey]:
        return list(self._exercises)

    async def cleanup(self) -> int:
        now = self._clock()
        cutoff = now - self.exercise_ttl_seconds * 1000
        removed = 0

        for key in list(self._exercises):
            fresh = [e for e in self._exercises[key] if e.created_at > cutoff]
            removed += len(self._exercises[key]) - len(fresh)
            if fresh:
                self._exercises[key] = fresh
            else:
                del self._exercises[key]

        expired = [qid for qid, (_, expires_at) in self._solutions.items() if expires_at <= now]
        for qid in expired:
            del self._solutions[qid]
        removed += len(expired)

        if removed:
            log.info("cache_cleanup", backend=self.backend, removed=removed)
        return removed


class RedisExerciseCache(ExerciseCache):
    """Redis-backed pool shared by every process.

    Each key is a Redis list: appends are a server-side ``RPUSH`` in the same
    transaction as the 7-day ``EXPIRE``, so concurrent writers never overwrite
    one another. Solutions are plain strings with a 1-hour expiry.
    """

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        *,
        exercise_ttl_seconds: int,
        solution_ttl_seconds: int,
        breaker: CircuitBreaker | None = None,
    ):
        self._redis = client
        self.exercise_ttl_seconds = exercise_ttl_seconds
        self.solution_ttl_seconds = solution_ttl_seconds
        self._breaker = breaker or CircuitBreaker(
            "redis-cache",
            CircuitBreakerConfig(failure_threshold=5, timeout_seconds=30.0),
            mapper=StorageErrorMapper("redis", origin="cache.redis"),
        )

    def circuit_stats(self) -> CircuitStats:
        return self._breaker.stats

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        pool_size: int,
        exercise_ttl_seconds: int,
        solution_ttl_seconds: int,
    ) -> "RedisExerciseCache":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=pool_size,
        )
        return cls(
            client,
            exercise_ttl_seconds=exercise_ttl_seconds,
            solution_ttl_seconds=solution_ttl_seconds,
        )

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]], default: T) -> T:
        async def attempt() -> Result[T, AppError]:
            return Ok(await fn())

        match await self._breaker.call(attempt):
            case Ok(value):
                return value
            case Err(error):
                log.warning(
                    "cache_backend_unavailable",
                    operation=operation,
                    backend=self.backend,
                    error_code=error.code.name,
                    error=error.message,
                )
                return default

    def _parse_entries(self, key: CacheKey, raw_entries: list[str]) -> list[CachedExercise]:
        exercises = []
        for raw in raw_entries:
            try:
                exercises.append(CachedExercise.model_validate_json(raw))
            except ValidationError as e:
                log.warning("cache_entry_unreadable", key=str(key), error=str(e))
        return exercises

    async def get_cached_exercises(self, key: CacheKey) -> list[CachedExercise]:
        async def read() -> list[CachedExercise]:
            raw_entries = await self._redis.lrange(key.storage_key, 0, -1)
            return self._parse_entries(key, raw_entries)

        return await self._run("get_cached_exercises", read, [])

    async def set_cached_exercise(self, key: CacheKey, exercise: CachedExercise) -> None:
        async def append() -> None:
            pipe = self._redis.pipeline(transaction=True)
            pipe.rpush(key.storage_key, exercise.model_dump_json(by_alias=True, exclude_none=True))
            pipe.expire(key.storage_key, self.exercise_ttl_seconds)
            await pipe.execute()
            log.debug("exercise_cached", key=str(key), exercise_id=exercise.id, backend=self.backend)

        await self._run("set_cached_exercise", append, None)

    async def invalidate_exercise(self, key: CacheKey, exercise_id: str) -> None:
        async def remove() -> None:
            raw_entries = await self._redis.lrange(key.storage_key, 0, -1)
            matching = [raw for raw in raw_entries if exercise_id in _entry_ids(raw)]
            if not matching:
                return
            pipe = self._redis.pipeline(transaction=True)
            for raw in matching:
                pipe.lrem(key.storage_key, 0, raw)
            # Redis deletes a list once its last element is removed
            await pipe.execute()

        await self._run("invalidate_exercise", remove, None)

    async def invalidate_all_exercises(self, key: CacheKey) -> None:
        await self._run("invalidate_all_exercises", lambda: self._redis.delete(key.storage_key), None)

    async def set_cached_solution(self, question_id: str, solution: CachedSolution) -> None:
        await self._run(
            "set_cached_solution",
            lambda: self._redis.set(
                solution_key(question_id),
                solution.model_dump_json(by_alias=True),
                ex=self.solution_ttl_seconds,
            ),
            None,
        )

    async def get_cached_solution(self, question_id: str) -> CachedSolution | None:
        async def read() -> CachedSolution | None:
            raw = await self._redis.get(solution_key(question_id))
            return CachedSolution.model_validate_json(raw) if raw is not None else None

        return await self._run("get_cached_solution", read, None)

    async def known_keys(self) -> list[CacheKey]:
        async def scan() -> list[CacheKey]:
            keys = []
            async for raw in self._redis.scan_iter(match="exercises:*"):
                try:
                    keys.append(CacheKey.parse(raw))
                except ValueError:
                    log.debug("cache_key_ignored", key=raw)
            return keys

        return await self._run("known_keys", scan, [])

    async def cleanup(self) -> int:
        # Expiry is enforced by the server
        return 0

    async def close(self) -> None:
        await self._redis.aclose()


def _entry_ids(raw: str) -> tuple[Any, Any]:
    """(cache id, exercise-set id) of a stored entry without full validation."""
    try:
        entry = json.loads(raw)
        return entry.get("id"), (entry.get("data") or {}).get("id")
    except (json.JSONDecodeError, AttributeError):
        return None, None


def create_cache_provider(storage_config: StorageConfig, settings: Settings) -> ExerciseCache:
    """Build the provider for ``storage_config``; called once at startup."""
    match storage_config:
        case StorageConfig.REMOTE_KV:
            cache: ExerciseCache = RedisExerciseCache.from_url(
                settings.REDIS_URL,
                pool_size=settings.REDIS_POOL_SIZE,
                exercise_ttl_seconds=settings.EXERCISE_CACHE_TTL_SECONDS,
                solution_ttl_seconds=settings.SOLUTION_CACHE_TTL_SECONDS,
            )
        case StorageConfig.IN_MEMORY:
            cache = InMemoryExerciseCache(
                exercise_ttl_seconds=settings.EXERCISE_CACHE_TTL_SECONDS,
                solution_ttl_seconds=settings.SOLUTION_CACHE_TTL_SECONDS,
            )
        case _:
            raise ValueError(f"Unknown storage config: {storage_config}")

    log.info("cache_provider_created", backend=cache.backend)
    return cache


async def run_periodic_cleanup(cache: ExerciseCache, interval_seconds: float) -> None:
    """Sweep expired cache entries until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cache.cleanup()
        except Exception:
            log.exception("cache_cleanup_failed", backend=cache.backend)
