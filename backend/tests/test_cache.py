"""Tests for the exercise cache providers."""
import asyncio
import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeGenerator, sentence_set
from core.config import Settings, StorageConfig
from core.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState
from core.errors import StorageErrorMapper
from core.security import UserIdentity
from engines.cache import (
    InMemoryExerciseCache,
    RedisExerciseCache,
    create_cache_provider,
)
from engines.selector import ExerciseSelector
from models.exercise import CacheKey, CachedExercise, CachedSolution, CefrLevel, ExerciseType

KEY = CacheKey.for_request(ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1)
OTHER_KEY = CacheKey.for_request(ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, "food")


def cached(exercise_id: str, created_at: int = 0) -> CachedExercise:
    return CachedExercise(
        id=f"cache-{exercise_id}",
        exercise_type=ExerciseType.RELATIVE_PRONOUNS,
        cefr_level=CefrLevel.A1,
        data=sentence_set(exercise_id),
        created_at=created_at,
    )


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops = []

    def rpush(self, key, value):
        self._ops.append(("rpush", key, value))

    def expire(self, key, seconds):
        self._ops.append(("expire", key, seconds))

    def lrem(self, key, count, value):
        self._ops.append(("lrem", key, value))

    async def execute(self):
        for op, key, arg in self._ops:
            if op == "rpush":
                self._redis.lists.setdefault(key, []).append(arg)
            elif op == "expire":
                self._redis.ttls[key] = arg
            elif op == "lrem":
                remaining = [v for v in self._redis.lists.get(key, []) if v != arg]
                if remaining:
                    self._redis.lists[key] = remaining
                else:
                    self._redis.lists.pop(key, None)
        self._ops = []


class FakeRedis:
    """In-process stand-in for the handful of redis.asyncio calls the cache makes."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.strings: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def lrange(self, key, start, end):
        return list(self.lists.get(key, []))

    async def delete(self, key):
        return int(self.lists.pop(key, None) is not None)

    async def set(self, key, value, ex=None):
        self.strings[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        return self.strings.get(key)

    async def scan_iter(self, match="*"):
        for key in list(self.lists):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def lrange(self, key, start, end):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def get(self, key):
        self.calls += 1
        raise RedisConnectionError("connection refused")


class FailingPipeline(FakePipeline):
    async def execute(self):
        self._redis.calls += 1
        raise RedisConnectionError("connection reset by peer")


class WriteBrokenRedis(FakeRedis):
    """Reads succeed, every write fails."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def pipeline(self, transaction=True):
        return FailingPipeline(self)

    async def set(self, key, value, ex=None):
        self.calls += 1
        raise RedisConnectionError("connection reset by peer")


class RaisingCache(InMemoryExerciseCache):
    """A provider that breaks its never-raise contract on writes."""

    async def set_cached_exercise(self, key, exercise):
        raise RuntimeError("disk full")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis) -> RedisExerciseCache:
    return RedisExerciseCache(fake_redis, exercise_ttl_seconds=604800, solution_ttl_seconds=3600)


@pytest.fixture(params=["memory", "redis"])
def cache(request, memory_cache, redis_cache):
    return memory_cache if request.param == "memory" else redis_cache


class TestCacheKey:
    def test_rendering(self):
        assert str(KEY) == "relativePronouns:A1:default"
        assert KEY.storage_key == "exercises:relativePronouns:A1:default"

    def test_blank_theme_is_default(self):
        assert CacheKey.for_request(ExerciseType.VERB_TENSES, CefrLevel.B1_1, "  ") == \
            CacheKey.for_request(ExerciseType.VERB_TENSES, CefrLevel.B1_1)

    def test_parse_inverts_rendering(self):
        assert CacheKey.parse(OTHER_KEY.storage_key) == OTHER_KEY


class TestExerciseCacheContract:
    """Behaviour shared by both providers."""

    async def test_empty_key(self, cache):
        assert await cache.get_cached_exercises(KEY) == []

    async def test_set_then_get_preserves_order(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.set_cached_exercise(KEY, cached("b"))

        entries = await cache.get_cached_exercises(KEY)
        assert [e.data.id for e in entries] == ["a", "b"]
        assert entries[0] == cached("a")

    async def test_concurrent_appends_are_all_kept(self, cache):
        await asyncio.gather(*(cache.set_cached_exercise(KEY, cached(f"e{i}")) for i in range(20)))

        entries = await cache.get_cached_exercises(KEY)
        assert sorted(e.data.id for e in entries) == sorted(f"e{i}" for i in range(20))

    async def test_keys_are_isolated(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        assert await cache.get_cached_exercises(OTHER_KEY) == []

    async def test_invalidate_by_data_id(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.set_cached_exercise(KEY, cached("b"))

        await cache.invalidate_exercise(KEY, "a")
        assert [e.data.id for e in await cache.get_cached_exercises(KEY)] == ["b"]

    async def test_invalidate_by_cache_id_drops_empty_key(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.invalidate_exercise(KEY, "cache-a")

        assert await cache.get_cached_exercises(KEY) == []
        assert KEY not in await cache.known_keys()

    async def test_invalidate_all(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.set_cached_exercise(OTHER_KEY, cached("b"))

        await cache.invalidate_all_exercises(KEY)
        assert await cache.get_cached_exercises(KEY) == []
        assert len(await cache.get_cached_exercises(OTHER_KEY)) == 1

    async def test_solutions(self, cache):
        solution = CachedSolution(correct_answer=["koji"], explanation="Masculine nominative.")
        await cache.set_cached_solution("q1", solution)

        assert await cache.get_cached_solution("q1") == solution
        assert await cache.get_cached_solution("missing") is None

    async def test_lookup_by_id_and_describe(self, cache):
        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.set_cached_exercise(OTHER_KEY, cached("b"))

        found = await cache.get_exercise_by_id("b")
        assert found is not None and found.id == "cache-b"
        assert (await cache.get_exercise_by_id("cache-a")).data.id == "a"
        assert await cache.get_exercise_by_id("nope") is None
        assert await cache.describe() == {str(KEY): 1, str(OTHER_KEY): 1}


class TestInMemoryCache:
    def test_has_no_circuit(self, memory_cache):
        assert memory_cache.circuit_stats() is None

    async def test_returns_copies(self, memory_cache):
        await memory_cache.set_cached_exercise(KEY, cached("a"))
        entries = await memory_cache.get_cached_exercises(KEY)
        entries[0].data.exercises.clear()

        assert len((await memory_cache.get_cached_exercises(KEY))[0].data.exercises) == 3

    async def test_cleanup_evicts_old_exercises_and_expired_solutions(self, memory_cache, clock):
        await memory_cache.set_cached_exercise(KEY, cached("old", created_at=clock.now))
        await memory_cache.set_cached_solution("q1", CachedSolution(correct_answer=["da"], explanation="x"))

        clock.advance(days=6)
        await memory_cache.set_cached_exercise(KEY, cached("new", created_at=clock.now))
        clock.advance(days=2)

        assert await memory_cache.cleanup() == 2
        assert [e.data.id for e in await memory_cache.get_cached_exercises(KEY)] == ["new"]
        assert await memory_cache.get_cached_solution("q1") is None

    async def test_solution_expires_on_read(self, memory_cache, clock):
        await memory_cache.set_cached_solution("q1", CachedSolution(correct_answer=["da"], explanation="x"))
        clock.advance(seconds=3601)
        assert await memory_cache.get_cached_solution("q1") is None


class TestRedisCache:
    async def test_append_sets_expiry(self, redis_cache, fake_redis):
        await redis_cache.set_cached_exercise(KEY, cached("a"))

        assert len(fake_redis.lists[KEY.storage_key]) == 1
        assert fake_redis.ttls[KEY.storage_key] == 604800

    async def test_entries_stored_in_camel_case(self, redis_cache, fake_redis):
        await redis_cache.set_cached_exercise(KEY, cached("a"))
        raw = fake_redis.lists[KEY.storage_key][0]
        assert '"exerciseType":"relativePronouns"' in raw
        assert '"createdAt"' in raw

    async def test_solution_ttl(self, redis_cache, fake_redis):
        await redis_cache.set_cached_solution("q1", CachedSolution(correct_answer=["da"], explanation="x"))
        assert fake_redis.ttls["solution:q1"] == 3600

    async def test_unreadable_entries_skipped(self, redis_cache, fake_redis):
        await redis_cache.set_cached_exercise(KEY, cached("a"))
        fake_redis.lists[KEY.storage_key].insert(0, "{not json")

        assert [e.data.id for e in await redis_cache.get_cached_exercises(KEY)] == ["a"]

    async def test_cleanup_is_noop(self, redis_cache):
        assert await redis_cache.cleanup() == 0

    async def test_close(self, redis_cache, fake_redis):
        await redis_cache.close()
        assert fake_redis.closed

    async def test_failures_degrade_to_empty(self):
        broken = BrokenRedis()
        cache = RedisExerciseCache(broken, exercise_ttl_seconds=60, solution_ttl_seconds=60)

        assert await cache.get_cached_exercises(KEY) == []
        assert await cache.get_cached_solution("q1") is None

    async def test_breaker_opens_and_skips_backend(self):
        broken = BrokenRedis()
        breaker = CircuitBreaker(
            "test-redis",
            CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60.0),
            mapper=StorageErrorMapper("redis"),
        )
        cache = RedisExerciseCache(broken, exercise_ttl_seconds=60, solution_ttl_seconds=60, breaker=breaker)

        for _ in range(4):
            assert await cache.get_cached_exercises(KEY) == []

        assert breaker.state is CircuitState.OPEN
        assert broken.calls == 2
        assert cache.circuit_stats().total_failures == 2


    async def test_write_failures_degrade_to_noop(self):
        broken = WriteBrokenRedis()
        cache = RedisExerciseCache(broken, exercise_ttl_seconds=60, solution_ttl_seconds=60)

        await cache.set_cached_exercise(KEY, cached("a"))
        await cache.set_cached_solution("q1", CachedSolution(correct_answer=["koji"], explanation="x"))

        assert broken.calls == 2
        assert await cache.get_cached_exercises(KEY) == []


class TestFailedWriteBack:
    async def test_generated_exercise_served_when_redis_writes_fail(self, empty_repository, ledger):
        broken = WriteBrokenRedis()
        cache = RedisExerciseCache(broken, exercise_ttl_seconds=60, solution_ttl_seconds=60)
        selector = ExerciseSelector(empty_repository, cache, ledger, FakeGenerator())

        selected = (await selector.select_exercise(
            ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, identity=UserIdentity(device_id="d1"),
        )).unwrap()
        assert selected.source == "generated"

        await selector.wait_for_write_backs()
        assert broken.calls > 0
        assert await cache.get_cached_exercises(KEY) == []

    async def test_raising_write_back_is_contained(self, empty_repository, ledger, clock):
        cache = RaisingCache(exercise_ttl_seconds=60, solution_ttl_seconds=60, clock=clock)
        selector = ExerciseSelector(empty_repository, cache, ledger, FakeGenerator())

        selected = (await selector.select_exercise(
            ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, identity=UserIdentity(device_id="d1"),
        )).unwrap()
        assert selected.source == "generated"

        await selector.wait_for_write_backs()
        assert not selector._write_backs

class TestFactory:
    def test_in_memory(self):
        cache = create_cache_provider(StorageConfig.IN_MEMORY, Settings(REDIS_URL=""))
        assert isinstance(cache, InMemoryExerciseCache)

    def test_remote(self):
        settings = Settings(REDIS_URL="redis://localhost:6379/0")
        assert settings.storage_config() is StorageConfig.REMOTE_KV
        cache = create_cache_provider(settings.storage_config(), settings)
        assert isinstance(cache, RedisExerciseCache)
