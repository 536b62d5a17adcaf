"""Exercise selection.

For a (type, level, theme) request the selector serves, in order:

1. the next static worksheet the learner has not completed,
2. the oldest pooled exercise the learner has not completed,
3. a freshly generated exercise, which is added to the pool in the
   background so other learners can reuse it.

A learner never gets an exercise back that their ledger already lists as
completed. Cache and ledger outages degrade to "nothing cached" and "nothing
completed"; only a failed generation surfaces as an error.
"""
import asyncio
from dataclasses import dataclass
from typing import Literal
from uuid import uuid4

from core.config import InvalidationPolicy
from core.errors import (
    AppError,
    Err,
    GenerationErrorMapper,
    Ok,
    Result,
    solution_not_found,
    validation_error,
)
from core.logging import selector_logger
from core.resilience import TimeoutPolicy
from core.security import UserIdentity
from engines.answers import AnswerCheck, check_answer, is_static_exercise_id
from engines.cache import ExerciseCache
from engines.generation import ExerciseGenerator
from engines.progress import PerformanceStats, UserProgressLedger
from engines.worksheets import StaticProgress, StaticWorksheetRepository
from models.exercise import (
    CacheKey,
    CachedExercise,
    CachedSolution,
    CefrLevel,
    CompletedExerciseRecord,
    ExerciseSet,
    ExerciseType,
    Score,
    DEFAULT_THEME,
    now_ms,
)

log = selector_logger()

Source = Literal["static", "cache", "generated"]


@dataclass(frozen=True, slots=True)
class SelectedExercise:
    exercise: ExerciseSet
    source: Source
    cache_key: CacheKey
    title: str | None = None

    def to_dict(self) -> dict:
        return {
            "exercise": self.exercise.to_json_dict(),
            "source": self.source,
            "cacheKey": str(self.cache_key),
            "title": self.title,
        }


@dataclass(frozen=True, slots=True)
class AnswerVerdict:
    """Result of checking one answer against its cached solution."""
    question_id: str
    check: AnswerCheck
    correct_answer: list[str]
    explanation: str

    def to_dict(self) -> dict:
        result = {"questionId": self.question_id, **self.check.to_dict(), "explanation": self.explanation}
        if not self.check.correct:
            result["correctAnswer"] = self.correct_answer
        return result


def _coerce(exercise_type, cefr_level) -> Result[tuple[ExerciseType, CefrLevel], AppError]:
    try:
        exercise_type = ExerciseType(exercise_type)
    except ValueError:
        return validation_error(f"Unknown exercise type: {exercise_type}", field="exerciseType", origin="selector")
    try:
        cefr_level = CefrLevel(cefr_level)
    except ValueError:
        return validation_error(f"Unknown CEFR level: {cefr_level}", field="cefrLevel", origin="selector")
    return Ok((exercise_type, cefr_level))


class ExerciseSelector:
    """Decides which exercise a learner gets next and records how it went."""

    def __init__(
        self,
        repository: StaticWorksheetRepository,
        cache: ExerciseCache,
        ledger: UserProgressLedger,
        generator: ExerciseGenerator,
        *,
        generation_timeout_seconds: float = 45.0,
        invalidation_policy: InvalidationPolicy = InvalidationPolicy.PER_USER_FILTER,
    ):
        self.repository = repository
        self.cache = cache
        self.ledger = ledger
        self.generator = generator
        self.invalidation_policy = invalidation_policy
        self._timeout = TimeoutPolicy(generation_timeout_seconds, operation_name="generate_exercise")
        self._generation_errors = GenerationErrorMapper(origin="selector.generation")
        self._write_backs: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def select_exercise(
        self,
        exercise_type: ExerciseType | str,
        cefr_level: CefrLevel | str,
        theme: str | None = None,
        identity: UserIdentity | None = None,
        force_regenerate: bool = False,
        api_key: str | None = None,
    ) -> Result[SelectedExercise, AppError]:
        coerced = _coerce(exercise_type, cefr_level)
        if coerced.is_err():
            return coerced
        exercise_type, cefr_level = coerced.unwrap()
        identity = identity or UserIdentity()
        key = CacheKey.for_request(exercise_type, cefr_level, theme)

        completed = await self.ledger.get_completed_exercises(exercise_type, cefr_level, theme, identity)

        static = await self._from_catalog(exercise_type, cefr_level, key, completed)
        if static.is_err() or static.unwrap() is not None:
            return static.map(lambda selected: self._served(selected, identity))

        if not force_regenerate:
            cached = await self._from_cache(key, completed)
            if cached is not None:
                return Ok(self._served(cached, identity))

        generated = await self._generate(key, api_key)
        return generated.map(lambda selected: self._served(selected, identity))

    async def _from_catalog(
        self,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        key: CacheKey,
        completed: list[str],
    ) -> Result[SelectedExercise | None, AppError]:
        found = self.repository.next_unfinished(exercise_type, cefr_level, completed)
        if found.is_err():
            return found
        worksheet = found.unwrap()
        if worksheet is None:
            return Ok(None)

        converted = self.repository.to_exercise_set(worksheet, exercise_type)
        if converted.is_err():
            return converted
        exercise_set = converted.unwrap()
        self._schedule(self._store_solutions(exercise_set), name=f"solutions:{exercise_set.id}")
        return Ok(SelectedExercise(exercise_set, "static", key, title=worksheet.title))

    async def _from_cache(self, key: CacheKey, completed: list[str]) -> SelectedExercise | None:
        done = set(completed)
        for cached in await self.cache.get_cached_exercises(key):
            if cached.data.id in done or cached.id in done:
                continue
            self._schedule(self._store_solutions(cached.data), name=f"solutions:{cached.data.id}")
            return SelectedExercise(cached.data, "cache", key)
        return None

    async def _generate(self, key: CacheKey, api_key: str | None = None) -> Result[SelectedExercise, AppError]:
        async def attempt() -> Result[ExerciseSet, AppError]:
            try:
                return Ok(await self.generator.generate(
                    key.exercise_type, key.cefr_level, _theme_of(key), api_key=api_key,
                ))
            except Exception as e:
                return Err(self._generation_errors.map_exception(e))

        result = self._generation_errors.map_result(await self._timeout.execute(attempt))
        if result.is_err():
            error = result.unwrap_err().with_metadata(
                exercise_type=key.exercise_type.value,
                cefr_level=key.cefr_level.value,
                theme=key.theme,
            )
            log.error("exercise_generation_failed", cache_key=str(key), error=str(error))
            return Err(error)

        exercise_set = result.unwrap()
        cached = CachedExercise(
            id=str(uuid4()),
            exercise_type=key.exercise_type,
            cefr_level=key.cefr_level,
            theme=_theme_of(key),
            data=exercise_set,
            created_at=now_ms(),
        )
        self._schedule(self._write_back(key, cached), name=f"write-back:{cached.id}")
        return Ok(SelectedExercise(exercise_set, "generated", key))

    def _served(self, selected: SelectedExercise, identity: UserIdentity) -> SelectedExercise:
        log.info(
            "exercise_selected",
            source=selected.source,
            cache_key=str(selected.cache_key),
            exercise_id=selected.exercise.id,
            user_id=identity.user_id,
        )
        return selected

    # -------------------------------------------------------------------------
    # Background write-back
    # -------------------------------------------------------------------------

    def _schedule(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._write_backs.add(task)
        task.add_done_callback(self._write_back_done)

    def _write_back_done(self, task: asyncio.Task) -> None:
        self._write_backs.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("write_back_failed", task=task.get_name(), error=str(exc))

    async def _write_back(self, key: CacheKey, cached: CachedExercise) -> None:
        await self.cache.set_cached_exercise(key, cached)
        await self._store_solutions(cached.data)
        log.debug("exercise_cached", cache_key=str(key), exercise_id=cached.data.id)

    async def _store_solutions(self, exercise_set: ExerciseSet) -> None:
        for item in exercise_set.items():
            await self.cache.set_cached_solution(
                item.id,
                CachedSolution(correct_answer=item.correct_answer, explanation=item.explanation),
            )

    async def wait_for_write_backs(self) -> None:
        """Wait for every pending background write to finish."""
        while self._write_backs:
            await asyncio.gather(*list(self._write_backs), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Answers and progress
    # -------------------------------------------------------------------------

    async def check_answer(self, question_id: str, user_answer: str) -> Result[AnswerVerdict, AppError]:
        solution = await self.cache.get_cached_solution(question_id)
        if solution is None:
            return solution_not_found(question_id, origin="selector")
        return Ok(AnswerVerdict(
            question_id=question_id,
            check=check_answer(user_answer, solution.correct_answer),
            correct_answer=solution.correct_answer,
            explanation=solution.explanation,
        ))

    async def get_exercise(self, exercise_id: str) -> CachedExercise | None:
        return await self.cache.get_exercise_by_id(exercise_id)

    async def record_completion(
        self,
        exercise_id: str,
        exercise_type: ExerciseType | str,
        cefr_level: CefrLevel | str,
        theme: str | None = None,
        score: Score | None = None,
        title: str | None = None,
        identity: UserIdentity | None = None,
    ) -> Result[CompletedExerciseRecord, AppError]:
        coerced = _coerce(exercise_type, cefr_level)
        if coerced.is_err():
            return coerced
        exercise_type, cefr_level = coerced.unwrap()

        record = await self.ledger.mark_exercise_completed(
            exercise_id, exercise_type, cefr_level, theme, score, title, identity,
        )
        if (
            self.invalidation_policy is InvalidationPolicy.EAGER
            and not is_static_exercise_id(exercise_id, exercise_type)
        ):
            await self.cache.invalidate_exercise(
                CacheKey.for_request(exercise_type, cefr_level, theme), exercise_id,
            )
        return Ok(record)

    async def get_progress(
        self,
        exercise_type: ExerciseType | str,
        cefr_level: CefrLevel | str,
        theme: str | None = None,
        identity: UserIdentity | None = None,
    ) -> Result[StaticProgress, AppError]:
        """Static worksheet progress, e.g. ``2/5`` at this type and level."""
        coerced = _coerce(exercise_type, cefr_level)
        if coerced.is_err():
            return coerced
        exercise_type, cefr_level = coerced.unwrap()
        completed = await self.ledger.get_completed_exercises(exercise_type, cefr_level, theme, identity)
        return self.repository.progress(exercise_type, cefr_level, completed)

    async def get_performance_stats(
        self,
        identity: UserIdentity | None = None,
        exercise_type: ExerciseType | str | None = None,
    ) -> Result[PerformanceStats, AppError]:
        if exercise_type is not None:
            try:
                exercise_type = ExerciseType(exercise_type)
            except ValueError:
                return validation_error(
                    f"Unknown exercise type: {exercise_type}", field="exerciseType", origin="selector"
                )
        return Ok(await self.ledger.get_performance_stats(identity, exercise_type))

    async def clear_progress(self, identity: UserIdentity | None = None) -> None:
        await self.ledger.clear_all_progress(identity)

    async def migrate_progress(self, identity: UserIdentity) -> bool:
        return await self.ledger.migrate_local_progress_to_user(identity)


def _theme_of(key: CacheKey) -> str | None:
    return None if key.theme == DEFAULT_THEME else key.theme
