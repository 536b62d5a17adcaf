"""Exercise API

Selecting the next exercise, opening a pooled exercise by id, and checking
single answers against the solution cache.
"""
from fastapi import APIRouter, Depends
from pydantic import Field

from api.deps import get_selector
from core.errors import not_found, raise_result
from core.security import UserIdentity, get_current_identity
from engines.selector import ExerciseSelector
from models.exercise import CacheKey, CamelModel, CefrLevel, ExerciseType

router = APIRouter()


class SelectRequest(CamelModel):
    exercise_type: ExerciseType
    cefr_level: CefrLevel
    theme: str | None = Field(default=None, max_length=100)
    force_regenerate: bool = False
    api_key: str | None = Field(default=None, min_length=1, repr=False)


class CheckAnswerRequest(CamelModel):
    question_id: str = Field(min_length=1)
    user_answer: str


@router.post("/select")
async def select_exercise(
    body: SelectRequest,
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    """Next exercise for the learner: static worksheet, pooled or generated."""
    result = await selector.select_exercise(
        body.exercise_type,
        body.cefr_level,
        body.theme,
        identity,
        force_regenerate=body.force_regenerate,
        api_key=body.api_key,
    )
    raise_result(result)
    return result.unwrap().to_dict()


@router.post("/check-answer")
async def check_answer(body: CheckAnswerRequest, selector: ExerciseSelector = Depends(get_selector)):
    result = await selector.check_answer(body.question_id, body.user_answer)
    raise_result(result)
    return result.unwrap().to_dict()


@router.get("/cache-diagnostics")
async def cache_diagnostics(selector: ExerciseSelector = Depends(get_selector)):
    """Exercise counts per cache partition."""
    cache = selector.cache
    keys = await cache.known_keys()
    counts = await cache.describe(keys)

    by_type = {t.value: 0 for t in ExerciseType}
    for raw_key, count in counts.items():
        by_type[CacheKey.parse(raw_key).exercise_type.value] += count

    body = {
        "backend": cache.backend,
        "totalCachedExercises": sum(counts.values()),
        "byExerciseType": by_type,
        "partitions": counts,
    }
    stats = cache.circuit_stats()
    if stats is not None:
        body["circuit"] = {
            "state": stats.state.name.lower(),
            "failureCount": stats.failure_count,
            "totalRequests": stats.total_requests,
            "totalFailures": stats.total_failures,
        }
    return body


@router.get("/{exercise_id}")
async def get_exercise(exercise_id: str, selector: ExerciseSelector = Depends(get_selector)):
    """A pooled exercise by id, for shared links."""
    cached = await selector.get_exercise(exercise_id)
    if cached is None:
        raise_result(not_found("Exercise", exercise_id, origin="api.exercises"))
    return {
        "exercise": cached.data.to_json_dict(),
        "exerciseType": cached.exercise_type.value,
        "cefrLevel": cached.cefr_level.value,
        "theme": cached.theme,
        "createdAt": cached.created_at,
    }
