"""Progress API

Completion tracking for the requesting identity: anonymous devices and
signed-in accounts alike. Identity comes from the ``X-Device-Id`` and
``X-User-Id`` headers.
"""
from fastapi import APIRouter, Depends, Query

from api.deps import get_selector
from core.errors import raise_result, required_field
from core.security import USER_ID_HEADER, UserIdentity, get_current_identity
from engines.selector import ExerciseSelector
from models.exercise import CamelModel, CefrLevel, ExerciseType, Score

router = APIRouter()


class CompletionRequest(CamelModel):
    exercise_id: str
    exercise_type: ExerciseType
    cefr_level: CefrLevel
    theme: str | None = None
    score: Score | None = None
    title: str | None = None


@router.post("/completions")
async def record_completion(
    body: CompletionRequest,
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    result = await selector.record_completion(
        body.exercise_id,
        body.exercise_type,
        body.cefr_level,
        body.theme,
        body.score,
        body.title,
        identity,
    )
    raise_result(result)
    return result.unwrap().to_json_dict()


@router.get("/completed")
async def completed_exercises(
    exercise_type: ExerciseType = Query(alias="exerciseType"),
    cefr_level: CefrLevel = Query(alias="cefrLevel"),
    theme: str | None = None,
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    ids = await selector.ledger.get_completed_exercises(exercise_type, cefr_level, theme, identity)
    return {"completedExercises": ids}


@router.get("/static")
async def static_progress(
    exercise_type: ExerciseType = Query(alias="exerciseType"),
    cefr_level: CefrLevel = Query(alias="cefrLevel"),
    theme: str | None = None,
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    """Worksheet progress at a level, e.g. ``2/5``."""
    result = await selector.get_progress(exercise_type, cefr_level, theme, identity)
    raise_result(result)
    progress = result.unwrap()
    return {
        "completed": progress.completed,
        "total": progress.total,
        "progressText": progress.progress_text,
    }


@router.get("/stats")
async def performance_stats(
    exercise_type: ExerciseType | None = Query(default=None, alias="exerciseType"),
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    result = await selector.get_performance_stats(identity, exercise_type)
    raise_result(result)
    return result.unwrap().to_dict()


@router.get("/records")
async def all_records(
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    """Every completion for the identity, most recent first."""
    records = await selector.ledger.get_all_records(identity)
    return {"records": [r.to_json_dict() for r in records]}


@router.post("/migrate")
async def migrate_progress(
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    """Move this device's anonymous progress into the signed-in account."""
    if not identity.is_authenticated:
        raise_result(required_field(USER_ID_HEADER, origin="api.progress"))
    migrated = await selector.migrate_progress(identity)
    return {"migrated": migrated}


@router.delete("")
async def clear_progress(
    identity: UserIdentity = Depends(get_current_identity),
    selector: ExerciseSelector = Depends(get_selector),
):
    await selector.clear_progress(identity)
    return {"cleared": True}
