"""Static worksheet catalog.

Pre-authored worksheets are the first thing a learner gets for a type and
level; generated content is only needed once they are exhausted. The catalog
is read once from YAML files, one per exercise type, and never changes while
the process runs.
"""
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml
from pydantic import ValidationError

from core.errors import (
    AppError,
    Ok,
    Result,
    configuration_error,
    unsupported_exercise_type,
    validation_error,
)
from core.logging import catalog_logger
from models.exercise import (
    CefrLevel,
    ExerciseSet,
    ExerciseType,
    parse_exercise_set,
)

log = catalog_logger()

WORKSHEET_FILES = {
    ExerciseType.VERB_TENSES: "verb-tenses.yaml",
    ExerciseType.NOUN_DECLENSION: "noun-declension.yaml",
    ExerciseType.VERB_ASPECT: "verb-aspect.yaml",
    ExerciseType.RELATIVE_PRONOUNS: "relative-pronouns.yaml",
}


@dataclass(frozen=True, slots=True)
class Worksheet:
    """One catalog entry in its raw, as-authored shape."""
    id: str
    exercise_type: ExerciseType
    cefr_level: CefrLevel
    title: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StaticProgress:
    completed: int
    total: int

    @property
    def progress_text(self) -> str:
        return f"{self.completed}/{self.total}"


def _coerce_type(exercise_type: ExerciseType | str) -> Result[ExerciseType, AppError]:
    try:
        return Ok(ExerciseType(exercise_type))
    except ValueError:
        return unsupported_exercise_type(str(exercise_type), origin="catalog")


def _answers(value: Any) -> list:
    return value if isinstance(value, list) else [value]


def _item_id(worksheet: Worksheet, raw_id: Any) -> str | None:
    """Question ids prefixed with their worksheet id, unique across the catalog."""
    if raw_id is None:
        return None
    raw_id = str(raw_id)
    prefix = f"{worksheet.id}-"
    return raw_id if raw_id.startswith(prefix) else prefix + raw_id


def _convert(worksheet: Worksheet, exercise_type: ExerciseType) -> dict:
    """Map a raw worksheet onto the canonical exercise-set shape."""
    raw = worksheet.raw
    if exercise_type.is_paragraph:
        return {
            "id": worksheet.id,
            "paragraph": raw.get("paragraph") or "",
            "questions": [
                {
                    "id": _item_id(worksheet, q.get("id")),
                    "blankNumber": q.get("blankNumber"),
                    "baseForm": q.get("baseForm") or "",
                    "correctAnswer": _answers(q.get("correctAnswer")),
                    "explanation": q.get("explanation"),
                    "isPlural": q.get("isPlural"),
                }
                for q in raw.get("questions") or []
            ],
        }

    exercises = []
    for item in raw.get("exercises") or []:
        converted = {
            "id": _item_id(worksheet, item.get("id")),
            "text": item.get("text"),
            "correctAnswer": _answers(item.get("correctAnswer")),
            "explanation": item.get("explanation"),
            "isPlural": item.get("isPlural"),
        }
        if exercise_type is ExerciseType.VERB_ASPECT:
            converted.update({
                "exerciseSubType": "verb-aspect",
                "options": item.get("options") or {"imperfective": "", "perfective": ""},
                "correctAspect": item.get("correctAspect") or "imperfective",
            })
        exercises.append(converted)
    return {"id": worksheet.id, "exercises": exercises}


class StaticWorksheetRepository:
    """Read-only accessor over the worksheet catalog, per type and level."""

    __slots__ = ("_catalog",)

    def __init__(self, catalog: Mapping[ExerciseType, Iterable[Worksheet]]):
        self._catalog = MappingProxyType({
            exercise_type: tuple(worksheets) for exercise_type, worksheets in catalog.items()
        })

    @classmethod
    def from_raw(
        cls,
        raw_catalog: Mapping[ExerciseType | str, Iterable[Mapping[str, Any]]],
    ) -> Result["StaticWorksheetRepository", AppError]:
        """Build a repository from raw worksheet dicts, validating every entry."""
        catalog: dict[ExerciseType, list[Worksheet]] = {}
        for raw_type, entries in raw_catalog.items():
            type_result = _coerce_type(raw_type)
            if type_result.is_err():
                return type_result
            exercise_type = type_result.unwrap()

            worksheets = []
            for entry in entries or []:
                parsed = cls._parse_entry(exercise_type, entry)
                if parsed.is_err():
                    return parsed
                worksheets.append(parsed.unwrap())
            catalog[exercise_type] = worksheets
        return Ok(cls(catalog))

    @classmethod
    def from_directory(cls, directory: Path) -> Result["StaticWorksheetRepository", AppError]:
        """Load every known worksheet file under ``directory``.

        A missing file leaves that type with an empty catalog; unreadable or
        malformed files are configuration errors.
        """
        raw_catalog: dict[ExerciseType, list] = {}
        for exercise_type, filename in WORKSHEET_FILES.items():
            path = directory / filename
            if not path.exists():
                log.warning("worksheet_file_missing", path=str(path), exercise_type=exercise_type.value)
                raw_catalog[exercise_type] = []
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                return configuration_error(
                    f"Cannot read worksheet file {path.name}: {e}",
                    exercise_type=exercise_type.value,
                    origin="catalog",
                    cause=e,
                )
            raw_catalog[exercise_type] = data.get("worksheets", []) if isinstance(data, dict) else data

        result = cls.from_raw(raw_catalog)
        if result.is_ok():
            repo = result.unwrap()
            log.info(
                "worksheet_catalog_loaded",
                directory=str(directory),
                counts={t.value: len(repo._catalog.get(t, ())) for t in ExerciseType},
            )
        return result

    @staticmethod
    def _parse_entry(exercise_type: ExerciseType, entry: Mapping[str, Any]) -> Result[Worksheet, AppError]:
        worksheet_id = str(entry.get("id", "")) if isinstance(entry, Mapping) else ""
        try:
            if not worksheet_id:
                raise ValueError("worksheet has no id")
            worksheet = Worksheet(
                id=worksheet_id,
                exercise_type=exercise_type,
                cefr_level=CefrLevel(entry.get("cefrLevel")),
                title=entry.get("title"),
                raw=MappingProxyType(dict(entry)),
            )
            parse_exercise_set(exercise_type, _convert(worksheet, exercise_type))
        except (ValueError, TypeError, AttributeError, ValidationError) as e:
            return configuration_error(
                f"Malformed worksheet '{worksheet_id or '?'}': {e}",
                exercise_type=exercise_type.value,
                worksheet_id=worksheet_id or "?",
                origin="catalog",
                cause=e,
            )
        return Ok(worksheet)

    def list_worksheets(self, exercise_type: ExerciseType | str) -> Result[tuple[Worksheet, ...], AppError]:
        """The full catalog for a type, in authored order."""
        return _coerce_type(exercise_type).map(lambda t: self._catalog.get(t, ()))

    def _at_level(
        self, exercise_type: ExerciseType | str, cefr_level: CefrLevel | str
    ) -> Result[list[Worksheet], AppError]:
        try:
            level = CefrLevel(cefr_level)
        except ValueError:
            return validation_error(f"Unknown CEFR level: {cefr_level}", field="cefrLevel", origin="catalog")
        return self.list_worksheets(exercise_type).map(
            lambda worksheets: [w for w in worksheets if w.cefr_level == level]
        )

    def next_unfinished(
        self,
        exercise_type: ExerciseType | str,
        cefr_level: CefrLevel | str,
        completed_ids: Iterable[str],
    ) -> Result[Worksheet | None, AppError]:
        """First worksheet at ``cefr_level`` whose id is not in ``completed_ids``."""
        completed = set(completed_ids)
        return self._at_level(exercise_type, cefr_level).map(
            lambda worksheets: next((w for w in worksheets if w.id not in completed), None)
        )

    def progress(
        self,
        exercise_type: ExerciseType | str,
        cefr_level: CefrLevel | str,
        completed_ids: Iterable[str],
    ) -> Result[StaticProgress, AppError]:
        completed = set(completed_ids)
        return self._at_level(exercise_type, cefr_level).map(
            lambda worksheets: StaticProgress(
                completed=sum(1 for w in worksheets if w.id in completed),
                total=len(worksheets),
            )
        )

    def to_exercise_set(
        self,
        worksheet: Worksheet,
        exercise_type: ExerciseType | str,
    ) -> Result[ExerciseSet, AppError]:
        """Convert a worksheet to the canonical paragraph or sentence shape."""
        type_result = _coerce_type(exercise_type)
        if type_result.is_err():
            return type_result
        target = type_result.unwrap()
        try:
            return Ok(parse_exercise_set(target, _convert(worksheet, target)))
        except ValidationError as e:
            return configuration_error(
                f"Worksheet '{worksheet.id}' does not fit {target.value}: {e}",
                exercise_type=target.value,
                worksheet_id=worksheet.id,
                origin="catalog",
                cause=e,
            )
