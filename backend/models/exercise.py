"""Exercise models shared by the catalog, the cache and the selector.

Field names serialize in camelCase (``correctAnswer``, ``blankNumber``) so the
stored cache records and API payloads keep the shape clients already read.
"""
import re
import time
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

BLANK_MARKER = re.compile(r"___(\d+)___")
DEFAULT_THEME = "default"


class ExerciseType(str, Enum):
    VERB_TENSES = "verbTenses"
    NOUN_DECLENSION = "nounDeclension"
    VERB_ASPECT = "verbAspect"
    RELATIVE_PRONOUNS = "relativePronouns"

    @property
    def is_paragraph(self) -> bool:
        return self in (ExerciseType.VERB_TENSES, ExerciseType.NOUN_DECLENSION)


class CefrLevel(str, Enum):
    A1 = "A1"
    A2_1 = "A2.1"
    A2_2 = "A2.2"
    B1_1 = "B1.1"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class _AnswerItem(CamelModel):
    """Common part of a paragraph blank and a sentence item."""
    id: str
    correct_answer: list[str] = Field(min_length=1)
    explanation: str
    is_plural: bool | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_string(cls, value):
        # Static catalogs use small integer ids
        return str(value) if isinstance(value, int) else value

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _answers_as_list(cls, value):
        return [value] if isinstance(value, str) else value

    @field_validator("correct_answer")
    @classmethod
    def _no_blank_answers(cls, value: list[str]) -> list[str]:
        if any(not answer.strip() for answer in value):
            raise ValueError("correctAnswer entries must be non-empty")
        return value


class ParagraphQuestion(_AnswerItem):
    blank_number: int = Field(ge=1)
    base_form: str = ""


class AspectOptions(CamelModel):
    imperfective: str
    perfective: str


class SentenceExercise(_AnswerItem):
    text: str
    exercise_sub_type: Literal["verb-aspect"] | None = None
    options: AspectOptions | None = None
    correct_aspect: Literal["imperfective", "perfective"] | None = None

    @property
    def is_verb_aspect(self) -> bool:
        return self.exercise_sub_type == "verb-aspect"


class ParagraphExerciseSet(CamelModel):
    id: str
    paragraph: str
    questions: list[ParagraphQuestion] = Field(min_length=1)

    @model_validator(mode="after")
    def _blanks_match_paragraph(self) -> "ParagraphExerciseSet":
        numbers = [q.blank_number for q in self.questions]
        if len(numbers) != len(set(numbers)):
            raise ValueError("blankNumber values must be unique within a set")
        markers = {int(n) for n in BLANK_MARKER.findall(self.paragraph)}
        if markers != set(numbers):
            raise ValueError(
                f"paragraph blanks {sorted(markers)} do not match questions {sorted(numbers)}"
            )
        return self

    def items(self) -> list[ParagraphQuestion]:
        return list(self.questions)


class SentenceExerciseSet(CamelModel):
    id: str
    exercises: list[SentenceExercise] = Field(min_length=1)

    def items(self) -> list[SentenceExercise]:
        return list(self.exercises)


ExerciseSet = Union[ParagraphExerciseSet, SentenceExerciseSet]


def parse_exercise_set(exercise_type: ExerciseType, data: dict) -> ExerciseSet:
    """Validate raw exercise data into the shape its type requires."""
    if exercise_type.is_paragraph:
        return ParagraphExerciseSet.model_validate(data)
    return SentenceExerciseSet.model_validate(data)


def now_ms() -> int:
    return int(time.time() * 1000)


class CachedExercise(CamelModel):
    """A generated exercise set stored in the shared pool."""
    id: str
    exercise_type: ExerciseType
    cefr_level: CefrLevel
    theme: str | None = None
    data: Union[ParagraphExerciseSet, SentenceExerciseSet]
    created_at: int = Field(default_factory=now_ms)  # epoch milliseconds

    @model_validator(mode="before")
    @classmethod
    def _data_by_type(cls, values):
        # The union alone cannot tell an empty-ish payload apart, so dispatch on type
        if isinstance(values, dict):
            raw_type = values.get("exerciseType", values.get("exercise_type"))
            data = values.get("data")
            if isinstance(data, dict) and raw_type is not None:
                values = {**values, "data": parse_exercise_set(ExerciseType(raw_type), data)}
        return values


class CachedSolution(CamelModel):
    """Ephemeral answer data used to check a single question."""
    correct_answer: list[str] = Field(min_length=1)
    explanation: str


class CacheKey(BaseModel):
    """Partition of the shared pool: (type, level, theme or "default")."""
    model_config = ConfigDict(frozen=True)

    exercise_type: ExerciseType
    cefr_level: CefrLevel
    theme: str = DEFAULT_THEME

    @classmethod
    def for_request(
        cls,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
    ) -> "CacheKey":
        return cls(
            exercise_type=exercise_type,
            cefr_level=cefr_level,
            theme=(theme or "").strip() or DEFAULT_THEME,
        )

    @classmethod
    def parse(cls, raw: str) -> "CacheKey":
        """Inverse of ``str(key)``; accepts the ``exercises:`` prefix."""
        raw = raw.removeprefix("exercises:")
        exercise_type, cefr_level, theme = raw.split(":", 2)
        return cls(
            exercise_type=ExerciseType(exercise_type),
            cefr_level=CefrLevel(cefr_level),
            theme=theme,
        )

    @property
    def storage_key(self) -> str:
        return f"exercises:{self}"

    def __str__(self) -> str:
        return f"{self.exercise_type.value}:{self.cefr_level.value}:{self.theme}"


def solution_key(question_id: str) -> str:
    return f"solution:{question_id}"


class Score(CamelModel):
    correct: int = Field(ge=0)
    total: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)

    @model_validator(mode="after")
    def _correct_within_total(self) -> "Score":
        if self.correct > self.total:
            raise ValueError("correct cannot exceed total")
        return self


class CompletedExerciseRecord(CamelModel):
    exercise_id: str
    exercise_type: ExerciseType
    cefr_level: CefrLevel
    theme: str | None = None
    completed_at: int = Field(default_factory=now_ms)  # epoch milliseconds
    score: Score | None = None
    attempt_number: int = Field(default=1, ge=1)
    best_score: int | None = Field(default=None, ge=0, le=100)
    title: str | None = None

    def matches(
        self,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
    ) -> bool:
        """Whether the record belongs to a (type, level, theme) partition.

        A missing theme on either side means the "default" partition.
        """
        if self.exercise_type != exercise_type or self.cefr_level != cefr_level:
            return False
        return (self.theme or DEFAULT_THEME) == ((theme or "").strip() or DEFAULT_THEME)
