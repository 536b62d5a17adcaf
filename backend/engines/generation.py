"""Exercise generation.

The selector only depends on the ``ExerciseGenerator`` protocol. The OpenAI
adapter below asks the chat-completions API for a JSON exercise set, checks it
against the same limits the catalog content follows, and assigns fresh ids.
"""
import json
import re
from typing import Literal, Protocol
from uuid import uuid4

from openai import AsyncOpenAI
from pydantic import Field, ValidationError, field_validator

from core.config import settings
from core.logging import selector_logger
from models.exercise import (
    CamelModel,
    CefrLevel,
    ExerciseSet,
    ExerciseType,
    parse_exercise_set,
)

log = selector_logger()

_CURLY_BLANK = re.compile(r"\{\{(\d+)\}\}")

_TOPICS = {
    ExerciseType.VERB_TENSES: "Croatian verb tenses (present, past, future) in a short connected paragraph",
    ExerciseType.NOUN_DECLENSION: "Croatian noun and adjective declension across the seven cases in a short paragraph",
    ExerciseType.VERB_ASPECT: "choosing between the imperfective and perfective aspect of Croatian verbs",
    ExerciseType.RELATIVE_PRONOUNS: "Croatian relative pronouns (koji, koja, koje) in the right case",
}


class GenerationError(Exception):
    """The generator could not produce a usable exercise set."""


class ExerciseGenerator(Protocol):
    async def generate(
        self,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
        api_key: str | None = None,
    ) -> ExerciseSet:
        """Produce a new exercise set; ``api_key`` overrides the server key for this call."""
        ...


# =============================================================================
# Response drafts
# =============================================================================

class _AnswerDraft(CamelModel):
    correct_answer: list[str] = Field(min_length=1, max_length=10)
    explanation: str = Field(min_length=10, max_length=500)
    is_plural: bool | None = None

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _answers_as_list(cls, value):
        return [value] if isinstance(value, str) else value

    @field_validator("correct_answer")
    @classmethod
    def _answer_lengths(cls, value: list[str]) -> list[str]:
        if any(not 1 <= len(answer) <= 100 for answer in value):
            raise ValueError("each answer must be 1-100 characters")
        return value


class _QuestionDraft(_AnswerDraft):
    blank_number: int = Field(ge=1, le=50)
    base_form: str = Field(min_length=1, max_length=100)


class _ParagraphDraft(CamelModel):
    paragraph: str = Field(min_length=50, max_length=2000)
    questions: list[_QuestionDraft] = Field(min_length=3, max_length=15)


class _AspectOptionsDraft(CamelModel):
    imperfective: str = Field(min_length=1, max_length=100)
    perfective: str = Field(min_length=1, max_length=100)


class _SentenceDraft(_AnswerDraft):
    text: str = Field(min_length=10, max_length=300)
    exercise_sub_type: Literal["verb-aspect"] | None = None
    options: _AspectOptionsDraft | None = None
    correct_aspect: Literal["imperfective", "perfective"] | None = None


class _SentenceSetDraft(CamelModel):
    exercises: list[_SentenceDraft] = Field(min_length=3, max_length=15)


def build_exercise_set(exercise_type: ExerciseType, content: str) -> ExerciseSet:
    """Validate a raw model response and turn it into an exercise set with ids.

    Raises:
        GenerationError: the response is not JSON or does not fit the shape
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Invalid JSON response: {e}") from e

    try:
        if exercise_type.is_paragraph:
            draft = _ParagraphDraft.model_validate(data)
            raw = {
                "id": str(uuid4()),
                "paragraph": _CURLY_BLANK.sub(r"___\1___", draft.paragraph),
                "questions": [
                    {**q.model_dump(by_alias=True, exclude_none=True), "id": str(uuid4())}
                    for q in draft.questions
                ],
            }
        else:
            draft = _SentenceSetDraft.model_validate(data)
            items = []
            for item in draft.exercises:
                if exercise_type is ExerciseType.VERB_ASPECT:
                    if item.options is None or item.correct_aspect is None:
                        raise GenerationError("verb aspect item without options or correctAspect")
                    item = item.model_copy(update={"exercise_sub_type": "verb-aspect"})
                items.append({**item.model_dump(by_alias=True, exclude_none=True), "id": str(uuid4())})
            raw = {"id": str(uuid4()), "exercises": items}
        return parse_exercise_set(exercise_type, raw)
    except ValidationError as e:
        raise GenerationError(f"Exercise validation failed: {e}") from e


def build_prompts(exercise_type: ExerciseType, cefr_level: CefrLevel, theme: str | None) -> tuple[str, str]:
    system = (
        "You write Croatian grammar exercises for learners. "
        "Answer with a single JSON object and nothing else. "
        "Explanations are in English."
    )
    if exercise_type.is_paragraph:
        shape = (
            '{"paragraph": "... ___1___ ... ___2___ ...", "questions": [{"blankNumber": 1, '
            '"baseForm": "...", "correctAnswer": ["..."], "explanation": "...", "isPlural": false}]}'
        )
    elif exercise_type is ExerciseType.VERB_ASPECT:
        shape = (
            '{"exercises": [{"text": "... ___ ...", "exerciseSubType": "verb-aspect", '
            '"options": {"imperfective": "...", "perfective": "..."}, '
            '"correctAspect": "imperfective", "correctAnswer": ["..."], "explanation": "..."}]}'
        )
    else:
        shape = '{"exercises": [{"text": "... ___ ...", "correctAnswer": ["..."], "explanation": "..."}]}'

    user = (
        f"Create 5 to 10 exercises practising {_TOPICS[exercise_type]} "
        f"for CEFR level {cefr_level.value}"
        + (f" on the theme '{theme}'" if theme else "")
        + f". List every acceptable answer. Use this JSON shape: {shape}"
    )
    return system, user


class OpenAIExerciseGenerator:
    """Generates exercise sets with the OpenAI chat-completions API."""

    __slots__ = ("_client", "_model", "_max_tokens")

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._client = client or (AsyncOpenAI(api_key=key) if key else None)
        self._model = model or settings.OPENAI_MODEL
        self._max_tokens = max_tokens or settings.GENERATION_MAX_TOKENS
        log.debug("generator_initialized", model=self._model, has_key=self._client is not None)

    async def generate(
        self,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
        api_key: str | None = None,
    ) -> ExerciseSet:
        client = AsyncOpenAI(api_key=api_key) if api_key else self._client
        if client is None:
            raise GenerationError("No API key configured for exercise generation")

        system, user = build_prompts(exercise_type, cefr_level, theme)
        response = await client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=self._max_tokens,
            temperature=0.8,
            response_format={"type": "json_object"},
        )

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationError("Empty response from model")

        exercise_set = build_exercise_set(exercise_type, content)
        log.info(
            "exercise_generated",
            exercise_type=exercise_type.value,
            cefr_level=cefr_level.value,
            theme=theme,
            exercise_id=exercise_set.id,
            tokens=response.usage.total_tokens if response.usage else 0,
        )
        return exercise_set
