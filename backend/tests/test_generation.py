"""Tests for turning model responses into exercise sets."""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from engines.generation import (
    GenerationError,
    OpenAIExerciseGenerator,
    build_exercise_set,
    build_prompts,
)
from models.exercise import CefrLevel, ExerciseType, ParagraphExerciseSet

EXPLANATION = "The verb agrees with the subject in person."

PARAGRAPH = {
    "paragraph": "Svako jutro ja {{1}} kavu, a moja sestra {{2}} čaj. Poslije toga mi {{3}} na posao.",
    "questions": [
        {"blankNumber": 1, "baseForm": "piti", "correctAnswer": "pijem", "explanation": EXPLANATION},
        {"blankNumber": 2, "baseForm": "piti", "correctAnswer": ["pije"], "explanation": EXPLANATION},
        {"blankNumber": 3, "baseForm": "ići", "correctAnswer": ["idemo"], "explanation": EXPLANATION},
    ],
}


def aspect_item(**overrides) -> dict:
    item = {
        "text": "Jučer sam cijeli dan ___ knjigu.",
        "options": {"imperfective": "čitala", "perfective": "pročitala"},
        "correctAspect": "imperfective",
        "correctAnswer": ["čitala"],
        "explanation": "Ongoing activity takes the imperfective.",
    }
    item.update(overrides)
    return item


def completion(content: str | None, total_tokens: int = 321):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def mock_client(content: str | None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion(content))
    return client


class TestBuildExerciseSet:
    def test_paragraph_markers_normalized_and_ids_assigned(self):
        exercise_set = build_exercise_set(ExerciseType.VERB_TENSES, json.dumps(PARAGRAPH))

        assert isinstance(exercise_set, ParagraphExerciseSet)
        assert "___1___" in exercise_set.paragraph
        assert "{{" not in exercise_set.paragraph
        ids = {exercise_set.id, *(q.id for q in exercise_set.questions)}
        assert len(ids) == 4
        assert exercise_set.questions[0].correct_answer == ["pijem"]

    def test_aspect_items_get_subtype(self):
        content = json.dumps({"exercises": [aspect_item() for _ in range(3)]})
        exercise_set = build_exercise_set(ExerciseType.VERB_ASPECT, content)

        assert all(item.is_verb_aspect for item in exercise_set.exercises)

    def test_aspect_item_without_options_rejected(self):
        content = json.dumps({"exercises": [aspect_item(options=None) for _ in range(3)]})
        with pytest.raises(GenerationError):
            build_exercise_set(ExerciseType.VERB_ASPECT, content)

    def test_too_few_items_rejected(self):
        content = json.dumps({"exercises": [aspect_item()]})
        with pytest.raises(GenerationError, match="validation failed"):
            build_exercise_set(ExerciseType.RELATIVE_PRONOUNS, content)

    def test_not_json(self):
        with pytest.raises(GenerationError, match="Invalid JSON"):
            build_exercise_set(ExerciseType.VERB_TENSES, "Here are your exercises:")


class TestPrompts:
    def test_theme_and_level_in_prompt(self):
        _, user = build_prompts(ExerciseType.NOUN_DECLENSION, CefrLevel.A2_1, "food")
        assert "A2.1" in user
        assert "'food'" in user

    def test_no_theme(self):
        _, user = build_prompts(ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, None)
        assert "theme" not in user


class TestOpenAIExerciseGenerator:
    async def test_generate_calls_chat_completions(self):
        client = mock_client(json.dumps(PARAGRAPH))
        generator = OpenAIExerciseGenerator(model="test-model", max_tokens=500, client=client)

        exercise_set = await generator.generate(ExerciseType.VERB_TENSES, CefrLevel.A1, "morning")

        assert len(exercise_set.questions) == 3
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 500
        assert kwargs["response_format"] == {"type": "json_object"}

    async def test_empty_response(self):
        generator = OpenAIExerciseGenerator(client=mock_client(None))
        with pytest.raises(GenerationError, match="Empty response"):
            await generator.generate(ExerciseType.VERB_TENSES, CefrLevel.A1)

    async def test_without_key(self):
        generator = OpenAIExerciseGenerator(api_key="")
        with pytest.raises(GenerationError, match="No API key"):
            await generator.generate(ExerciseType.VERB_TENSES, CefrLevel.A1)

    async def test_request_key_used_without_server_key(self):
        client = mock_client(json.dumps(PARAGRAPH))
        generator = OpenAIExerciseGenerator(api_key="")

        with patch("engines.generation.AsyncOpenAI", return_value=client) as factory:
            exercise_set = await generator.generate(ExerciseType.VERB_TENSES, CefrLevel.A1, api_key="sk-learner")

        factory.assert_called_once_with(api_key="sk-learner")
        assert len(exercise_set.questions) == 3
