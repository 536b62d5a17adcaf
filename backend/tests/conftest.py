"""Shared pytest fixtures for the exercise service test suite."""
import asyncio
import os
import tempfile
from pathlib import Path

# Settings are read at import time, so point them at throwaway storage first
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="vjezbajmo-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'app.db'}"
os.environ["REDIS_URL"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOCAL_PROGRESS_DIR"] = str(_TEST_ROOT / "progress")
os.environ["LOG_LEVEL"] = "WARNING"

from uuid import uuid4

import pytest

from core.database import build_engine, build_session_factory, create_tables
from engines.cache import InMemoryExerciseCache
from engines.progress import LocalProgressStore, RemoteProgressStore, UserProgressLedger
from engines.selector import ExerciseSelector
from engines.worksheets import StaticWorksheetRepository
from models.exercise import CefrLevel, ExerciseType, parse_exercise_set

DAY_MS = 24 * 60 * 60 * 1000
START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, days: float = 0, seconds: float = 0) -> None:
        self.now += int(days * DAY_MS + seconds * 1000)


def sentence_set(set_id: str | None = None, answers: tuple[str, ...] = ("koji", "koja", "koje")):
    """A relative-pronoun set with one item per answer."""
    set_id = set_id or str(uuid4())
    return parse_exercise_set(ExerciseType.RELATIVE_PRONOUNS, {
        "id": set_id,
        "exercises": [
            {
                "id": f"{set_id}-q{i}",
                "text": f"Ovo je rečenica broj {i} s prazninom ___.",
                "correctAnswer": [answer],
                "explanation": "The pronoun agrees with its antecedent.",
            }
            for i, answer in enumerate(answers, start=1)
        ],
    })


class FakeGenerator:
    """Generator double: records calls, can fail or stall on demand."""

    def __init__(self, *, error: Exception | None = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls: list[tuple[ExerciseType, CefrLevel, str | None]] = []
        self.api_keys: list[str | None] = []

    async def generate(self, exercise_type, cefr_level, theme=None, api_key=None):
        self.calls.append((exercise_type, cefr_level, theme))
        self.api_keys.append(api_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return sentence_set()


WORKSHEET_CATALOG = {
    ExerciseType.RELATIVE_PRONOUNS: [
        {
            "id": "relative-pronouns-1",
            "cefrLevel": "A1",
            "title": "Prvi list",
            "exercises": [
                {"id": 1, "text": "Čovjek ___ stoji tamo je moj otac.", "correctAnswer": "koji",
                 "explanation": "Masculine nominative singular."},
            ],
        },
        {
            "id": "relative-pronouns-2",
            "cefrLevel": "A1",
            "title": "Drugi list",
            "exercises": [
                {"id": 1, "text": "Žena ___ vidiš je učiteljica.", "correctAnswer": ["koju"],
                 "explanation": "Feminine accusative singular."},
            ],
        },
        {
            "id": "relative-pronouns-3",
            "cefrLevel": "A2.1",
            "exercises": [
                {"id": 1, "text": "Grad u ___ živim je lijep.", "correctAnswer": ["kojem", "kojemu"],
                 "explanation": "Masculine locative singular."},
            ],
        },
    ],
    ExerciseType.VERB_ASPECT: [
        {
            "id": "verb-aspect-1",
            "cefrLevel": "A1",
            "exercises": [
                {"id": 1, "text": "Svaki dan ___ pismo.", "correctAnswer": "pišem",
                 "explanation": "Habitual action."},
            ],
        },
    ],
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> StaticWorksheetRepository:
    return StaticWorksheetRepository.from_raw(WORKSHEET_CATALOG).unwrap()


@pytest.fixture
def empty_repository() -> StaticWorksheetRepository:
    return StaticWorksheetRepository({})


@pytest.fixture
def memory_cache(clock) -> InMemoryExerciseCache:
    return InMemoryExerciseCache(
        exercise_ttl_seconds=7 * 24 * 60 * 60,
        solution_ttl_seconds=60 * 60,
        clock=clock,
    )


@pytest.fixture
def local_store(tmp_path, clock) -> LocalProgressStore:
    return LocalProgressStore(tmp_path / "progress", retention_days=30, clock=clock)


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def remote_store(session_factory, clock) -> RemoteProgressStore:
    return RemoteProgressStore(session_factory, retention_days=30, clock=clock)


@pytest.fixture
def ledger(local_store, remote_store) -> UserProgressLedger:
    return UserProgressLedger(local_store, remote_store)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def selector(empty_repository, memory_cache, ledger, generator) -> ExerciseSelector:
    """Selector with no static worksheets, so requests reach the cache."""
    return ExerciseSelector(
        empty_repository,
        memory_cache,
        ledger,
        generator,
        generation_timeout_seconds=1.0,
    )
