"""Answer matching and scoring.

Learners often type Croatian without diacritics. An answer that only differs
from a candidate in č/ć/đ/š/ž is accepted, but flagged so the UI can show a
reminder. Everything here is pure.
"""
import math
import re
from dataclasses import dataclass
from typing import Iterable

from models.exercise import ExerciseType, Score

_DIACRITICS = str.maketrans({
    "č": "c", "ć": "c", "đ": "d", "š": "s", "ž": "z",
    "Č": "C", "Ć": "C", "Đ": "D", "Š": "S", "Ž": "Z",
})

_PLURAL_MARKERS = ("plural", "množina", "mn.")

# Longest endings first; matching is a hint only
_PLURAL_ENDINGS = (
    "ovima", "evima", "ima",
    "ovi", "evi", "ove", "eve", "ova", "eva",
    "i", "e", "a", "ā",
)
_SKIP_WORDS = frozenset({"i", "u", "na", "za", "od", "do", "po", "s", "sa"})

_STATIC_ID_PATTERNS = {
    ExerciseType.VERB_ASPECT: re.compile(r"^verb-aspect-\d+$"),
    ExerciseType.RELATIVE_PRONOUNS: re.compile(r"^relative-pronouns-\d+$"),
    ExerciseType.VERB_TENSES: re.compile(r"^verb-tenses-\d+$"),
    ExerciseType.NOUN_DECLENSION: re.compile(r"^noun-declension-\d+$"),
}


@dataclass(frozen=True, slots=True)
class AnswerCheck:
    correct: bool
    diacritic_warning: bool = False
    matched_answer: str | None = None

    def to_dict(self) -> dict:
        result = {"correct": self.correct, "diacriticWarning": self.diacritic_warning}
        if self.matched_answer is not None:
            result["matchedAnswer"] = self.matched_answer
        return result


@dataclass(frozen=True, slots=True)
class ExerciseResult:
    """Outcome of one answered question, as shown on the results screen."""
    question_id: str
    user_answer: str
    correct: bool
    explanation: str
    correct_answer: list[str] | None = None
    diacritic_warning: bool = False
    matched_answer: str | None = None


def remove_diacritics(text: str) -> str:
    return text.translate(_DIACRITICS)


def normalize_answer(answer: str) -> str:
    return answer.strip().casefold()


def _as_candidates(correct_answers: str | Iterable[str]) -> list[str]:
    if isinstance(correct_answers, str):
        return [correct_answers]
    return list(correct_answers)


def check_answer(user_answer: str, correct_answers: str | Iterable[str]) -> AnswerCheck:
    """Compare a learner's answer against one or more accepted forms.

    Exact matches (after trimming and case folding) win over matches that
    needed diacritics stripped, and earlier candidates win over later ones.
    """
    candidates = _as_candidates(correct_answers)
    user = normalize_answer(user_answer)

    for candidate in candidates:
        if user == normalize_answer(candidate):
            return AnswerCheck(correct=True, matched_answer=candidate)

    user_plain = remove_diacritics(user)
    for candidate in candidates:
        if user_plain == remove_diacritics(normalize_answer(candidate)):
            return AnswerCheck(correct=True, diacritic_warning=True, matched_answer=candidate)

    return AnswerCheck(correct=False)


def create_exercise_result(
    question_id: str,
    user_answer: str,
    correct_answer: str | list[str],
    explanation: str,
) -> ExerciseResult:
    check = check_answer(user_answer, correct_answer)
    return ExerciseResult(
        question_id=question_id,
        user_answer=user_answer,
        correct=check.correct,
        explanation=explanation,
        correct_answer=None if check.correct else _as_candidates(correct_answer),
        diacritic_warning=check.diacritic_warning,
        matched_answer=check.matched_answer,
    )


def calculate_score(results: Iterable[ExerciseResult | AnswerCheck | bool]) -> Score:
    """Count correct results; an empty list scores 0%."""
    outcomes = [r if isinstance(r, bool) else r.correct for r in results]
    correct = sum(outcomes)
    total = len(outcomes)
    return Score(correct=correct, total=total, percentage=score_percentage(correct, total))


def score_percentage(correct: int, total: int) -> int:
    # Half rounds up, not to even
    return math.floor(correct / total * 100 + 0.5) if total else 0


def detect_plural_requirement(explanation: str, correct_answer: str | list[str]) -> bool:
    """Best-effort guess whether a question wants a plural form.

    Used for the "(mn.)" hint only; answer checking never depends on it.
    """
    explanation_lower = explanation.lower()
    if any(marker in explanation_lower for marker in _PLURAL_MARKERS):
        return True

    for answer in _as_candidates(correct_answer):
        for word in answer.strip().lower().split():
            if len(word) < 3 or word in _SKIP_WORDS:
                continue
            if word.endswith(_PLURAL_ENDINGS):
                return True
    return False


def plural_indicator(is_plural: bool) -> str:
    return " (mn.)" if is_plural else ""


def is_static_exercise_id(exercise_id: str, exercise_type: ExerciseType) -> bool:
    pattern = _STATIC_ID_PATTERNS.get(exercise_type)
    return bool(pattern and pattern.match(exercise_id))
