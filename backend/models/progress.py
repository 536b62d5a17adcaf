"""Completion ledger table for authenticated users."""
from sqlalchemy import BigInteger, Column, Index, Integer, String

from core.database import Base
from models.exercise import CompletedExerciseRecord, Score


class CompletedExercise(Base):
    """One row per (user, exercise); repeat completions update it in place."""
    __tablename__ = "completed_exercises"
    __table_args__ = (
        Index("ix_completed_exercises_partition", "user_id", "exercise_type", "cefr_level"),
    )

    user_id = Column(String(255), primary_key=True)
    exercise_id = Column(String(255), primary_key=True)
    exercise_type = Column(String(32), nullable=False)
    cefr_level = Column(String(8), nullable=False)
    theme = Column(String(255))
    completed_at = Column(BigInteger, nullable=False)  # epoch milliseconds
    score_correct = Column(Integer)
    score_total = Column(Integer)
    score_percentage = Column(Integer)
    attempt_number = Column(Integer, nullable=False, default=1)
    best_score = Column(Integer)
    title = Column(String(255))

    def to_record(self) -> CompletedExerciseRecord:
        score = None
        if self.score_total is not None:
            score = Score(
                correct=self.score_correct or 0,
                total=self.score_total,
                percentage=self.score_percentage or 0,
            )
        return CompletedExerciseRecord(
            exercise_id=self.exercise_id,
            exercise_type=self.exercise_type,
            cefr_level=self.cefr_level,
            theme=self.theme,
            completed_at=self.completed_at,
            score=score,
            attempt_number=self.attempt_number,
            best_score=self.best_score,
            title=self.title,
        )

    def apply(self, record: CompletedExerciseRecord) -> None:
        """Overwrite this row's fields with ``record``."""
        self.exercise_type = record.exercise_type.value
        self.cefr_level = record.cefr_level.value
        self.theme = record.theme
        self.completed_at = record.completed_at
        self.score_correct = record.score.correct if record.score else None
        self.score_total = record.score.total if record.score else None
        self.score_percentage = record.score.percentage if record.score else None
        self.attempt_number = record.attempt_number
        self.best_score = record.best_score
        self.title = record.title

    @classmethod
    def from_record(cls, user_id: str, record: CompletedExerciseRecord) -> "CompletedExercise":
        row = cls(user_id=user_id, exercise_id=record.exercise_id)
        row.apply(record)
        return row
