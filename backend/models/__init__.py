from models.exercise import (
    ExerciseType, CefrLevel,
    ParagraphQuestion, ParagraphExerciseSet,
    SentenceExercise, SentenceExerciseSet, AspectOptions, ExerciseSet,
    CachedExercise, CachedSolution, CacheKey,
    Score, CompletedExerciseRecord,
)
from models.progress import CompletedExercise

__all__ = [
    "ExerciseType", "CefrLevel",
    "ParagraphQuestion", "ParagraphExerciseSet",
    "SentenceExercise", "SentenceExerciseSet", "AspectOptions", "ExerciseSet",
    "CachedExercise", "CachedSolution", "CacheKey",
    "Score", "CompletedExerciseRecord",
    "CompletedExercise",
]
