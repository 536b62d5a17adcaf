from engines.answers import check_answer, calculate_score, create_exercise_result
from engines.cache import ExerciseCache, InMemoryExerciseCache, RedisExerciseCache, create_cache_provider
from engines.generation import ExerciseGenerator, OpenAIExerciseGenerator, GenerationError
from engines.progress import LocalProgressStore, RemoteProgressStore, UserProgressLedger
from engines.selector import ExerciseSelector, SelectedExercise
from engines.worksheets import StaticWorksheetRepository, Worksheet

__all__ = [
    "check_answer",
    "calculate_score",
    "create_exercise_result",
    "ExerciseCache",
    "InMemoryExerciseCache",
    "RedisExerciseCache",
    "create_cache_provider",
    "ExerciseGenerator",
    "OpenAIExerciseGenerator",
    "GenerationError",
    "LocalProgressStore",
    "RemoteProgressStore",
    "UserProgressLedger",
    "ExerciseSelector",
    "SelectedExercise",
    "StaticWorksheetRepository",
    "Worksheet",
]
