"""Tests for the static worksheet catalog."""
from pathlib import Path

from core.config import settings
from core.errors import ErrorCode
from engines.worksheets import StaticWorksheetRepository
from models.exercise import CefrLevel, ExerciseType, ParagraphExerciseSet, SentenceExerciseSet


class TestNextUnfinished:
    def test_first_worksheet_when_nothing_completed(self, repository):
        worksheet = repository.next_unfinished(ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, []).unwrap()
        assert worksheet.id == "relative-pronouns-1"

    def test_skips_completed_in_catalog_order(self, repository):
        worksheet = repository.next_unfinished(
            ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, ["relative-pronouns-1"]
        ).unwrap()
        assert worksheet.id == "relative-pronouns-2"

    def test_none_when_level_exhausted(self, repository):
        result = repository.next_unfinished(
            ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, ["relative-pronouns-1", "relative-pronouns-2"]
        )
        assert result.unwrap() is None

    def test_other_levels_ignored(self, repository):
        worksheet = repository.next_unfinished(ExerciseType.RELATIVE_PRONOUNS, "A2.1", []).unwrap()
        assert worksheet.id == "relative-pronouns-3"

    def test_type_without_worksheets(self, repository):
        assert repository.next_unfinished(ExerciseType.VERB_TENSES, CefrLevel.A1, []).unwrap() is None

    def test_unknown_type_is_configuration_error(self, repository):
        result = repository.next_unfinished("interrogativePronouns", CefrLevel.A1, [])
        assert result.is_err()
        assert result.unwrap_err().code is ErrorCode.E2030_UNSUPPORTED_EXERCISE_TYPE

    def test_unknown_level_is_validation_error(self, repository):
        result = repository.next_unfinished(ExerciseType.RELATIVE_PRONOUNS, "C2", [])
        assert result.unwrap_err().code is ErrorCode.E2000_VALIDATION_GENERIC


class TestProgress:
    def test_counts_completed_at_level(self, repository):
        progress = repository.progress(
            ExerciseType.RELATIVE_PRONOUNS, CefrLevel.A1, ["relative-pronouns-2", "some-generated-id"]
        ).unwrap()
        assert (progress.completed, progress.total) == (1, 2)
        assert progress.progress_text == "1/2"


class TestConversion:
    def test_answers_become_lists_and_ids_strings(self, repository):
        worksheet = repository.list_worksheets(ExerciseType.RELATIVE_PRONOUNS).unwrap()[0]
        exercise_set = repository.to_exercise_set(worksheet, ExerciseType.RELATIVE_PRONOUNS).unwrap()

        assert isinstance(exercise_set, SentenceExerciseSet)
        assert exercise_set.id == "relative-pronouns-1"
        assert exercise_set.exercises[0].id == "relative-pronouns-1-1"
        assert exercise_set.exercises[0].correct_answer == ["koji"]

    def test_question_ids_unique_across_worksheets(self, repository):
        ids = []
        for exercise_type in ExerciseType:
            for worksheet in repository.list_worksheets(exercise_type).unwrap():
                exercise_set = repository.to_exercise_set(worksheet, exercise_type).unwrap()
                ids.extend(item.id for item in exercise_set.items())
        assert len(ids) == len(set(ids))

    def test_prefixed_ids_kept(self):
        repo = StaticWorksheetRepository.from_directory(settings.WORKSHEETS_DIR).unwrap()
        worksheet = repo.list_worksheets(ExerciseType.RELATIVE_PRONOUNS).unwrap()[0]
        item = repo.to_exercise_set(worksheet, ExerciseType.RELATIVE_PRONOUNS).unwrap().exercises[0]
        assert item.id == "relative-pronouns-1-e1"

    def test_aspect_defaults(self, repository):
        worksheet = repository.list_worksheets(ExerciseType.VERB_ASPECT).unwrap()[0]
        item = repository.to_exercise_set(worksheet, ExerciseType.VERB_ASPECT).unwrap().exercises[0]

        assert item.is_verb_aspect
        assert item.correct_aspect == "imperfective"
        assert item.options.imperfective == ""

    def test_catalog_is_read_only(self, repository):
        worksheets = repository.list_worksheets(ExerciseType.RELATIVE_PRONOUNS).unwrap()
        assert isinstance(worksheets, tuple)


class TestLoading:
    def test_malformed_entry_rejected(self):
        raw = {
            ExerciseType.VERB_TENSES: [{
                "id": "verb-tenses-1",
                "cefrLevel": "A1",
                "paragraph": "Ja ___1___ kući.",
                "questions": [
                    {"id": 1, "blankNumber": 2, "correctAnswer": "idem", "explanation": "x"},
                ],
            }],
        }
        result = StaticWorksheetRepository.from_raw(raw)
        assert result.unwrap_err().code is ErrorCode.E2031_MALFORMED_WORKSHEET
        assert result.unwrap_err().metadata["worksheet_id"] == "verb-tenses-1"

    def test_entry_without_id_rejected(self):
        raw = {ExerciseType.RELATIVE_PRONOUNS: [{"cefrLevel": "A1", "exercises": []}]}
        assert StaticWorksheetRepository.from_raw(raw).is_err()

    def test_unknown_type_key_rejected(self):
        result = StaticWorksheetRepository.from_raw({"interrogativePronouns": []})
        assert result.unwrap_err().code is ErrorCode.E2030_UNSUPPORTED_EXERCISE_TYPE

    def test_missing_files_give_empty_catalog(self, tmp_path: Path):
        repo = StaticWorksheetRepository.from_directory(tmp_path).unwrap()
        for exercise_type in ExerciseType:
            assert repo.list_worksheets(exercise_type).unwrap() == ()

    def test_invalid_yaml_is_configuration_error(self, tmp_path: Path):
        (tmp_path / "verb-tenses.yaml").write_text("worksheets: [unclosed", encoding="utf-8")
        assert StaticWorksheetRepository.from_directory(tmp_path).is_err()

    def test_bundled_catalog_loads(self):
        repo = StaticWorksheetRepository.from_directory(settings.WORKSHEETS_DIR).unwrap()

        verb_tenses = repo.list_worksheets(ExerciseType.VERB_TENSES).unwrap()
        assert [w.id for w in verb_tenses][:2] == ["verb-tenses-1", "verb-tenses-2"]
        first = repo.to_exercise_set(verb_tenses[0], ExerciseType.VERB_TENSES).unwrap()
        assert isinstance(first, ParagraphExerciseSet)

        for exercise_type in ExerciseType:
            assert repo.list_worksheets(exercise_type).unwrap(), exercise_type

