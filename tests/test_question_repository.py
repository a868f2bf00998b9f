import json

import pytest

from examlab.core.question_repository import QuestionRepository
from examlab.models.question import QuestionType
from examlab.web.settings import PACKAGE_ROOT


@pytest.fixture
def repository(questions):
    return QuestionRepository(questions, label="Sample exam", filters=["math"])


class TestQuestionRepository:
    """Тесты банка вопросов"""

    def test_select_all(self, repository):
        assert [q.id for q in repository.select()] == ["q-single", "q-multi", "q-numeric"]

    def test_select_keeps_requested_order(self, repository):
        assert [q.id for q in repository.select(["q-numeric", "q-single"])] == ["q-numeric", "q-single"]

    def test_unknown_ids_are_skipped(self, repository, caplog):
        assert [q.id for q in repository.select(["missing", "q-multi"])] == ["q-multi"]
        assert "missing" in caplog.text

    def test_get(self, repository):
        assert repository.get("q-multi").type == QuestionType.MULTI_CHOICE
        assert repository.get("missing") is None

    def test_summary(self, repository):
        assert repository.summary().model_dump() == {"label": "Sample exam", "total": 3, "filters": ["math"]}
        assert repository.summary(["physics"]).filters == ["physics"]

    def test_from_plain_list(self, single_question):
        repository = QuestionRepository.from_dict([single_question.model_dump(mode="json")])
        assert len(repository) == 1
        assert repository.label == "Question bank"

    def test_load_from_file(self, tmp_path, questions):
        path = tmp_path / "questions.json"
        path.write_text(json.dumps({
            "label": "Mock exam",
            "questions": [question.model_dump(mode="json") for question in questions],
        }), encoding="utf-8")
        repository = QuestionRepository.load(path)
        assert repository.label == "Mock exam"
        assert repository.all() == questions

    def test_bundled_sample_bank_loads(self):
        repository = QuestionRepository.load(PACKAGE_ROOT / "data" / "questions.json")
        assert len(repository) == 5
        assert {question.type for question in repository.all()} == set(QuestionType)
