import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from examlab.models.question import Question, QuestionDatasetSummary

log = logging.getLogger(__name__)


class QuestionRepository:
    """
    Упорядоченный банк вопросов, только для чтения. Id вопросов для
    движка непрозрачны. Файл: {"label": ..., "filters": [...], "questions": [...]}
    или просто список вопросов.
    """

    def __init__(self, questions: Iterable[Question], label: str = "Question bank", filters: Optional[List[str]] = None):
        self._questions: List[Question] = list(questions)
        self._index: Dict[str, Question] = {question.id: question for question in self._questions}
        self.label = label
        self.filters = list(filters or [])

    @classmethod
    def from_dict(cls, data: Union[Dict[str, Any], List[Any]]) -> "QuestionRepository":
        if isinstance(data, list):
            return cls([Question.model_validate(item) for item in data])
        questions = [Question.model_validate(item) for item in data.get("questions", [])]
        return cls(questions, label=data.get("label", "Question bank"), filters=data.get("filters"))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "QuestionRepository":
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            repository = cls.from_dict(json.load(f))
        log.info("📚 Загружено %d вопросов из %s", len(repository), path)
        return repository

    def __len__(self) -> int:
        return len(self._questions)

    def all(self) -> List[Question]:
        return list(self._questions)

    def get(self, question_id: str) -> Optional[Question]:
        return self._index.get(question_id)

    def select(self, question_ids: Optional[Iterable[str]] = None) -> List[Question]:
        """Вопросы в порядке переданных id; без id возвращается весь банк. Неизвестные id пропускаются."""
        if question_ids is None:
            return self.all()
        selected = []
        for question_id in question_ids:
            question = self._index.get(question_id)
            if question is None:
                log.warning("⚠️ Вопрос %s не найден в банке и будет пропущен", question_id)
                continue
            selected.append(question)
        return selected

    def summary(self, filters: Optional[List[str]] = None) -> QuestionDatasetSummary:
        return QuestionDatasetSummary(label=self.label, total=len(self._questions),
                                      filters=list(filters if filters is not None else self.filters))
