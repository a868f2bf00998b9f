import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from examlab.models.question import Question
from examlab.models.run import Evaluation, TopologyPrediction
from examlab.models.topology import TopologyDocument, TopologySubject, TopologyTopic, TopologySubtopic

log = logging.getLogger(__name__)

LEVELS = ("subject", "topic", "subtopic")


class TopologyCatalog:
    """
    Справочник предмет -> тема -> подтема, только для чтения.
    Используется для построения промптов классификации и для
    человекочитаемых имен в заметках оценки.
    """

    def __init__(self, subjects: Optional[List[TopologySubject]] = None):
        self.subjects: List[TopologySubject] = list(subjects or [])
        self._subjects = {subject.id: subject for subject in self.subjects}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopologyCatalog":
        document = TopologyDocument.model_validate(data)
        return cls(document.subjects)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TopologyCatalog":
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            catalog = cls.from_dict(json.load(f))
        log.info("📚 Каталог топологии загружен: %d предметов (%s)", len(catalog.subjects), path)
        return catalog

    def find_subject(self, subject_id: Optional[str]) -> Optional[TopologySubject]:
        if not subject_id:
            return None
        return self._subjects.get(subject_id)

    def find_topic(self, subject_id: Optional[str], topic_id: Optional[str]) -> Optional[TopologyTopic]:
        if not topic_id:
            return None
        subject = self.find_subject(subject_id)
        candidates = [subject] if subject else self.subjects
        for candidate in candidates:
            for topic in candidate.topics:
                if topic.id == topic_id:
                    return topic
        return None

    def find_subtopic(self, subject_id: Optional[str], topic_id: Optional[str],
                      subtopic_id: Optional[str]) -> Optional[TopologySubtopic]:
        if not subtopic_id:
            return None
        topic = self.find_topic(subject_id, topic_id)
        if topic:
            topics = [topic]
        else:
            topics = [item for subject in self.subjects for item in subject.topics]
        for candidate in topics:
            for subtopic in candidate.subtopics:
                if subtopic.id == subtopic_id:
                    return subtopic
        return None

    def name_for(self, level: str, subject_id: Optional[str], topic_id: Optional[str],
                 subtopic_id: Optional[str]) -> Optional[str]:
        if level == "subject":
            node = self.find_subject(subject_id)
        elif level == "topic":
            node = self.find_topic(subject_id, topic_id)
        else:
            node = self.find_subtopic(subject_id, topic_id, subtopic_id)
        return node.name if node else None

    def describe(self, level: str, subject_id: Optional[str], topic_id: Optional[str],
                 subtopic_id: Optional[str]) -> str:
        identifier = {"subject": subject_id, "topic": topic_id, "subtopic": subtopic_id}[level]
        if not identifier:
            return "none"
        name = self.name_for(level, subject_id, topic_id, subtopic_id)
        return f"{name} ({identifier})" if name else identifier

    def format_path(self, subject_id: Optional[str], topic_id: Optional[str],
                    subtopic_id: Optional[str]) -> str:
        parts = [
            self.name_for(level, subject_id, topic_id, subtopic_id) or identifier
            for level, identifier in zip(LEVELS, (subject_id, topic_id, subtopic_id))
            if identifier
        ]
        return " > ".join(parts) if parts else "Unclassified"

    def subject_excerpt(self, limit: int) -> List[TopologySubject]:
        return self.subjects[:limit]

    def topic_excerpt(self, subject_id: Optional[str], limit: int) -> List[TopologyTopic]:
        subject = self.find_subject(subject_id)
        return subject.topics[:limit] if subject else []

    def subtopic_excerpt(self, subject_id: Optional[str], topic_id: Optional[str], limit: int) -> List[TopologySubtopic]:
        topic = self.find_topic(subject_id, topic_id)
        return topic.subtopics[:limit] if topic else []


def _prediction_confidence(prediction: TopologyPrediction) -> Optional[float]:
    for value in (prediction.subtopic_confidence, prediction.topic_confidence, prediction.subject_confidence):
        if value is not None:
            return value
    return None


def evaluate_topology(question: Question, prediction: Optional[TopologyPrediction],
                      catalog: TopologyCatalog) -> Evaluation:
    """
    Сравнивает предсказанную классификацию с эталоном по точному равенству id.
    Оцениваются только уровни, заданные в эталоне; score = совпавшие / оцененные.
    """
    truth = question.metadata.topology
    prediction = prediction or TopologyPrediction()

    expected_ids = (truth.subject_id, truth.topic_id, truth.subtopic_id)
    predicted_ids = (prediction.subject_id, prediction.topic_id, prediction.subtopic_id)

    matches: Dict[str, Optional[bool]] = {}
    mismatches = []
    for level, expected_id, predicted_id in zip(LEVELS, expected_ids, predicted_ids):
        if not expected_id:
            matches[level] = None
            continue
        matched = predicted_id == expected_id
        matches[level] = matched
        if not matched:
            mismatches.append(
                f"{level}: expected {catalog.describe(level, *expected_ids)}, "
                f"received {catalog.describe(level, *predicted_ids)}"
            )

    scored = [value for value in matches.values() if value is not None]
    matched_count = sum(1 for value in scored if value)
    score = matched_count / len(scored) if scored else 1.0
    passed = matched_count == len(scored)

    return Evaluation(
        expected=catalog.format_path(*expected_ids),
        received=catalog.format_path(*predicted_ids),
        passed=passed,
        score=score,
        notes="; ".join(mismatches) if mismatches else None,
        metrics={
            "subject_match": matches["subject"],
            "topic_match": matches["topic"],
            "subtopic_match": matches["subtopic"],
            "scored_levels": len(scored),
            "matched_levels": matched_count,
            "confidence": _prediction_confidence(prediction),
        },
    )


def failed_topology_evaluation(question: Question, catalog: TopologyCatalog, error: str) -> Evaluation:
    """Оценка топологии для попытки, прерванной ошибкой: все заданные уровни считаются несовпавшими."""
    truth = question.metadata.topology
    expected_ids = (truth.subject_id, truth.topic_id, truth.subtopic_id)
    flags = {f"{level}_match": (False if identifier else None) for level, identifier in zip(LEVELS, expected_ids)}
    return Evaluation(
        expected=catalog.format_path(*expected_ids),
        received="",
        passed=False,
        score=0.0,
        notes=error,
        metrics={**flags, "scored_levels": sum(1 for value in flags.values() if value is not None),
                 "matched_levels": 0, "confidence": None},
    )
