"""
Построители промптов для четырех этапов конвейера.

Каталог в промпте ограничен (SUBJECT_LIMIT, TOPIC_LIMIT, SUBTOPIC_LIMIT),
чтобы уложиться в типичное окно контекста. Пустой каталог не отменяет этап:
модель получает явную инструкцию выбрать по своему усмотрению.
"""
import json
from typing import Dict, List, Optional

from examlab.core.evaluation import option_label
from examlab.core.topology import TopologyCatalog
from examlab.models.question import Question, QuestionType
from examlab.models.run import TopologyPrediction

SUBJECT_LIMIT = 12
TOPIC_LIMIT = 12
SUBTOPIC_LIMIT = 20

NO_OPTIONS_LINE = "No options available, use best judgment."

RETURN_FORMAT_LINE = (
    "Return JSON with keys `answer`, `explanation`, and `confidence` (0-1). "
    "For multiple answers, join option letters using commas - e.g., \"A,C\"."
)


def format_question_reference(question: Question) -> str:
    lines = [f"Question ({question.type.value}): {question.prompt}"]
    if question.instructions:
        lines.append(f"Instructions: {question.instructions}")

    options = question.ordered_options()
    if options:
        lines.append("")
        lines.append("Options:")
        for index, option in enumerate(options):
            lines.append(f"{option_label(index)}. {option.text}")
    return "\n".join(lines)


def _catalog_lines(nodes) -> str:
    if not nodes:
        return NO_OPTIONS_LINE
    return "\n".join(f"- {node.id} :: {node.name}" for node in nodes)


def _with_preamble(preamble: Optional[str], sections: List[str]) -> str:
    if preamble and preamble.strip():
        sections = [preamble.strip()] + sections
    return "\n\n".join(sections)


def build_subject_prompt(question: Question, catalog: TopologyCatalog, preamble: Optional[str] = None) -> str:
    return _with_preamble(preamble, [
        f"SUBJECT CATALOG:\n{_catalog_lines(catalog.subject_excerpt(SUBJECT_LIMIT))}",
        "Rules:\n"
        "1. Copy the subjectId exactly as shown (no new IDs, no \"null\").\n"
        "2. Always provide your best guess and set `confidence` between 0 and 1.\n"
        "3. Use low confidence (e.g., 0.2) if unsure, but still return a subjectId.",
        'Return JSON:\n{\n  "subjectId": "<subject id>",\n  "confidence": 0.6\n}',
        "--- QUESTION ---",
        format_question_reference(question),
    ])


def build_topic_prompt(question: Question, catalog: TopologyCatalog, subject_id: Optional[str],
                       preamble: Optional[str] = None) -> str:
    subject = catalog.find_subject(subject_id)
    if subject:
        selected = f"{subject.id} ({subject.name})"
    else:
        selected = f"{subject_id} (unknown subject)" if subject_id else "unknown (no subject resolved)"

    return _with_preamble(preamble, [
        f"Selected subject: {selected}",
        f"TOPIC CATALOG:\n{_catalog_lines(catalog.topic_excerpt(subject_id, TOPIC_LIMIT))}",
        "Rules:\n"
        "1. Return the exact topicId shown (no \"null\").\n"
        "2. If unsure or if the subject seems wrong, pick the closest topic and lower the confidence.\n"
        "3. Confidence must be between 0 and 1.",
        'Return JSON:\n{\n  "topicId": "<topic id>",\n  "confidence": 0.5\n}',
        "--- QUESTION ---",
        format_question_reference(question),
    ])


def build_subtopic_prompt(question: Question, catalog: TopologyCatalog, subject_id: Optional[str],
                          topic_id: Optional[str], preamble: Optional[str] = None) -> str:
    topic = catalog.find_topic(subject_id, topic_id)
    if topic:
        selected_topic = f"{topic.id} ({topic.name})"
    else:
        selected_topic = f"{topic_id} (unknown topic)" if topic_id else "unknown (no topic resolved)"

    return _with_preamble(preamble, [
        f"Subject: {catalog.describe('subject', subject_id, topic_id, None)}\nTopic: {selected_topic}",
        f"SUBTOPIC CATALOG:\n{_catalog_lines(catalog.subtopic_excerpt(subject_id, topic_id, SUBTOPIC_LIMIT))}",
        "Rules:\n"
        "1. Return the exact subtopicId; never respond with \"null\".\n"
        "2. Provide your best guess even if uncertain and reflect that in the confidence score.\n"
        "3. Confidence must be between 0 and 1.",
        'Return JSON:\n{\n  "subtopicId": "<subtopic id>",\n  "confidence": 0.4\n}',
        "--- QUESTION ---",
        format_question_reference(question),
    ])


def type_guidance(question: Question) -> Optional[str]:
    if question.type == QuestionType.SINGLE_CHOICE:
        return "Answer with the letter of the single correct option."
    if question.type == QuestionType.MULTI_CHOICE:
        return "Select every correct option and join their letters with commas."
    if question.type == QuestionType.NUMERIC and question.answer.kind == "numeric":
        numeric_range = question.answer.range
        if numeric_range.min is not None and numeric_range.max is not None:
            precision = numeric_range.precision if numeric_range.precision is not None else "unspecified"
            return (f"Answer with a number only. Numeric tolerance: "
                    f"[{numeric_range.min}, {numeric_range.max}] (precision {precision}).")
        return "Answer with a number only."
    if question.type == QuestionType.BOOLEAN:
        return "Answer with `true` or `false`."
    return None


def build_answer_prompt(question: Question, prediction: Optional[TopologyPrediction],
                        catalog: TopologyCatalog, preamble: Optional[str] = None) -> str:
    prediction = prediction or TopologyPrediction()
    topology_context: Dict[str, Optional[str]] = {
        "subjectId": prediction.subject_id,
        "topicId": prediction.topic_id,
        "subtopicId": prediction.subtopic_id,
        "path": catalog.format_path(prediction.subject_id, prediction.topic_id, prediction.subtopic_id),
    }

    lines = [format_question_reference(question), "", RETURN_FORMAT_LINE]
    guidance = type_guidance(question)
    if guidance:
        lines.append(guidance)
    lines.append("")
    lines.append("Topology classification:")
    lines.append(json.dumps(topology_context, ensure_ascii=False))
    return _with_preamble(preamble, ["\n".join(lines)])


def build_messages(system_prompt: Optional[str], user_prompt: str) -> List[Dict[str, str]]:
    messages = []
    if system_prompt and system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    return messages
