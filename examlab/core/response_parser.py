"""
Извлечение структурированных ответов из текста модели.

Модели часто оборачивают JSON в ```json ... ``` или добавляют пояснения
до и после объекта. Парсер вырезает первый сбалансированный объект {...}
и декодирует его. Если объекта нет или нет обязательного поля, бросается
ResponseParseError: свободный текст никогда не угадывается.
"""
import json
import re
from typing import Any, Dict, Optional, Tuple

from examlab.core.interfaces import ResponseParseError
from examlab.models.run import ModelAnswer, TopologyStageResult


_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_ABSENT_SENTINELS = {"", "null", "none"}

_STAGE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "subject": ("subjectId", "subject_id", "subject", "Subject"),
    "topic": ("topicId", "topic_id", "topic", "Topic"),
    "subtopic": ("subtopicId", "subtopic_id", "subtopic", "Subtopic"),
}


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.search(stripped)
    if match:
        return match.group(1).strip()
    # Незакрытый блок: ```json { ... }
    if stripped.startswith("```"):
        stripped = re.sub(r"^```(?:json|JSON)?", "", stripped).strip()
    return stripped


def extract_json_object(text: str) -> Optional[str]:
    """Первый сбалансированный {...} с учетом строк и экранирования."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find("{", start + 1)
    return None


def load_json_object(text: str) -> Dict[str, Any]:
    if text is None or not str(text).strip():
        raise ResponseParseError("Empty model response.", raw_text=text or "")

    candidate = extract_json_object(strip_code_fences(str(text)))
    if candidate is None:
        raise ResponseParseError("No JSON object found in model response.", raw_text=text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Malformed JSON in model response: {e.msg}.", raw_text=text) from e
    if not isinstance(parsed, dict):
        raise ResponseParseError("Model response JSON is not an object.", raw_text=text)
    return parsed


def clamp_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return min(1.0, max(0.0, number))


def _answer_to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        parts = [_answer_to_text(item) for item in value]
        return ", ".join(part for part in parts if part)
    return None


def parse_answer(text: str) -> ModelAnswer:
    payload = load_json_object(text)
    answer = _answer_to_text(payload.get("answer"))
    if not answer:
        raise ResponseParseError("Model response is missing the `answer` field.", raw_text=text)

    explanation = payload.get("explanation")
    return ModelAnswer(
        answer=answer,
        explanation=str(explanation) if explanation is not None else None,
        confidence=clamp_confidence(payload.get("confidence")),
        raw=payload,
    )


def _normalize_identifier(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    identifier = str(value).strip()
    if identifier.lower() in _ABSENT_SENTINELS:
        return None
    return identifier


def _read_stage_field(payload: Dict[str, Any], stage: str) -> Optional[str]:
    containers = [payload]
    nested = payload.get("topology")
    if isinstance(nested, dict):
        containers.append(nested)

    for container in containers:
        for key in _STAGE_FIELDS[stage]:
            if key in container:
                identifier = _normalize_identifier(container[key])
                if identifier:
                    return identifier
    return None


def _parse_stage(text: str, stage: str, subject_id: Optional[str] = None,
                 topic_id: Optional[str] = None) -> TopologyStageResult:
    payload = load_json_object(text)
    identifier = _read_stage_field(payload, stage)
    if identifier is None:
        raise ResponseParseError(
            f"Model response is missing `{_STAGE_FIELDS[stage][0]}` for the {stage} stage.", raw_text=text
        )
    return TopologyStageResult(
        stage=stage,
        id=identifier,
        confidence=clamp_confidence(payload.get("confidence")),
        raw=payload,
        subject_id=subject_id,
        topic_id=topic_id,
    )


def parse_subject_stage(text: str) -> TopologyStageResult:
    return _parse_stage(text, "subject")


def parse_topic_stage(text: str, subject_id: Optional[str] = None) -> TopologyStageResult:
    return _parse_stage(text, "topic", subject_id=subject_id)


def parse_subtopic_stage(text: str, subject_id: Optional[str] = None,
                         topic_id: Optional[str] = None) -> TopologyStageResult:
    return _parse_stage(text, "subtopic", subject_id=subject_id, topic_id=topic_id)
