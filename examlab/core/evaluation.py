import re
from typing import List, Optional, Set

from examlab.models.question import Question, QuestionOption, QuestionType
from examlab.models.run import Evaluation, ModelAnswer

LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

TRUTHY = {"true", "t", "yes", "y", "1"}
FALSY = {"false", "f", "no", "n", "0"}

_QUOTES_RE = re.compile(r"[`\"'“”‘’]")
_SPACES_RE = re.compile(r"\s+")
_LEADING_LABEL_RE = re.compile(r"^(?:(?:option|choice)\s+)?\(?([a-z])(?:[).:]|$)")
_STANDALONE_INT_RE = re.compile(r"(?<![\w.])(\d+)(?![\w]|\.\d)")
_KEYWORD_LABEL_RE = re.compile(r"\b(?:answer|option|choice)(?:\s+is)?\s*[:\-]?\s*\(?([a-z])\)?(?![a-z0-9])")
_MULTI_SPLIT_RE = re.compile(r"[,;/\n]|\band\b", re.IGNORECASE)
_FLOAT_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")


def sanitize(value: str, lowercase: bool = True) -> str:
    """Убирает кавычки и обратные апострофы, схлопывает пробелы."""
    cleaned = _SPACES_RE.sub(" ", _QUOTES_RE.sub("", value or "")).strip()
    return cleaned.lower() if lowercase else cleaned


def option_label(index: int) -> str:
    return LETTERS[index] if index < len(LETTERS) else str(index + 1)


def _label_to_order(label: str, options: List[QuestionOption]) -> Optional[int]:
    if label.isdigit():
        index = int(label) - 1
    else:
        index = LETTERS.index(label.upper())
    if 0 <= index < len(options):
        return options[index].order
    return None


def resolve_option_order(value: str, options: List[QuestionOption]) -> Optional[int]:
    """
    Сопоставляет свободный текст ответа с вариантом и возвращает его order.

    Порядок: точное совпадение нормализованного текста варианта, буква-метка
    ("B", "b)", "(C)", "Option D"; буква в начале считается меткой, только если
    за ней идет ")", ".", ":" или конец), буква после слов answer/option/choice,
    первое отдельно стоящее целое число, вхождение текста варианта в ответ.

    Число сначала сверяется с текстами вариантов ("x = 4" при варианте "4"),
    иначе считается номером варианта с единицы. Буквы и номера отсчитываются
    от первого варианта по порядку.
    """
    ordered = sorted(options, key=lambda option: option.order)
    raw = sanitize(value)
    if not raw or not ordered:
        return None

    normalized = [(option, sanitize(option.text)) for option in ordered]

    for option, text in normalized:
        if text and raw == text:
            return option.order

    for pattern in (_LEADING_LABEL_RE, _KEYWORD_LABEL_RE):
        match = pattern.search(raw)
        if match:
            order = _label_to_order(match.group(1), ordered)
            if order is not None:
                return order

    number = _STANDALONE_INT_RE.search(raw)
    if number:
        digits = number.group(1)
        for option, text in normalized:
            if text == digits:
                return option.order
        order = _label_to_order(digits, ordered)
        if order is not None:
            return order

    contained = [(option, text) for option, text in normalized if text and text in raw]
    if contained:
        # "10" не должен совпасть с вариантом "1"
        option, _ = max(contained, key=lambda item: len(item[1]))
        return option.order
    return None


def resolve_option_set(value: str, options: List[QuestionOption]) -> Set[int]:
    segments = [segment.strip() for segment in _MULTI_SPLIT_RE.split(value or "")]
    selected = set()
    for segment in segments:
        if not segment:
            continue
        order = resolve_option_order(segment, options)
        if order is not None:
            selected.add(order)

    if not selected:
        order = resolve_option_order(value or "", options)
        if order is not None:
            selected.add(order)
    return selected


def parse_leading_float(value: str) -> Optional[float]:
    match = _FLOAT_RE.match((value or "").strip())
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def parse_boolean(value: str) -> Optional[bool]:
    token = sanitize(value).rstrip(".!")
    if token in TRUTHY:
        return True
    if token in FALSY:
        return False
    return None


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _describe_options(orders, options: List[QuestionOption]) -> List[str]:
    ordered = sorted(options, key=lambda option: option.order)
    described = []
    for index, option in enumerate(ordered):
        if option.order in orders:
            described.append(f"{option_label(index)}) {option.text}")
    return described


def expected_answer_summary(question: Question) -> str:
    """Человекочитаемое эталонное значение ответа."""
    answer = question.answer
    if answer.kind == "single":
        described = _describe_options({answer.correct_option}, question.options)
        return described[0] if described else str(answer.correct_option)
    if answer.kind == "multiple":
        described = _describe_options(set(answer.correct_options), question.options)
        return ", ".join(described) if described else ", ".join(str(item) for item in answer.correct_options)
    if answer.kind == "numeric":
        low, high = answer.range.min, answer.range.max
        if low is not None and high is not None:
            if low == high:
                return _format_number(low)
            return f"{_format_number(low)} - {_format_number(high)}"
        if answer.accepted_answers:
            return ", ".join(answer.accepted_answers)
        return "Numeric answer"
    if answer.kind == "boolean":
        return "True" if answer.value else "False"
    if answer.accepted_answers:
        return ", ".join(answer.accepted_answers)
    return "Manual review"


def _result(expected: str, received: str, passed: bool, notes: Optional[str] = None, **metrics) -> Evaluation:
    return Evaluation(
        expected=expected,
        received=received,
        passed=passed,
        score=1.0 if passed else 0.0,
        notes=notes,
        metrics=metrics,
    )


def _evaluate_single(question: Question, response: str) -> Evaluation:
    expected = expected_answer_summary(question)
    order = resolve_option_order(response, question.options)
    if order is None:
        return _result(expected, response, False, "Could not parse selected option.")

    received = _describe_options({order}, question.options)[0]
    passed = order == question.answer.correct_option
    return _result(expected, received, passed, resolved_option=order)


def _evaluate_multiple(question: Question, response: str) -> Evaluation:
    expected_set = set(question.answer.correct_options)
    selected = resolve_option_set(response, question.options)
    expected = expected_answer_summary(question)
    received = ", ".join(_describe_options(selected, question.options)) or response

    passed = selected == expected_set
    notes = None
    if not passed:
        if len(selected) != len(expected_set):
            notes = f"Expected {len(expected_set)} option(s), received {len(selected)}."
        else:
            notes = "Selected options do not match the expected set."
    return _result(expected, received, passed, notes, resolved_options=sorted(selected))


def _matches_accepted(response: str, accepted: List[str], case_sensitive: bool) -> bool:
    candidate = sanitize(response, lowercase=not case_sensitive)
    return any(candidate == sanitize(item, lowercase=not case_sensitive) for item in accepted)


def _evaluate_numeric(question: Question, response: str) -> Evaluation:
    answer = question.answer
    expected = expected_answer_summary(question)
    value = parse_leading_float(response)

    passed = False
    if value is not None:
        low, high = answer.range.min, answer.range.max
        if low is not None and high is not None:
            passed = low <= value <= high
        else:
            for item in answer.accepted_answers:
                accepted_value = parse_leading_float(item)
                if accepted_value is not None and abs(accepted_value - value) < 1e-9:
                    passed = True
                    break

    if not passed and answer.accepted_answers:
        passed = _matches_accepted(response, answer.accepted_answers, answer.case_sensitive)

    received = _format_number(value) if value is not None else response
    notes = None
    if not passed:
        notes = "Numeric answer outside accepted tolerance." if value is not None else "Could not parse numeric answer."
    return _result(expected, received, passed, notes, parsed_value=value)


def _evaluate_boolean(question: Question, response: str) -> Evaluation:
    expected = expected_answer_summary(question)
    value = parse_boolean(response)
    if value is None:
        return _result(expected, response, False, "Could not parse boolean answer.")
    return _result(expected, "True" if value else "False", value == question.answer.value)


def _evaluate_descriptive(question: Question, response: str) -> Evaluation:
    answer = question.answer
    if not answer.accepted_answers:
        return _result("Manual review", response, False, "No reference answers available; manual review required.")

    passed = _matches_accepted(response, answer.accepted_answers, answer.case_sensitive)
    notes = None if passed else "Response does not match any accepted answer."
    return _result(expected_answer_summary(question), response, passed, notes)


_EVALUATORS = {
    QuestionType.SINGLE_CHOICE: ("single", _evaluate_single),
    QuestionType.MULTI_CHOICE: ("multiple", _evaluate_multiple),
    QuestionType.NUMERIC: ("numeric", _evaluate_numeric),
    QuestionType.BOOLEAN: ("boolean", _evaluate_boolean),
    QuestionType.DESCRIPTIVE: ("descriptive", _evaluate_descriptive),
}


def evaluate_answer(question: Question, answer: ModelAnswer) -> Evaluation:
    """Оценивает разобранный ответ модели по правилам типа вопроса. Оценка 0 или 1."""
    kind, evaluator = _EVALUATORS[question.type]
    if question.answer.kind != kind:
        return _result(
            expected_answer_summary(question), answer.answer, False,
            f"Answer specification '{question.answer.kind}' does not match question type '{question.type.value}'.",
        )
    return evaluator(question, answer.answer)


def failed_evaluation(question: Question, error: str) -> Evaluation:
    """Оценка для попытки, прерванной ошибкой этапа."""
    return _result(expected_answer_summary(question), "", False, error)
