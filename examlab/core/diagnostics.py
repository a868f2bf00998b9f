"""
Двухуровневая диагностика профиля перед полным прогоном.

HANDSHAKE: список моделей на сервере и один структурированный запрос
с эхом {"answer": "ready"}.

READINESS: полный производственный конвейер (subject -> topic -> subtopic
-> answer) на тривиальном тестовом вопросе. Проверяется соблюдение
протокола, а не правильность ответа.

Диагностика не трогает прогоны: она только возвращает DiagnosticsResult,
который применяется к профилю через apply_diagnostics_result.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from examlab.core.evaluation import resolve_option_order
from examlab.core.interfaces import IChatClient, LLMClientError, ResponseParseError
from examlab.core.pipeline import PipelineContext, StageFailure, StagePipeline
from examlab.core.response_parser import parse_answer
from examlab.core.topology import TopologyCatalog
from examlab.models.profile import (
    CompatibilityStatus, DiagnosticsLevel, DiagnosticsLogEntry, DiagnosticsResult, DiagnosticsStatus, ModelProfile
)
from examlab.models.question import Question, QuestionOption, QuestionType, SingleAnswer

log = logging.getLogger(__name__)

READINESS_QUESTION = Question(
    id="readiness-check",
    type=QuestionType.SINGLE_CHOICE,
    difficulty="easy",
    prompt="What is 2 + 2?",
    options=[
        QuestionOption(id=0, order=0, text="3"),
        QuestionOption(id=1, order=1, text="4"),
        QuestionOption(id=2, order=2, text="5"),
        QuestionOption(id=3, order=3, text="6"),
    ],
    answer=SingleAnswer(correct_option=1),
)

HANDSHAKE_MESSAGES = [
    {"role": "system", "content": "You are a connectivity probe. Respond only with JSON."},
    {"role": "user", "content": 'Reply with exactly this JSON object: {"answer": "ready"}'},
]


class _DiagnosticsLog:
    def __init__(self, level: DiagnosticsLevel, profile: ModelProfile, clock: Callable[[], datetime]):
        self.level = level
        self.profile = profile
        self.clock = clock
        self.entries: List[DiagnosticsLogEntry] = []

    def add(self, message: str, severity: str = "info") -> None:
        self.entries.append(DiagnosticsLogEntry(
            id=str(uuid.uuid4()), timestamp=self.clock(), message=message, severity=severity,
        ))
        level = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}[severity]
        log.log(level, "[%s %s] %s", self.level.value, self.profile.name, message)


class DiagnosticsRunner:

    def __init__(self, client_factory: Callable[[ModelProfile], IChatClient], catalog: TopologyCatalog,
                 clock: Callable[[], datetime] = datetime.now):
        self.client_factory = client_factory
        self.catalog = catalog
        self.clock = clock

    def run(self, profile: ModelProfile, level: DiagnosticsLevel) -> DiagnosticsResult:
        level = DiagnosticsLevel(level)
        if level == DiagnosticsLevel.HANDSHAKE:
            return self.handshake(profile)
        return self.readiness(profile)

    def _result(self, profile: ModelProfile, trail: _DiagnosticsLog, started_at: datetime, passed: bool,
                summary: str, fallback: bool, metadata: Dict[str, Any]) -> DiagnosticsResult:
        return DiagnosticsResult(
            id=str(uuid.uuid4()),
            profile_id=profile.id,
            level=trail.level,
            started_at=started_at,
            completed_at=self.clock(),
            status=DiagnosticsStatus.PASS if passed else DiagnosticsStatus.FAIL,
            summary=summary,
            fallback_applied=fallback,
            logs=trail.entries,
            metadata=metadata,
        )

    def handshake(self, profile: ModelProfile) -> DiagnosticsResult:
        started_at = self.clock()
        trail = _DiagnosticsLog(DiagnosticsLevel.HANDSHAKE, profile, self.clock)
        metadata: Dict[str, Any] = {}
        client = self.client_factory(profile)

        trail.add(f"Listing models at {profile.base_url}.")
        try:
            models = client.list_models()
        except LLMClientError as e:
            trail.add(f"Unable to list models: {e}", "error")
            return self._result(profile, trail, started_at, False, f"Endpoint unreachable: {e}", False, metadata)

        model_ids = [str(item.get("id")) for item in models if isinstance(item, dict) and item.get("id")]
        metadata["available_models"] = model_ids
        trail.add(f"Endpoint reachable: {len(model_ids)} model(s) available.")
        if profile.model_id not in model_ids:
            trail.add(f"Model '{profile.model_id}' is not listed by the server; the request may trigger a load.", "warn")

        trail.add("Sending structured-output echo request.")
        try:
            result = client.chat(HANDSHAKE_MESSAGES, schema="answer", prefer_structured=True, temperature=0)
        except LLMClientError as e:
            trail.add(f"Echo request failed: {e}", "error")
            return self._result(profile, trail, started_at, False, f"Echo request failed: {e}", False, metadata)

        metadata["supports_structured_output"] = not result.fallback_used
        metadata["json_format"] = result.json_format
        metadata["latency_ms"] = result.latency_ms
        metadata["raw_response"] = result.text
        if result.fallback_used:
            trail.add("Server rejected structured output; plain-text fallback used.", "warn")
        else:
            trail.add(f"Structured output accepted ({result.json_format}).")

        try:
            answer = parse_answer(result.text)
        except ResponseParseError as e:
            trail.add(f"Could not parse echo response: {e}", "error")
            return self._result(profile, trail, started_at, False, f"Unparseable echo response: {e}",
                                result.fallback_used, metadata)

        if "ready" not in answer.answer.lower():
            trail.add(f"Unexpected echo answer: {answer.answer!r}", "error")
            return self._result(profile, trail, started_at, False, "Echo response did not contain 'ready'.",
                                result.fallback_used, metadata)

        trail.add("Handshake succeeded.")
        summary = "Handshake passed" + (" (plain-text fallback)." if result.fallback_used else " (structured output).")
        return self._result(profile, trail, started_at, True, summary, result.fallback_used, metadata)

    def readiness(self, profile: ModelProfile) -> DiagnosticsResult:
        started_at = self.clock()
        trail = _DiagnosticsLog(DiagnosticsLevel.READINESS, profile, self.clock)

        # Все этапы включены: проверяется полный протокол, даже если профиль отключает часть шагов
        probe_profile = profile.model_copy(update={
            "benchmark_steps": [step.model_copy(update={"enabled": True}) for step in profile.benchmark_steps],
        })
        pipeline = StagePipeline(self.client_factory(probe_profile), self.catalog, probe_profile)
        question = READINESS_QUESTION

        trail.add("Running the four-stage pipeline on the readiness question.")
        failed_stage: Optional[str] = None
        error: Optional[str] = None
        try:
            context = pipeline.execute(question)
        except StageFailure as failure:
            context = failure.context
            failed_stage = failure.stage
            error = str(failure.cause)

        metadata = self._trace(context)
        if profile.metadata.supports_structured_output is False:
            # Структурированный режим не запрашивался, вывод о поддержке делать нельзя
            metadata.pop("supports_structured_output")
        for step in context.steps:
            trail.add(f"Stage {step.id}: {len(step.response_text)} chars in {step.latency_ms:.0f} ms.")
        if context.fallback_used:
            trail.add("Server rejected structured output; plain-text fallback used.", "warn")

        if failed_stage is not None:
            metadata["failed_stage"] = failed_stage
            metadata["error"] = error
            trail.add(f"Stage {failed_stage} failed: {error}", "error")
            return self._result(profile, trail, started_at, False, f"Readiness failed at {failed_stage}: {error}",
                                context.fallback_used, metadata)

        missing = [name for name, value in (("subject", context.subject_id), ("topic", context.topic_id),
                                            ("subtopic", context.subtopic_id)) if not value]
        if missing:
            trail.add(f"Missing topology identifiers: {', '.join(missing)}", "error")
            return self._result(profile, trail, started_at, False, "Topology identifiers were not recovered.",
                                context.fallback_used, metadata)

        resolved = resolve_option_order(context.answer.answer, question.options)
        metadata["resolved_option"] = resolved
        if resolved is None:
            trail.add(f"Answer {context.answer.answer!r} does not refer to any option.", "error")
            return self._result(profile, trail, started_at, False, "Answer has the wrong shape.",
                                context.fallback_used, metadata)

        correct = resolved == question.answer.correct_option
        metadata["answer_correct"] = correct
        if correct:
            trail.add("Readiness answer is correct.")
        else:
            trail.add("Readiness answer is incorrect (not required to pass).", "warn")

        trail.add("Readiness check passed.")
        return self._result(profile, trail, started_at, True, "Pipeline protocol compliance verified.",
                            context.fallback_used, metadata)

    @staticmethod
    def _trace(context: PipelineContext) -> Dict[str, Any]:
        return {
            "stages": {
                step.id: {
                    "prompt": step.prompt,
                    "response_text": step.response_text,
                    "latency_ms": step.latency_ms,
                    "fallback_used": step.fallback_used,
                    "notes": step.notes,
                }
                for step in context.steps
            },
            "topology": {
                "subject_id": context.subject_id,
                "topic_id": context.topic_id,
                "subtopic_id": context.subtopic_id,
            },
            "answer": context.answer.answer if context.answer else None,
            "supports_structured_output": not context.fallback_used,
        }


def apply_diagnostics_result(profile: ModelProfile, result: DiagnosticsResult,
                             now: Optional[datetime] = None) -> ModelProfile:
    """Новая версия профиля с добавленным результатом и обновленными метаданными."""
    metadata = profile.metadata.model_copy()
    if "supports_structured_output" in result.metadata:
        metadata.supports_structured_output = bool(result.metadata["supports_structured_output"])
    if result.metadata.get("json_format"):
        metadata.json_format = result.metadata["json_format"]

    passed = result.status == DiagnosticsStatus.PASS
    if result.level == DiagnosticsLevel.HANDSHAKE:
        metadata.last_handshake_at = result.completed_at
        if not passed:
            metadata.compatibility_status = CompatibilityStatus.INCOMPATIBLE
    else:
        metadata.last_readiness_at = result.completed_at
        metadata.compatibility_status = CompatibilityStatus.COMPATIBLE if passed else CompatibilityStatus.INCOMPATIBLE
    metadata.compatibility_summary = result.summary

    return profile.model_copy(update={
        "diagnostics": list(profile.diagnostics) + [result],
        "metadata": metadata,
        "updated_at": now or datetime.now(),
    })
