"""
Линейный конвейер этапов: subject -> topic -> subtopic -> answer.

Каждый этап получает накопленный PipelineContext, отправляет один запрос
и возвращает обновленный контекст. Ошибка этапа (сеть, таймаут, разбор)
оборачивается в StageFailure, который несет частичный контекст, чтобы
вызывающий код мог сохранить трассу уже выполненных этапов.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from examlab.core.interfaces import ExamlabError, IChatClient, LLMClientError, ResponseParseError
from examlab.core.prompts import (
    build_answer_prompt, build_messages, build_subject_prompt, build_subtopic_prompt, build_topic_prompt
)
from examlab.core.response_parser import (
    parse_answer, parse_subject_stage, parse_subtopic_stage, parse_topic_stage
)
from examlab.core.topology import TopologyCatalog
from examlab.models.profile import ModelProfile, BenchmarkStepConfig
from examlab.models.question import Question
from examlab.models.run import ModelAnswer, StepResult, TokenUsage, TopologyPrediction, TopologyStageResult

log = logging.getLogger(__name__)

SUBJECT_STEP = "topology-subject"
TOPIC_STEP = "topology-topic"
SUBTOPIC_STEP = "topology-subtopic"
ANSWER_STEP = "answer"


@dataclass
class PipelineContext:
    question: Question
    subject: Optional[TopologyStageResult] = None
    topic: Optional[TopologyStageResult] = None
    subtopic: Optional[TopologyStageResult] = None
    answer: Optional[ModelAnswer] = None
    steps: List[StepResult] = field(default_factory=list)
    prefer_structured: bool = True
    fallback_used: bool = False

    @property
    def subject_id(self) -> Optional[str]:
        return self.subject.id if self.subject else None

    @property
    def topic_id(self) -> Optional[str]:
        return self.topic.id if self.topic else None

    @property
    def subtopic_id(self) -> Optional[str]:
        return self.subtopic.id if self.subtopic else None

    @property
    def prediction(self) -> TopologyPrediction:
        return TopologyPrediction(
            subject_id=self.subject_id,
            topic_id=self.topic_id,
            subtopic_id=self.subtopic_id,
            subject_confidence=self.subject.confidence if self.subject else None,
            topic_confidence=self.topic.confidence if self.topic else None,
            subtopic_confidence=self.subtopic.confidence if self.subtopic else None,
        )

    @property
    def latency_ms(self) -> float:
        return sum(step.latency_ms for step in self.steps)

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=sum(step.usage.prompt_tokens for step in self.steps),
            completion_tokens=sum(step.usage.completion_tokens for step in self.steps),
            total_tokens=sum(step.usage.total_tokens for step in self.steps),
        )

    def raw_responses(self) -> Dict[str, str]:
        return {step.id: step.response_text for step in self.steps if step.response_text}


class StageFailure(ExamlabError):
    """Этап конвейера не смог получить или разобрать ответ"""

    def __init__(self, stage: str, cause: Exception, context: PipelineContext):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
        self.context = context


class PipelineStage(ABC):
    step_id: str = ""
    order: int = 0
    schema: Optional[str] = None
    default_label: str = ""
    can_skip: bool = True

    def __init__(self, catalog: TopologyCatalog):
        self.catalog = catalog

    @abstractmethod
    def build_prompt(self, context: PipelineContext, preamble: Optional[str]) -> str:
        pass

    @abstractmethod
    def apply(self, context: PipelineContext, text: str, step: StepResult) -> None:
        """Разбирает ответ и записывает результат в контекст. Может бросить ResponseParseError."""
        pass

    def run(self, context: PipelineContext, client: IChatClient, profile: ModelProfile) -> PipelineContext:
        config: Optional[BenchmarkStepConfig] = profile.step(self.step_id)
        label = config.label if config else self.default_label

        if config is not None and not config.enabled and self.can_skip:
            context.steps.append(StepResult(
                id=self.step_id, label=label, order=self.order, prompt="",
                notes="Step disabled in profile; skipped.",
            ))
            return context

        prompt = self.build_prompt(context, config.prompt_template if config else None)
        messages = build_messages(profile.default_system_prompt, prompt)
        step = StepResult(id=self.step_id, label=label, order=self.order, prompt=prompt)

        try:
            result = client.chat(messages, schema=self.schema, prefer_structured=context.prefer_structured)
        except LLMClientError as e:
            step.notes = str(e)
            context.steps.append(step)
            log.warning("    ❌ Этап %s: ошибка запроса: %s", self.step_id, e)
            raise StageFailure(self.step_id, e, context) from e

        step.request_payload = result.request_payload
        step.response_payload = result.raw
        step.response_text = result.text
        step.latency_ms = result.latency_ms
        step.usage = result.usage
        step.fallback_used = result.fallback_used
        context.steps.append(step)

        if result.fallback_used:
            # Сервер отверг response_format: дальше запрашиваем обычный текст
            context.prefer_structured = False
            context.fallback_used = True

        try:
            self.apply(context, result.text, step)
        except ResponseParseError as e:
            step.notes = str(e)
            log.warning("    ❌ Этап %s: не удалось разобрать ответ: %s", self.step_id, e)
            raise StageFailure(self.step_id, e, context) from e
        return context


class SubjectStage(PipelineStage):
    step_id = SUBJECT_STEP
    order = 0
    schema = "topology-subject"
    default_label = "Subject classification"

    def build_prompt(self, context, preamble):
        return build_subject_prompt(context.question, self.catalog, preamble)

    def apply(self, context, text, step):
        context.subject = parse_subject_stage(text)
        step.topology_stage = context.subject


class TopicStage(PipelineStage):
    step_id = TOPIC_STEP
    order = 1
    schema = "topology-topic"
    default_label = "Topic classification"

    def build_prompt(self, context, preamble):
        return build_topic_prompt(context.question, self.catalog, context.subject_id, preamble)

    def apply(self, context, text, step):
        context.topic = parse_topic_stage(text, subject_id=context.subject_id)
        step.topology_stage = context.topic


class SubtopicStage(PipelineStage):
    step_id = SUBTOPIC_STEP
    order = 2
    schema = "topology-subtopic"
    default_label = "Subtopic classification"

    def build_prompt(self, context, preamble):
        return build_subtopic_prompt(context.question, self.catalog, context.subject_id, context.topic_id, preamble)

    def apply(self, context, text, step):
        context.subtopic = parse_subtopic_stage(text, subject_id=context.subject_id, topic_id=context.topic_id)
        step.topology_stage = context.subtopic


class AnswerStage(PipelineStage):
    step_id = ANSWER_STEP
    order = 3
    schema = "answer"
    default_label = "Final answer"
    can_skip = False

    def build_prompt(self, context, preamble):
        return build_answer_prompt(context.question, context.prediction, self.catalog, preamble)

    def apply(self, context, text, step):
        context.answer = parse_answer(text)
        step.model_response = context.answer


class StagePipeline:
    """Выполняет этапы строго последовательно для одного вопроса."""

    def __init__(self, client: IChatClient, catalog: TopologyCatalog, profile: ModelProfile,
                 stages: Optional[List[PipelineStage]] = None):
        self.client = client
        self.profile = profile
        self.stages = stages or [SubjectStage(catalog), TopicStage(catalog), SubtopicStage(catalog), AnswerStage(catalog)]

    def new_context(self, question: Question) -> PipelineContext:
        supports = self.profile.metadata.supports_structured_output
        return PipelineContext(question=question, prefer_structured=supports is not False)

    def execute(self, question: Question, context: Optional[PipelineContext] = None) -> PipelineContext:
        context = context or self.new_context(question)
        for stage in self.stages:
            context = stage.run(context, self.client, self.profile)
        return context
