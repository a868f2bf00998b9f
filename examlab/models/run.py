from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

from examlab.models.question import QuestionType, QuestionOption, AnswerSpec


class RunStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelAnswer(BaseModel):
    """Ответ модели, извлеченный из JSON"""
    answer: str
    explanation: Optional[str] = None
    confidence: Optional[float] = None
    raw: Optional[Any] = None


class TopologyStageResult(BaseModel):
    """Результат одного этапа классификации с идентификаторами предыдущих этапов"""
    stage: str  # subject, topic, subtopic
    id: str
    confidence: Optional[float] = None
    raw: Optional[Any] = None
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None


class TopologyPrediction(BaseModel):
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None
    subtopic_id: Optional[str] = None
    subject_confidence: Optional[float] = None
    topic_confidence: Optional[float] = None
    subtopic_confidence: Optional[float] = None


class Evaluation(BaseModel):
    expected: str
    received: str
    passed: bool
    score: float
    notes: Optional[str] = None
    metrics: Dict[str, Any] = {}


class StepResult(BaseModel):
    id: str
    label: str
    order: int
    prompt: str
    request_payload: Dict[str, Any] = {}
    response_payload: Optional[Any] = None
    response_text: str = ""
    latency_ms: float = 0.0
    usage: TokenUsage = TokenUsage()
    fallback_used: bool = False
    model_response: Optional[ModelAnswer] = None
    topology_stage: Optional[TopologyStageResult] = None
    evaluation: Optional[Evaluation] = None
    notes: Optional[str] = None


class QuestionSnapshot(BaseModel):
    """Денормализованная копия вопроса на момент выполнения"""
    prompt: str
    type: QuestionType
    difficulty: str
    options: List[QuestionOption] = []
    answer: Optional[AnswerSpec] = None
    solution: Optional[str] = None


class BenchmarkAttempt(BaseModel):
    id: str
    question_id: str
    started_at: datetime
    completed_at: datetime
    question_snapshot: QuestionSnapshot
    steps: List[StepResult] = []
    evaluation: Evaluation
    topology_evaluation: Optional[Evaluation] = None
    topology_prediction: Optional[TopologyPrediction] = None
    model_response: Optional[ModelAnswer] = None
    response_text: str = ""
    latency_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    error: Optional[str] = None


class RunMetrics(BaseModel):
    passed_count: int = 0
    failed_count: int = 0
    accuracy: float = 0.0

    topology_passed_count: int = 0
    topology_failed_count: int = 0
    topology_accuracy: float = 0.0

    subject_passed_count: int = 0
    subject_failed_count: int = 0
    subject_accuracy: float = 0.0
    topic_passed_count: int = 0
    topic_failed_count: int = 0
    topic_accuracy: float = 0.0
    subtopic_passed_count: int = 0
    subtopic_failed_count: int = 0
    subtopic_accuracy: float = 0.0

    total_latency_ms: float = 0.0
    average_latency_ms: float = 0.0

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    total_count: int = 0


class DatasetDescriptor(BaseModel):
    label: str
    total_questions: int
    filters: List[str] = []


class BenchmarkRun(BaseModel):
    id: str
    label: str
    profile_id: str
    profile_name: str
    profile_model_id: str
    status: RunStatus = RunStatus.DRAFT
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    question_ids: List[str] = []
    dataset: DatasetDescriptor
    metrics: RunMetrics = RunMetrics()
    attempts: List[BenchmarkAttempt] = []
    notes: Optional[str] = None
    summary: Optional[str] = None


class RunQueue(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_run_id: Optional[str] = None
    queued_run_ids: Tuple[str, ...] = ()


class ActiveQuestionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


class ActiveQuestionProgress(BaseModel):
    id: str
    order: int
    label: str
    prompt: str
    type: QuestionType
    status: ActiveQuestionStatus = ActiveQuestionStatus.QUEUED
    latency_ms: Optional[float] = None
    attempt_id: Optional[str] = None
    notes: Optional[str] = None


class ActiveRunStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActiveRunState(BaseModel):
    """Живое зеркало выполняющегося прогона для наблюдателей"""
    run_id: str
    label: str
    profile_name: str
    profile_model_id: str
    dataset_label: str
    filters: List[str] = []
    total_questions: int
    status: ActiveRunStatus = ActiveRunStatus.STARTING
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    current_question_id: Optional[str] = None
    metrics: RunMetrics = RunMetrics()
    questions: List[ActiveQuestionProgress] = []
    summary: Optional[str] = None
    error: Optional[str] = None


class LaunchRunRequest(BaseModel):
    profile_id: str
    question_ids: Optional[List[str]] = None
    label: Optional[str] = None
    filters: List[str] = []
