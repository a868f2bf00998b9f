from .question import (
    Question, QuestionType, QuestionOption, QuestionTopology, QuestionMetadata, QuestionDatasetSummary,
    NumericRange, SingleAnswer, MultipleAnswer, NumericAnswer, BooleanAnswer, DescriptiveAnswer, AnswerSpec
)
from .profile import (
    ModelProfile, ProfileMetadata, BenchmarkStepConfig, DiagnosticsResult, DiagnosticsLogEntry,
    DiagnosticsLevel, DiagnosticsStatus, CompatibilityStatus, ProfileCreateRequest, ProfileUpdateRequest,
    DEFAULT_SYSTEM_PROMPT, default_benchmark_steps
)
from .run import (
    BenchmarkRun, BenchmarkAttempt, RunStatus, RunMetrics, RunQueue, StepResult, Evaluation,
    TokenUsage, ModelAnswer, TopologyStageResult, TopologyPrediction, QuestionSnapshot, DatasetDescriptor,
    ActiveRunState, ActiveRunStatus, ActiveQuestionProgress, ActiveQuestionStatus, LaunchRunRequest
)
from .topology import (
    TopologySubject, TopologyTopic, TopologySubtopic, TopologyDocument, DiscoveredModel, DiscoveredModelOrigin
)
