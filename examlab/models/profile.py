from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

DEFAULT_SYSTEM_PROMPT = """You are an evaluation assistant for competitive exam benchmarks.
You must always return valid JSON that adheres to the schema requested in the user message.

Guidelines:
- Read the user question and available options (if any) carefully.
- Think step-by-step, then provide a concise final explanation.
- If you cannot determine the answer, respond with "answer": "UNKNOWN" and explain why.
- Do not output any text before or after the JSON object.
- When requested to respond without JSON mode, still keep the JSON object as plain text."""


class DiagnosticsLevel(str, Enum):
    HANDSHAKE = "HANDSHAKE"
    READINESS = "READINESS"


class DiagnosticsStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class CompatibilityStatus(str, Enum):
    UNKNOWN = "unknown"
    COMPATIBLE = "compatible"
    INCOMPATIBLE = "incompatible"


class DiagnosticsLogEntry(BaseModel):
    id: str
    timestamp: datetime
    message: str
    severity: str = "info"  # info, warn, error


class DiagnosticsResult(BaseModel):
    id: str
    profile_id: str
    level: DiagnosticsLevel
    started_at: datetime
    completed_at: datetime
    status: DiagnosticsStatus
    summary: str
    fallback_applied: bool = False
    logs: List[DiagnosticsLogEntry] = []
    metadata: Dict[str, Any] = {}


class BenchmarkStepConfig(BaseModel):
    """Шаблон шага конвейера: topology-subject, topology-topic, topology-subtopic, answer"""
    id: str
    label: str
    description: Optional[str] = None
    prompt_template: str = ""
    enabled: bool = True


class ProfileMetadata(BaseModel):
    supports_structured_output: Optional[bool] = None
    json_format: Optional[str] = None  # json_schema, json_object, none
    last_handshake_at: Optional[datetime] = None
    last_readiness_at: Optional[datetime] = None
    compatibility_status: CompatibilityStatus = CompatibilityStatus.UNKNOWN
    compatibility_summary: Optional[str] = None


def default_benchmark_steps() -> List[BenchmarkStepConfig]:
    return [
        BenchmarkStepConfig(
            id="topology-subject",
            label="Subject classification",
            prompt_template="Identify the best SUBJECT for the question using the catalog below.",
        ),
        BenchmarkStepConfig(
            id="topology-topic",
            label="Topic classification",
            prompt_template="Choose the best TOPIC within the selected subject.",
        ),
        BenchmarkStepConfig(
            id="topology-subtopic",
            label="Subtopic classification",
            prompt_template="Choose the best SUBTOPIC within the selected topic.",
        ),
        BenchmarkStepConfig(
            id="answer",
            label="Final answer",
            description="Produce the final answer in the required format.",
            prompt_template=(
                "Solve the question and provide the final answer. Respect the answer format requested "
                "in the prompt. Respond using JSON with fields `answer`, `explanation`, and `confidence` (0-1)."
            ),
        ),
    ]


class ModelProfile(BaseModel):
    """Профиль подключения и параметров генерации для одной модели"""
    id: str
    name: str
    description: Optional[str] = None

    # Подключение
    base_url: str = "http://localhost:1234"
    api_key: Optional[str] = None
    model_id: str

    # Параметры генерации
    temperature: float = 0.2
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    max_output_tokens: int = 1024
    request_timeout_ms: int = 120000

    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    benchmark_steps: List[BenchmarkStepConfig] = []

    diagnostics: List[DiagnosticsResult] = []
    metadata: ProfileMetadata = ProfileMetadata()

    created_at: datetime
    updated_at: datetime

    def step(self, step_id: str) -> Optional[BenchmarkStepConfig]:
        for step in self.benchmark_steps:
            if step.id == step_id:
                return step
        return None

    def last_diagnostic(self, level: DiagnosticsLevel) -> Optional[DiagnosticsResult]:
        for result in reversed(self.diagnostics):
            if result.level == level:
                return result
        return None


class ProfileCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    base_url: str = "http://localhost:1234"
    api_key: Optional[str] = None
    model_id: str
    temperature: float = 0.2
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    max_output_tokens: int = 1024
    request_timeout_ms: int = 120000
    default_system_prompt: Optional[str] = None
    benchmark_steps: Optional[List[BenchmarkStepConfig]] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model_id: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    max_output_tokens: Optional[int] = None
    request_timeout_ms: Optional[int] = None
    default_system_prompt: Optional[str] = None
    benchmark_steps: Optional[List[BenchmarkStepConfig]] = None
