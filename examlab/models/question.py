from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any, Union, Literal
from enum import Enum


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single-choice"
    MULTI_CHOICE = "multi-choice"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    DESCRIPTIVE = "descriptive"

    @classmethod
    def _missing_(cls, value):
        # Коды из старых выгрузок датасета
        legacy = {
            "MCQ": cls.SINGLE_CHOICE,
            "MSQ": cls.MULTI_CHOICE,
            "NAT": cls.NUMERIC,
            "TRUE_FALSE": cls.BOOLEAN,
            "DESCRIPTIVE": cls.DESCRIPTIVE,
        }
        if isinstance(value, str):
            return legacy.get(value.strip().upper())
        return None


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    order: int
    text: str


class NumericRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    precision: Optional[int] = None


class SingleAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["single"] = "single"
    correct_option: int


class MultipleAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["multiple"] = "multiple"
    correct_options: List[int]


class NumericAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["numeric"] = "numeric"
    range: NumericRange = NumericRange()
    accepted_answers: List[str] = []
    case_sensitive: bool = False


class BooleanAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["boolean"] = "boolean"
    value: bool


class DescriptiveAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["descriptive"] = "descriptive"
    accepted_answers: List[str] = []
    case_sensitive: bool = False


AnswerSpec = Union[SingleAnswer, MultipleAnswer, NumericAnswer, BooleanAnswer, DescriptiveAnswer]


class QuestionTopology(BaseModel):
    """Эталонная классификация вопроса: предмет / тема / подтема"""
    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    topic_id: Optional[str] = None
    subtopic_id: Optional[str] = None


class QuestionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "published"
    tags: List[str] = []
    topology: QuestionTopology = QuestionTopology()


class Question(BaseModel):
    """Вопрос из банка заданий. Движок только читает его."""
    model_config = ConfigDict(frozen=True)

    id: str
    type: QuestionType
    difficulty: str = "medium"
    prompt: str
    instructions: Optional[str] = None
    options: List[QuestionOption] = []
    answer: AnswerSpec = Field(discriminator="kind")
    solution: Optional[str] = None
    metadata: QuestionMetadata = QuestionMetadata()

    def ordered_options(self) -> List[QuestionOption]:
        return sorted(self.options, key=lambda option: option.order)


class QuestionDatasetSummary(BaseModel):
    label: str
    total: int
    filters: List[str] = []
