from datetime import datetime, timedelta

import pytest

from examlab.core.http_client import ChatCompletionResult
from examlab.core.interfaces import IChatClient, ProgressSink
from examlab.core.storage import InMemoryRunStore
from examlab.core.topology import TopologyCatalog
from examlab.models.profile import ModelProfile, default_benchmark_steps
from examlab.models.question import (
    BooleanAnswer, DescriptiveAnswer, MultipleAnswer, NumericAnswer, NumericRange, Question, QuestionMetadata,
    QuestionOption, QuestionTopology, QuestionType, SingleAnswer
)
from examlab.models.run import BenchmarkAttempt, DatasetDescriptor, Evaluation, QuestionSnapshot, TokenUsage

DEFAULT_REPLIES = {
    "topology-subject": '{"subjectId": "math", "confidence": 0.9}',
    "topology-topic": '{"topicId": "algebra", "confidence": 0.8}',
    "topology-subtopic": '{"subtopicId": "linear-equations", "confidence": 0.7}',
    "answer": '{"answer": "B", "explanation": "2x = 8", "confidence": 0.95}',
}


class FakeChatClient(IChatClient):
    """
    Клиент без сети: ответы берутся из очередей по классу схемы,
    иначе из DEFAULT_REPLIES. Исключение в очереди бросается как есть.
    """

    def __init__(self, replies=None, reject_structured=False, models=("test-model",), latency_ms=100.0):
        self.replies = {schema: list(items) for schema, items in (replies or {}).items()}
        self.reject_structured = reject_structured
        self.models = list(models)
        self.latency_ms = latency_ms
        self.calls = []

    def chat(self, messages, *, schema=None, prefer_structured=True, **generation):
        self.calls.append({"messages": messages, "schema": schema, "prefer_structured": prefer_structured,
                           **generation})
        queue = self.replies.get(schema)
        reply = queue.pop(0) if queue else DEFAULT_REPLIES.get(schema, '{"answer": "ready"}')
        if isinstance(reply, Exception):
            raise reply

        fallback = self.reject_structured and prefer_structured
        structured = prefer_structured and not fallback
        return ChatCompletionResult(
            text=reply,
            raw={"choices": [{"message": {"role": "assistant", "content": reply}}]},
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            latency_ms=self.latency_ms,
            fallback_used=fallback,
            structured_output=structured,
            json_format="json_schema" if structured else "none",
            request_payload={"messages": messages},
        )

    def list_models(self):
        return [{"id": model_id} for model_id in self.models]


class FakeClock:
    """Часы, которые сдвигаются на секунду при каждом вызове."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def catalog():
    return TopologyCatalog.from_dict({
        "subjects": [
            {
                "id": "math",
                "name": "Mathematics",
                "topics": [
                    {"id": "algebra", "name": "Algebra", "subtopics": [
                        {"id": "linear-equations", "name": "Linear equations"},
                        {"id": "quadratics", "name": "Quadratic equations"},
                    ]},
                    {"id": "arithmetic", "name": "Arithmetic", "subtopics": [
                        {"id": "addition", "name": "Addition and subtraction"},
                    ]},
                ],
            },
            {
                "id": "physics",
                "name": "Physics",
                "topics": [
                    {"id": "mechanics", "name": "Mechanics", "subtopics": [
                        {"id": "kinematics", "name": "Kinematics"},
                    ]},
                ],
            },
        ]
    })


def make_options(*texts):
    return [QuestionOption(id=index, order=index, text=text) for index, text in enumerate(texts)]


def make_topology(subject_id=None, topic_id=None, subtopic_id=None):
    return QuestionMetadata(topology=QuestionTopology(subject_id=subject_id, topic_id=topic_id,
                                                      subtopic_id=subtopic_id))


@pytest.fixture
def single_question():
    return Question(
        id="q-single",
        type=QuestionType.SINGLE_CHOICE,
        prompt="Solve for x: 2x + 3 = 11.",
        options=make_options("3", "4", "5", "7"),
        answer=SingleAnswer(correct_option=1),
        metadata=make_topology("math", "algebra", "linear-equations"),
    )


@pytest.fixture
def multi_question():
    return Question(
        id="q-multi",
        type=QuestionType.MULTI_CHOICE,
        prompt="Which numbers are prime?",
        options=make_options("2", "9", "11", "15"),
        answer=MultipleAnswer(correct_options=[0, 2]),
        metadata=make_topology("math", "arithmetic", "addition"),
    )


@pytest.fixture
def numeric_question():
    return Question(
        id="q-numeric",
        type=QuestionType.NUMERIC,
        prompt="A car travels 150 km in 2.5 hours. Speed in km/h?",
        answer=NumericAnswer(range=NumericRange(min=59.5, max=60.5, precision=1)),
        metadata=make_topology("physics", "mechanics", "kinematics"),
    )


@pytest.fixture
def boolean_question():
    return Question(
        id="q-boolean",
        type=QuestionType.BOOLEAN,
        prompt="True or false: 7 is a prime number.",
        answer=BooleanAnswer(value=True),
        metadata=make_topology("math"),
    )


@pytest.fixture
def descriptive_question():
    return Question(
        id="q-descriptive",
        type=QuestionType.DESCRIPTIVE,
        prompt="Name the lightest noble gas.",
        answer=DescriptiveAnswer(accepted_answers=["helium", "He"]),
    )


@pytest.fixture
def questions(single_question, multi_question, numeric_question):
    return [single_question, multi_question, numeric_question]


@pytest.fixture
def profile():
    now = datetime(2026, 1, 1, 12, 0, 0)
    return ModelProfile(
        id="profile-1",
        name="Test model",
        base_url="http://localhost:1234",
        model_id="test-model",
        benchmark_steps=default_benchmark_steps(),
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def fake_client():
    return FakeChatClient()


class RecordingSink(ProgressSink):
    """Запоминает события прогресса в порядке поступления."""

    def __init__(self):
        self.events = []

    def question_started(self, run_id, question_id, timestamp):
        self.events.append(("question_started", run_id, question_id))

    def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
        self.events.append(("attempt_recorded", run_id, attempt.question_id, metrics, next_question_id))

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        self.events.append(("run_completed", run_id, status, summary, error))

    def names(self):
        return [event[0] for event in self.events]


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dataset():
    return DatasetDescriptor(label="Sample exam", total_questions=3)


def make_attempt(question_id, passed=True, subject_match=True, topic_match=None, subtopic_match=None,
                 latency_ms=100.0, tokens=15, error=None):
    levels = {"subject_match": subject_match, "topic_match": topic_match, "subtopic_match": subtopic_match}
    scored = [value for value in levels.values() if value is not None]
    now = datetime(2026, 1, 1, 12, 0, 0)
    return BenchmarkAttempt(
        id=f"attempt-{question_id}",
        question_id=question_id,
        started_at=now,
        completed_at=now,
        question_snapshot=QuestionSnapshot(prompt="?", type=QuestionType.SINGLE_CHOICE, difficulty="medium"),
        evaluation=Evaluation(expected="A", received="A" if passed else "B", passed=passed,
                              score=1.0 if passed else 0.0),
        topology_evaluation=Evaluation(expected="", received="", passed=all(scored),
                                       score=sum(scored) / len(scored) if scored else 1.0, metrics=levels),
        latency_ms=latency_ms,
        prompt_tokens=tokens - 5,
        completion_tokens=5,
        total_tokens=tokens,
        error=error,
    )
