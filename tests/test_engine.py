import pytest

from examlab.core.engine import BenchmarkRunEngine
from examlab.core.interfaces import LLMTimeoutError
from examlab.core.scheduler import RunScheduler
from examlab.models.run import RunStatus

from conftest import FakeChatClient, RecordingSink


@pytest.fixture
def scheduler(store, clock):
    return RunScheduler(store, clock)


@pytest.fixture
def sink():
    return RecordingSink()


def launch(scheduler, profile, dataset, questions):
    return scheduler.create_run(profile, [q.id for q in questions], dataset, launch=True).focus


def make_engine(scheduler, client, catalog, sink, on_fallback=None):
    return BenchmarkRunEngine(scheduler, lambda profile: client, catalog, sink, on_fallback=on_fallback)


class TestRunEngine:
    """Тесты последовательного выполнения прогона"""

    def test_run_completes(self, scheduler, fake_client, catalog, sink, profile, dataset, questions):
        run = launch(scheduler, profile, dataset, questions)
        result = make_engine(scheduler, fake_client, catalog, sink).execute(run.id, profile, questions)

        assert result.status == RunStatus.COMPLETED
        assert [attempt.question_id for attempt in result.attempts] == ["q-single", "q-multi", "q-numeric"]
        # "B" верен только для вопроса с одним вариантом
        assert result.metrics.passed_count == 1
        assert result.metrics.failed_count == 2
        assert result.summary.startswith("Accuracy 33.3% across 3 questions.")
        assert len(fake_client.calls) == 12
        assert scheduler.snapshot().queue.current_run_id is None

    def test_event_order(self, scheduler, fake_client, catalog, sink, profile, dataset, single_question,
                         multi_question):
        questions = [single_question, multi_question]
        run = launch(scheduler, profile, dataset, questions)
        make_engine(scheduler, fake_client, catalog, sink).execute(run.id, profile, questions)

        assert sink.names() == [
            "question_started", "attempt_recorded", "question_started", "attempt_recorded", "run_completed",
        ]
        recorded = [event for event in sink.events if event[0] == "attempt_recorded"]
        assert recorded[0][4] == "q-multi"
        assert recorded[1][4] is None
        assert recorded[1][3].total_count == 2
        assert sink.events[-1][2] == RunStatus.COMPLETED

    def test_error_attempt_does_not_stop_run(self, scheduler, catalog, sink, profile, dataset, questions):
        """Сбой одного вопроса фиксируется в попытке, прогон продолжается"""
        client = FakeChatClient(replies={"answer": [LLMTimeoutError("Request timed out after 120.0s")]})
        run = launch(scheduler, profile, dataset, questions)
        result = make_engine(scheduler, client, catalog, sink).execute(run.id, profile, questions)

        assert result.status == RunStatus.COMPLETED
        assert len(result.attempts) == 3
        failed = result.attempts[0]
        assert failed.error == "Request timed out after 120.0s"
        assert failed.evaluation.passed is False
        assert failed.topology_evaluation.passed is False
        assert [step.id for step in failed.steps][:3] == ["topology-subject", "topology-topic", "topology-subtopic"]
        assert result.attempts[1].error is None

    def test_cancel_between_questions(self, scheduler, fake_client, catalog, profile, dataset, questions):
        run = launch(scheduler, profile, dataset, questions)

        class CancellingSink(RecordingSink):
            def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
                super().attempt_recorded(run_id, attempt, metrics, timestamp, next_question_id)
                scheduler.cancel(run_id)

        sink = CancellingSink()
        result = make_engine(scheduler, fake_client, catalog, sink).execute(run.id, profile, questions)

        assert result.status == RunStatus.CANCELLED
        assert len(result.attempts) == 1
        assert len(fake_client.calls) == 4
        assert sink.names() == ["question_started", "attempt_recorded", "run_completed"]
        assert sink.events[-1][2] == RunStatus.CANCELLED

    def test_fallback_reported_once(self, scheduler, catalog, sink, profile, dataset, questions):
        client = FakeChatClient(reject_structured=True)
        reported = []
        run = launch(scheduler, profile, dataset, questions)

        make_engine(scheduler, client, catalog, sink, on_fallback=reported.append).execute(run.id, profile, questions)

        assert len(reported) == 1
        assert reported[0].id == profile.id
        # после первого отказа все запросы идут без схемы
        assert not any(call["prefer_structured"] for call in client.calls[1:])

    def test_client_factory_failure_fails_run(self, scheduler, catalog, sink, profile, dataset, questions):
        def broken_factory(profile):
            raise RuntimeError("no client")

        run = launch(scheduler, profile, dataset, questions)
        engine = BenchmarkRunEngine(scheduler, broken_factory, catalog, sink)
        result = engine.execute(run.id, profile, questions)

        assert result.status == RunStatus.FAILED
        assert result.summary == "Run failed: RuntimeError: no client"
        assert sink.events[-1][0] == "run_completed"
        assert sink.events[-1][4] == "RuntimeError: no client"
