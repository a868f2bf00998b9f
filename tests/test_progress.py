import logging
import threading
from datetime import datetime

import pytest

from examlab.core.metrics import compute_metrics
from examlab.core.progress_tracker import (
    ActiveRunTracker, BackgroundProgressSink, CompositeProgressSink, LoggingProgressSink, question_status
)
from examlab.core.scheduler import RunScheduler
from examlab.models.run import ActiveQuestionStatus, ActiveRunStatus, RunStatus

from conftest import RecordingSink, make_attempt

NOW = datetime(2026, 1, 1, 12, 0, 0)


class ExplodingSink(RecordingSink):
    def question_started(self, run_id, question_id, timestamp):
        raise RuntimeError("sink is broken")


class BlockingSink(RecordingSink):
    """Получатель, который держит поток доставки до вызова release()."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def question_started(self, run_id, question_id, timestamp):
        self.entered.set()
        self.gate.wait(5)
        super().question_started(run_id, question_id, timestamp)


class TestLoggingProgressSink:
    def test_progress_line(self, caplog):
        sink = LoggingProgressSink()
        sink.set_total("run-1", 2)
        with caplog.at_level(logging.INFO, logger="examlab.core.progress_tracker"):
            sink.attempt_recorded("run-1", make_attempt("q1"), None, NOW)
        assert "PROGRESS: 1/2 (50.0%) - Run: run-1, Question: q1" in caplog.text

    def test_error_is_logged_as_error(self, caplog):
        sink = LoggingProgressSink()
        with caplog.at_level(logging.INFO, logger="examlab.core.progress_tracker"):
            sink.run_completed("run-1", RunStatus.FAILED, None, None, NOW, error="boom")
        assert caplog.records[-1].levelno == logging.ERROR


class TestCompositeProgressSink:
    def test_failing_sink_does_not_block_others(self):
        """Исключение в одном получателе не мешает доставке остальным"""
        recorder = RecordingSink()
        composite = CompositeProgressSink([ExplodingSink(), recorder])
        composite.question_started("run-1", "q1", NOW)
        composite.run_completed("run-1", RunStatus.COMPLETED, "done", None, NOW)
        assert recorder.names() == ["question_started", "run_completed"]


class TestBackgroundProgressSink:
    def test_events_are_delivered_in_order(self):
        recorder = RecordingSink()
        sink = BackgroundProgressSink(recorder)
        sink.question_started("run-1", "q1", NOW)
        sink.attempt_recorded("run-1", make_attempt("q1"), None, NOW, "q2")
        sink.run_completed("run-1", RunStatus.COMPLETED, "done", None, NOW)
        sink.flush()
        sink.close()
        assert recorder.names() == ["question_started", "attempt_recorded", "run_completed"]

    def test_full_queue_drops_events(self):
        """Переполнение очереди не блокирует вызывающий поток"""
        target = BlockingSink()
        sink = BackgroundProgressSink(target, maxsize=1)

        sink.question_started("run-1", "q1", NOW)
        assert target.entered.wait(5)
        sink.question_started("run-1", "q2", NOW)
        sink.question_started("run-1", "q3", NOW)

        assert sink.dropped == 1
        target.gate.set()
        sink.flush()
        sink.close()
        assert [event[2] for event in target.events] == ["q1", "q2"]


class TestActiveRunTracker:
    """Тесты живого состояния прогона"""

    @pytest.fixture
    def tracker(self, store, clock, profile, dataset, single_question, multi_question):
        run = RunScheduler(store, clock).create_run(profile, ["q-single", "q-multi"], dataset, launch=True).focus
        tracker = ActiveRunTracker()
        tracker.initialize(run, [single_question, multi_question])
        return tracker, run

    def test_initial_state(self, tracker):
        tracker, run = tracker
        state = tracker.state
        assert state.run_id == run.id
        assert state.status == ActiveRunStatus.STARTING
        assert state.total_questions == 2
        assert [item.label for item in state.questions] == ["Q1", "Q2"]
        assert all(item.status == ActiveQuestionStatus.QUEUED for item in state.questions)

    def test_question_flow(self, tracker):
        tracker, run = tracker
        tracker.question_started(run.id, "q-single", NOW)
        assert tracker.state.status == ActiveRunStatus.RUNNING
        assert tracker.state.questions[0].status == ActiveQuestionStatus.RUNNING

        attempt = make_attempt("q-single", latency_ms=250.0)
        tracker.attempt_recorded(run.id, attempt, compute_metrics([attempt]), NOW, "q-multi")
        state = tracker.state
        assert state.questions[0].status == ActiveQuestionStatus.PASSED
        assert state.questions[0].latency_ms == 250.0
        assert state.current_question_id == "q-multi"
        assert state.metrics.total_count == 1

    def test_run_completed(self, tracker):
        tracker, run = tracker
        tracker.run_completed(run.id, RunStatus.CANCELLED, "stopped", None, NOW)
        state = tracker.state
        assert state.status == ActiveRunStatus.CANCELLED
        assert state.completed_at == NOW
        assert state.current_question_id is None

    def test_events_of_other_runs_are_ignored(self, tracker):
        tracker, run = tracker
        tracker.question_started("other-run", "q-single", NOW)
        assert tracker.state.status == ActiveRunStatus.STARTING

    def test_state_is_a_copy(self, tracker):
        tracker, _ = tracker
        tracker.state.questions[0].status = ActiveQuestionStatus.FAILED
        assert tracker.state.questions[0].status == ActiveQuestionStatus.QUEUED

    def test_clear(self, tracker):
        tracker, _ = tracker
        tracker.clear()
        assert tracker.state is None


class TestQuestionStatus:
    def test_statuses(self):
        assert question_status(make_attempt("q1")) == ActiveQuestionStatus.PASSED
        assert question_status(make_attempt("q1", passed=False)) == ActiveQuestionStatus.FAILED
        assert question_status(make_attempt("q1", subject_match=False)) == ActiveQuestionStatus.PARTIAL
