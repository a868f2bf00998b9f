import logging
import queue
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from examlab.core.interfaces import ProgressSink
from examlab.models.question import Question
from examlab.models.run import (
    ActiveQuestionProgress, ActiveQuestionStatus, ActiveRunState, ActiveRunStatus,
    BenchmarkAttempt, BenchmarkRun, RunMetrics, RunStatus
)

log = logging.getLogger(__name__)


class LoggingProgressSink(ProgressSink):
    """
    Пишет прогресс прогона в лог в формате, удобном для парсинга внешними системами:
    PROGRESS: 3/10 (30.0%) - Run: <id>, Question: <id>
    """

    def __init__(self):
        self._totals: Dict[str, int] = {}
        self._done: Dict[str, int] = {}

    def set_total(self, run_id: str, total: int) -> None:
        self._totals[run_id] = total
        self._done[run_id] = 0

    def question_started(self, run_id, question_id, timestamp):
        log.info("▶️ Прогон %s: вопрос %s", run_id, question_id)

    def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
        self._done[run_id] = self._done.get(run_id, 0) + 1
        total = self._totals.get(run_id, 0)
        percent = (self._done[run_id] / total) * 100 if total else 0
        verdict = "✅" if attempt.evaluation.passed else "❌"
        log.info("PROGRESS: %d/%d (%.1f%%) - Run: %s, Question: %s %s",
                 self._done[run_id], total, percent, run_id, attempt.question_id, verdict)

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        if error:
            log.error("🏁 Прогон %s завершен со статусом %s: %s", run_id, status, error)
        else:
            log.info("🏁 Прогон %s завершен со статусом %s. %s", run_id, status, summary or "")
        self._totals.pop(run_id, None)
        self._done.pop(run_id, None)


class CompositeProgressSink(ProgressSink):
    """Рассылает события нескольким получателям. Ошибка одного не мешает остальным."""

    def __init__(self, sinks: Sequence[ProgressSink]):
        self.sinks = list(sinks)

    def _dispatch(self, method: str, *args, **kwargs):
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args, **kwargs)
            except Exception:
                log.exception("Ошибка в получателе прогресса %s.%s", type(sink).__name__, method)

    def question_started(self, run_id, question_id, timestamp):
        self._dispatch("question_started", run_id, question_id, timestamp)

    def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
        self._dispatch("attempt_recorded", run_id, attempt, metrics, timestamp, next_question_id)

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        self._dispatch("run_completed", run_id, status, summary, metrics, completed_at, error)


_STOP = object()


class BackgroundProgressSink(ProgressSink):
    """
    Неблокирующая обертка: события кладутся в ограниченную очередь и
    доставляются целевому получателю из отдельного потока. Если очередь
    заполнена, событие отбрасывается, а движок продолжает работу.
    """

    def __init__(self, target: ProgressSink, maxsize: int = 256):
        self.target = target
        self.dropped = 0
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._worker, name="progress-dispatcher", daemon=True)
        self._thread.start()

    def _offer(self, event: Tuple[str, tuple]) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            log.warning("⚠️ Очередь прогресса переполнена, событие %s отброшено (всего: %d)", event[0], self.dropped)

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                method, args = item
                getattr(self.target, method)(*args)
            except Exception:
                log.exception("Ошибка при доставке события прогресса")
            finally:
                self._queue.task_done()

    def question_started(self, run_id, question_id, timestamp):
        self._offer(("question_started", (run_id, question_id, timestamp)))

    def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
        self._offer(("attempt_recorded", (run_id, attempt, metrics, timestamp, next_question_id)))

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        self._offer(("run_completed", (run_id, status, summary, metrics, completed_at, error)))

    def flush(self) -> None:
        """Ждет доставки всех принятых событий."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            log.warning("Не удалось остановить поток прогресса: очередь заполнена")
            return
        self._thread.join(timeout)


_RUN_TO_ACTIVE = {
    RunStatus.COMPLETED: ActiveRunStatus.COMPLETED,
    RunStatus.FAILED: ActiveRunStatus.FAILED,
    RunStatus.CANCELLED: ActiveRunStatus.CANCELLED,
}


class ActiveRunTracker(ProgressSink):
    """Держит ActiveRunState: живое зеркало выполняющегося прогона для наблюдателей."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state: Optional[ActiveRunState] = None

    @property
    def state(self) -> Optional[ActiveRunState]:
        with self._lock:
            return self._state.model_copy(deep=True) if self._state else None

    def initialize(self, run: BenchmarkRun, questions: List[Question]) -> None:
        now = datetime.now()
        progress = [
            ActiveQuestionProgress(
                id=question.id,
                order=index,
                label=f"Q{index + 1}",
                prompt=question.prompt,
                type=question.type,
            )
            for index, question in enumerate(questions)
        ]
        with self._lock:
            self._state = ActiveRunState(
                run_id=run.id,
                label=run.label,
                profile_name=run.profile_name,
                profile_model_id=run.profile_model_id,
                dataset_label=run.dataset.label,
                filters=list(run.dataset.filters),
                total_questions=len(questions),
                started_at=now,
                updated_at=now,
                questions=progress,
            )

    def clear(self) -> None:
        with self._lock:
            self._state = None

    def _question(self, question_id: str) -> Optional[ActiveQuestionProgress]:
        for item in self._state.questions:
            if item.id == question_id:
                return item
        return None

    def _matches(self, run_id: str) -> bool:
        return self._state is not None and self._state.run_id == run_id

    def question_started(self, run_id, question_id, timestamp):
        with self._lock:
            if not self._matches(run_id):
                return
            self._state.status = ActiveRunStatus.RUNNING
            self._state.current_question_id = question_id
            self._state.updated_at = timestamp
            item = self._question(question_id)
            if item:
                item.status = ActiveQuestionStatus.RUNNING

    def attempt_recorded(self, run_id, attempt: BenchmarkAttempt, metrics: RunMetrics, timestamp,
                         next_question_id=None):
        with self._lock:
            if not self._matches(run_id):
                return
            item = self._question(attempt.question_id)
            if item:
                item.status = question_status(attempt)
                item.latency_ms = attempt.latency_ms
                item.attempt_id = attempt.id
                item.notes = attempt.error or attempt.evaluation.notes
            self._state.metrics = metrics.model_copy()
            self._state.current_question_id = next_question_id
            self._state.updated_at = timestamp

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        with self._lock:
            if not self._matches(run_id):
                return
            self._state.status = _RUN_TO_ACTIVE.get(RunStatus(status), ActiveRunStatus.COMPLETED)
            self._state.summary = summary
            self._state.error = error
            self._state.completed_at = completed_at
            self._state.updated_at = completed_at
            self._state.current_question_id = None
            if metrics is not None:
                self._state.metrics = metrics.model_copy()


def question_status(attempt: BenchmarkAttempt) -> ActiveQuestionStatus:
    """Ответ верный, а топология нет -> partial."""
    if not attempt.evaluation.passed:
        return ActiveQuestionStatus.FAILED
    if attempt.topology_evaluation is not None and not attempt.topology_evaluation.passed:
        return ActiveQuestionStatus.PARTIAL
    return ActiveQuestionStatus.PASSED
