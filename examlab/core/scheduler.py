"""
Жизненный цикл прогонов и очередь.

    draft -> queued -> running -> completed | failed | cancelled

RunScheduler единолично владеет состоянием прогонов и очередью. Каждая
команда применяется под одной блокировкой, затем затронутые записи
сохраняются в RunStore, и команда возвращает неизменяемый снимок.
Одновременно выполняется не более одного прогона ("текущий").
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from examlab.core.interfaces import InvalidRunTransition, RunNotFoundError, RunStore
from examlab.core.metrics import compute_metrics, fold_attempt, format_summary
from examlab.models.run import BenchmarkAttempt, BenchmarkRun, DatasetDescriptor, RunQueue, RunStatus

log = logging.getLogger(__name__)

NOTE_RECOVERED = "Status corrected to completed on restart (all questions answered)."
NOTE_INTERRUPTED = "Run was interrupted and marked as failed on restart."
NOTE_QUEUE_RESET = "Queued status reset on restart."


class SchedulerSnapshot(BaseModel):
    """Неизменяемый снимок состояния планировщика после команды."""
    model_config = ConfigDict(frozen=True)

    runs: Tuple[BenchmarkRun, ...] = ()
    queue: RunQueue = RunQueue()
    focus_run_id: Optional[str] = None

    def get(self, run_id: str) -> Optional[BenchmarkRun]:
        for run in self.runs:
            if run.id == run_id:
                return run
        return None

    @property
    def focus(self) -> Optional[BenchmarkRun]:
        return self.get(self.focus_run_id) if self.focus_run_id else None


def _append_note(notes: Optional[str], note: str) -> str:
    return f"{notes}\n\n{note}" if notes else note


def reconcile_run(run: BenchmarkRun, now: datetime) -> Optional[BenchmarkRun]:
    """
    Приводит прогон, оставшийся в running/queued после остановки процесса,
    к согласованному состоянию. Возвращает новую запись или None, если
    прогон не требует исправления.
    """
    if run.status == RunStatus.RUNNING:
        attempted = {attempt.question_id for attempt in run.attempts}
        metrics = compute_metrics(run.attempts)
        if run.attempts and all(question_id in attempted for question_id in run.question_ids):
            return run.model_copy(update={
                "status": RunStatus.COMPLETED,
                "completed_at": run.completed_at or now,
                "metrics": metrics,
                "summary": format_summary(metrics),
                "notes": _append_note(run.notes, NOTE_RECOVERED),
            })
        return run.model_copy(update={
            "status": RunStatus.FAILED,
            "completed_at": run.completed_at or now,
            "metrics": metrics,
            "summary": run.summary or f"Run interrupted ({len(attempted)}/{len(run.question_ids)} questions answered)",
            "notes": _append_note(run.notes, NOTE_INTERRUPTED),
        })

    if run.status == RunStatus.QUEUED:
        if run.attempts:
            return run.model_copy(update={
                "status": RunStatus.FAILED,
                "completed_at": run.completed_at or now,
                "summary": run.summary or "Run was queued but not executed",
                "notes": _append_note(run.notes, NOTE_QUEUE_RESET),
            })
        return run.model_copy(update={
            "status": RunStatus.DRAFT,
            "summary": run.summary or "Draft run",
            "notes": _append_note(run.notes, NOTE_QUEUE_RESET),
        })
    return None


class RunScheduler:

    def __init__(self, store: RunStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock
        self._lock = threading.RLock()
        self._runs: Dict[str, BenchmarkRun] = {}
        self._current: Optional[str] = None
        self._queued: List[str] = []

    # --- запросы ---

    def snapshot(self, focus_run_id: Optional[str] = None) -> SchedulerSnapshot:
        with self._lock:
            return SchedulerSnapshot(
                runs=tuple(run.model_copy(deep=True) for run in self._runs.values()),
                queue=RunQueue(current_run_id=self._current, queued_run_ids=tuple(self._queued)),
                focus_run_id=focus_run_id,
            )

    def get_run(self, run_id: str) -> BenchmarkRun:
        with self._lock:
            return self._require(run_id).model_copy(deep=True)

    def list_runs(self) -> List[BenchmarkRun]:
        with self._lock:
            return sorted((run.model_copy(deep=True) for run in self._runs.values()),
                          key=lambda run: run.created_at, reverse=True)

    def queue_position(self, run_id: str) -> Optional[int]:
        """0 для текущего прогона, 1..N для ожидающих, None если прогона нет в очереди."""
        with self._lock:
            if self._current == run_id:
                return 0
            if run_id in self._queued:
                return self._queued.index(run_id) + 1
            return None

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            return run is not None and self._current == run_id and run.status == RunStatus.RUNNING

    # --- команды ---

    def bootstrap(self, runs: Optional[Iterable[BenchmarkRun]] = None) -> SchedulerSnapshot:
        """Загружает прогоны после старта процесса и исправляет осиротевшие running/queued."""
        loaded = list(runs) if runs is not None else self.store.load_runs()
        now = self.clock()
        touched = []
        with self._lock:
            self._runs = {}
            self._current = None
            self._queued = []
            for run in loaded:
                fixed = reconcile_run(run, now)
                if fixed is not None:
                    log.warning("🔧 Прогон %s: %s -> %s после перезапуска", run.id, run.status.value, fixed.status.value)
                    run = fixed
                    touched.append(run.id)
                self._runs[run.id] = run
            self._commit(touched)
        log.info("✅ Планировщик инициализирован: %d прогонов, исправлено %d", len(loaded), len(touched))
        return self.snapshot()

    def create_run(self, profile, question_ids: List[str], dataset: DatasetDescriptor,
                   label: Optional[str] = None, launch: bool = False,
                   run_id: Optional[str] = None) -> SchedulerSnapshot:
        now = self.clock()
        run = BenchmarkRun(
            id=run_id or str(uuid.uuid4()),
            label=label or f"{profile.name} · {now:%Y-%m-%d %H:%M}",
            profile_id=profile.id,
            profile_name=profile.name,
            profile_model_id=profile.model_id,
            status=RunStatus.DRAFT,
            created_at=now,
            question_ids=list(question_ids),
            dataset=dataset,
        )
        with self._lock:
            if run.id in self._runs:
                raise InvalidRunTransition(f"Run {run.id} already exists")
            self._runs[run.id] = run
            self._commit([run.id])
        log.info("🆕 Создан прогон %s (%d вопросов)", run.id, len(run.question_ids))
        if launch:
            return self.enqueue(run.id)
        return self.snapshot(run.id)

    def enqueue(self, run_id: str) -> SchedulerSnapshot:
        """Ставит прогон в очередь или сразу делает текущим, если слот свободен."""
        with self._lock:
            run = self._require(run_id)
            if run.status in (RunStatus.RUNNING, RunStatus.QUEUED):
                return self.snapshot(run_id)
            if run.status.is_terminal:
                raise InvalidRunTransition(f"Run {run_id} is {run.status.value} and cannot be queued")

            if self._current is None:
                self._promote(run)
            else:
                run.status = RunStatus.QUEUED
                self._queued.append(run_id)
                log.info("⏳ Прогон %s поставлен в очередь (позиция %d)", run_id, len(self._queued))
            self._commit([run_id])
        return self.snapshot(run_id)

    def enqueue_batch(self, run_ids: Iterable[str]) -> SchedulerSnapshot:
        snapshot = self.snapshot()
        for run_id in run_ids:
            snapshot = self.enqueue(run_id)
        return snapshot

    def dequeue(self, run_id: str) -> SchedulerSnapshot:
        """Отменяет прогон, который еще не начал выполняться."""
        with self._lock:
            run = self._require(run_id)
            if run.status not in (RunStatus.QUEUED, RunStatus.DRAFT):
                raise InvalidRunTransition(f"Run {run_id} is {run.status.value}, only queued or draft runs can be cancelled")
            if run_id in self._queued:
                self._queued.remove(run_id)
            run.status = RunStatus.CANCELLED
            run.completed_at = self.clock()
            self._commit([run_id])
        log.info("🚫 Прогон %s отменен", run_id)
        return self.snapshot(run_id)

    def cancel(self, run_id: str) -> SchedulerSnapshot:
        """
        Отмена с любого нетерминального состояния. Выполняющийся прогон
        останавливается перед следующим вопросом, текущий запрос к модели не прерывается.
        """
        with self._lock:
            run = self._require(run_id)
            if run.status != RunStatus.RUNNING:
                return self.dequeue(run_id)
            run.status = RunStatus.CANCELLED
            run.completed_at = self.clock()
            run.notes = _append_note(run.notes, "Cancelled while running.")
            self._release(run_id)
            self._commit([run_id])
        log.info("🚫 Выполняющийся прогон %s отменен", run_id)
        return self.snapshot(run_id)

    def mark_running(self, run_id: str) -> SchedulerSnapshot:
        with self._lock:
            run = self._require(run_id)
            if self._current not in (None, run_id):
                raise InvalidRunTransition(f"Run {self._current} is already running")
            if run.status.is_terminal:
                raise InvalidRunTransition(f"Run {run_id} is {run.status.value}")
            if run_id in self._queued:
                self._queued.remove(run_id)
            self._promote(run)
            self._commit([run_id])
        return self.snapshot(run_id)

    def record_attempt(self, run_id: str, attempt: BenchmarkAttempt) -> SchedulerSnapshot:
        with self._lock:
            run = self._require(run_id)
            if run.status != RunStatus.RUNNING:
                raise InvalidRunTransition(f"Run {run_id} is {run.status.value}, attempt discarded")
            run.attempts.append(attempt)
            run.metrics = fold_attempt(run.metrics, attempt)
            self._commit([run_id])
        return self.snapshot(run_id)

    def complete(self, run_id: str, summary: Optional[str] = None) -> SchedulerSnapshot:
        with self._lock:
            run = self._require(run_id)
            if run.status != RunStatus.RUNNING:
                raise InvalidRunTransition(f"Run {run_id} is {run.status.value}, cannot complete")
            self._finish(run, RunStatus.COMPLETED, summary or format_summary(run.metrics))
            self._commit([run_id])
        log.info("🏁 Прогон %s завершен: %s", run_id, summary or format_summary(run.metrics))
        return self.snapshot(run_id)

    def fail(self, run_id: str, error: str, summary: Optional[str] = None) -> SchedulerSnapshot:
        with self._lock:
            run = self._require(run_id)
            if run.status.is_terminal:
                raise InvalidRunTransition(f"Run {run_id} is already {run.status.value}")
            if run_id in self._queued:
                self._queued.remove(run_id)
            self._finish(run, RunStatus.FAILED, summary or f"Run failed: {error}")
            run.notes = _append_note(run.notes, error)
            self._commit([run_id])
        log.error("❌ Прогон %s завершился ошибкой: %s", run_id, error)
        return self.snapshot(run_id)

    def delete_run(self, run_id: str) -> SchedulerSnapshot:
        with self._lock:
            self._require(run_id)
            del self._runs[run_id]
            if run_id in self._queued:
                self._queued.remove(run_id)
            self._release(run_id)
            self.store.delete_run(run_id)
        log.info("🗑️ Прогон %s удален", run_id)
        return self.snapshot()

    def tick(self) -> SchedulerSnapshot:
        """Если слот свободен, делает текущим первый прогон из очереди."""
        with self._lock:
            if self._current is not None or not self._queued:
                return self.snapshot(self._current)
            run_id = self._queued.pop(0)
            self._promote(self._runs[run_id])
            self._commit([run_id])
        return self.snapshot(run_id)

    # --- внутреннее ---

    def _require(self, run_id: str) -> BenchmarkRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def _promote(self, run: BenchmarkRun) -> None:
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or self.clock()
        self._current = run.id
        log.info("🚀 Прогон %s стал текущим", run.id)

    def _release(self, run_id: str) -> None:
        if self._current == run_id:
            self._current = None

    def _finish(self, run: BenchmarkRun, status: RunStatus, summary: str) -> None:
        now = self.clock()
        run.status = status
        run.completed_at = now
        run.summary = summary
        if run.started_at:
            run.duration_ms = (now - run.started_at).total_seconds() * 1000
        self._release(run.id)

    def _commit(self, run_ids: Iterable[str]) -> None:
        for run_id in run_ids:
            run = self._runs.get(run_id)
            if run is not None:
                self.store.save_run(run)
