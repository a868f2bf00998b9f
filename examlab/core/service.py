"""
Сервисный слой: связывает хранилище, планировщик, движок прогонов,
диагностику и банк вопросов. Используется и веб-API, и CLI.
"""
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from examlab.core.diagnostics import DiagnosticsRunner, apply_diagnostics_result
from examlab.core.engine import BenchmarkRunEngine, ClientFactory
from examlab.core.http_client import OpenAICompatibleClient
from examlab.core.interfaces import ProfileNotFoundError, ProfileNotReadyError, ProgressSink, RunStore
from examlab.core.progress_tracker import ActiveRunTracker, CompositeProgressSink, LoggingProgressSink
from examlab.core.question_repository import QuestionRepository
from examlab.core.scheduler import RunScheduler
from examlab.core.topology import TopologyCatalog
from examlab.models.profile import (
    DEFAULT_SYSTEM_PROMPT, DiagnosticsLevel, DiagnosticsResult, DiagnosticsStatus, ModelProfile,
    ProfileCreateRequest, ProfileUpdateRequest, default_benchmark_steps
)
from examlab.models.run import ActiveRunState, BenchmarkRun, DatasetDescriptor, RunQueue, RunStatus

log = logging.getLogger(__name__)


class BenchmarkService:

    def __init__(self, store: RunStore, repository: QuestionRepository, catalog: TopologyCatalog,
                 client_factory: ClientFactory = OpenAICompatibleClient.from_profile,
                 require_diagnostics: bool = True, extra_sinks: Sequence[ProgressSink] = (),
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.repository = repository
        self.catalog = catalog
        self.require_diagnostics = require_diagnostics
        self.clock = clock

        self.scheduler = RunScheduler(store, clock)
        self.tracker = ActiveRunTracker()
        self.progress_log = LoggingProgressSink()
        self.sink = CompositeProgressSink([self.progress_log, self.tracker, *extra_sinks])
        self.engine = BenchmarkRunEngine(self.scheduler, client_factory, catalog, self.sink,
                                         on_fallback=self._on_fallback)
        self.diagnostics = DiagnosticsRunner(client_factory, catalog, clock)

        self._profiles: Dict[str, ModelProfile] = {}
        self._profiles_lock = threading.RLock()
        self._queue_lock = threading.Lock()

    def bootstrap(self, seed_profiles: Optional[Iterable[Dict[str, Any]]] = None) -> None:
        """Загружает профили и прогоны из хранилища, добавляет профили из окружения."""
        with self._profiles_lock:
            self._profiles = {profile.id: profile for profile in self.store.load_profiles()}
        for data in seed_profiles or []:
            if data.get("id") in self._profiles:
                continue
            request = ProfileCreateRequest.model_validate(data)
            self.create_profile(request, profile_id=data.get("id"))
        self.scheduler.bootstrap()
        log.info("✅ Сервис готов: профилей %d, вопросов %d", len(self._profiles), len(self.repository))

    # --- профили ---

    def list_profiles(self) -> List[ModelProfile]:
        with self._profiles_lock:
            return sorted(self._profiles.values(), key=lambda profile: profile.created_at)

    def get_profile(self, profile_id: str) -> ModelProfile:
        with self._profiles_lock:
            profile = self._profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFoundError(f"Profile {profile_id} not found")
        return profile

    def create_profile(self, request: ProfileCreateRequest, profile_id: Optional[str] = None) -> ModelProfile:
        now = self.clock()
        data = request.model_dump(exclude={"default_system_prompt", "benchmark_steps"})
        profile = ModelProfile(
            id=profile_id or str(uuid.uuid4()),
            default_system_prompt=request.default_system_prompt or DEFAULT_SYSTEM_PROMPT,
            benchmark_steps=request.benchmark_steps or default_benchmark_steps(),
            created_at=now,
            updated_at=now,
            **data,
        )
        self._save_profile(profile)
        log.info("➕ Создан профиль %s (%s)", profile.name, profile.model_id)
        return profile

    def update_profile(self, profile_id: str, request: ProfileUpdateRequest) -> ModelProfile:
        with self._profiles_lock:
            profile = self.get_profile(profile_id)
            changes = request.model_dump(exclude_unset=True)
            changes["updated_at"] = self.clock()
            updated = ModelProfile.model_validate({**profile.model_dump(), **changes})
            self._save_profile(updated)
        log.info("✏️ Профиль %s обновлен: %s", profile_id, ", ".join(sorted(changes)))
        return updated

    def delete_profile(self, profile_id: str) -> None:
        with self._profiles_lock:
            self.get_profile(profile_id)
            del self._profiles[profile_id]
            self.store.delete_profile(profile_id)
        log.info("🗑️ Профиль %s удален", profile_id)

    def run_diagnostics(self, profile_id: str, level: DiagnosticsLevel) -> DiagnosticsResult:
        profile = self.get_profile(profile_id)
        result = self.diagnostics.run(profile, level)
        with self._profiles_lock:
            # Профиль мог измениться, пока шла диагностика
            current = self._profiles.get(profile_id, profile)
            self._save_profile(apply_diagnostics_result(current, result, self.clock()))
        log.info("🩺 Диагностика %s для %s: %s", result.level.value, profile.name, result.status.value)
        return result

    def is_ready(self, profile: ModelProfile) -> bool:
        """Последние HANDSHAKE и READINESS должны быть успешными."""
        for level in (DiagnosticsLevel.HANDSHAKE, DiagnosticsLevel.READINESS):
            result = profile.last_diagnostic(level)
            if result is None or result.status != DiagnosticsStatus.PASS:
                return False
        return True

    def _save_profile(self, profile: ModelProfile) -> None:
        with self._profiles_lock:
            self._profiles[profile.id] = profile
            self.store.save_profile(profile)

    def _on_fallback(self, profile: ModelProfile) -> None:
        with self._profiles_lock:
            current = self._profiles.get(profile.id)
            if current is None:
                return
            metadata = current.metadata.model_copy(update={"supports_structured_output": False, "json_format": "none"})
            self._save_profile(current.model_copy(update={"metadata": metadata, "updated_at": self.clock()}))
        log.warning("⚠️ Профиль %s переведен в текстовый режим: сервер отклонил structured output", profile.name)

    # --- прогоны ---

    def launch_run(self, profile_id: str, question_ids: Optional[List[str]] = None, label: Optional[str] = None,
                   filters: Optional[List[str]] = None) -> BenchmarkRun:
        profile = self.get_profile(profile_id)
        if self.require_diagnostics and not self.is_ready(profile):
            raise ProfileNotReadyError(
                f"Profile {profile.name} must pass handshake and readiness diagnostics before a run"
            )

        questions = self.repository.select(question_ids)
        if not questions:
            raise ValueError("No questions selected for the run")

        summary = self.repository.summary(filters)
        dataset = DatasetDescriptor(label=summary.label, total_questions=len(questions), filters=summary.filters)
        snapshot = self.scheduler.create_run(profile, [question.id for question in questions], dataset,
                                             label=label, launch=True)
        return snapshot.focus

    def process_queue(self) -> List[str]:
        """
        Выполняет прогоны из очереди по одному, пока очередь не опустеет.
        Если обработка уже идет в другом потоке, сразу возвращает пустой список:
        владелец блокировки после ее освобождения перепроверяет очередь.
        """
        if not self._queue_lock.acquire(blocking=False):
            log.debug("Очередь уже обрабатывается")
            return []
        processed = []
        while True:
            try:
                self._drain_queue(processed)
            finally:
                self._queue_lock.release()

            # Прогон мог встать в очередь между последним tick и освобождением блокировки
            queue = self.scheduler.snapshot().queue
            if queue.current_run_id is None and not queue.queued_run_ids:
                return processed
            if not self._queue_lock.acquire(blocking=False):
                return processed

    def _drain_queue(self, processed: List[str]) -> None:
        while True:
            snapshot = self.scheduler.tick()
            run_id = snapshot.queue.current_run_id
            if run_id is None:
                return
            self._execute(snapshot.get(run_id))
            processed.append(run_id)

    def _execute(self, run: BenchmarkRun) -> None:
        try:
            profile = self.get_profile(run.profile_id)
        except ProfileNotFoundError as e:
            failed = self.scheduler.fail(run.id, str(e)).focus
            self.sink.run_completed(run.id, failed.status, failed.summary, failed.metrics,
                                    failed.completed_at, error=str(e))
            return

        questions = self.repository.select(run.question_ids)
        self.tracker.initialize(run, questions)
        self.progress_log.set_total(run.id, len(questions))
        self.engine.execute(run.id, profile, questions)

        if self.scheduler.is_active(run.id):
            # Движок вышел, не освободив слот
            self.scheduler.fail(run.id, "Run engine exited without finishing the run")

    def cancel_run(self, run_id: str) -> BenchmarkRun:
        return self.scheduler.cancel(run_id).focus

    def delete_run(self, run_id: str) -> None:
        self.scheduler.delete_run(run_id)
        state = self.tracker.state
        if state is not None and state.run_id == run_id and state.completed_at is not None:
            self.tracker.clear()

    def get_run(self, run_id: str) -> BenchmarkRun:
        return self.scheduler.get_run(run_id)

    def list_runs(self) -> List[BenchmarkRun]:
        return self.scheduler.list_runs()

    def queue(self) -> RunQueue:
        return self.scheduler.snapshot().queue

    def active_run(self) -> Optional[ActiveRunState]:
        return self.tracker.state

    def dashboard_overview(self) -> Dict[str, Any]:
        runs = self.list_runs()
        profiles = self.list_profiles()
        completed = [run for run in runs if run.status == RunStatus.COMPLETED]
        active = self.tracker.state
        return {
            "profiles": {
                "total": len(profiles),
                "ready": sum(1 for profile in profiles if self.is_ready(profile)),
            },
            "questions": self.repository.summary().model_dump(),
            "runs": {
                "total": len(runs),
                "by_status": dict(Counter(run.status.value for run in runs)),
            },
            "queue": self.queue().model_dump(),
            "active_run": active.model_dump(mode="json") if active else None,
            "recent_runs": [
                {
                    "id": run.id,
                    "label": run.label,
                    "profile_name": run.profile_name,
                    "accuracy": run.metrics.accuracy,
                    "topology_accuracy": run.metrics.topology_accuracy,
                    "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                }
                for run in completed[:5]
            ],
        }
