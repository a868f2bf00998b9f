import logging
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from examlab.core.evaluation import evaluate_answer, failed_evaluation
from examlab.core.interfaces import IChatClient, InvalidRunTransition, ProgressSink, RunNotFoundError
from examlab.core.pipeline import StageFailure, StagePipeline
from examlab.core.scheduler import RunScheduler
from examlab.core.topology import TopologyCatalog, evaluate_topology, failed_topology_evaluation
from examlab.models.profile import ModelProfile
from examlab.models.question import Question
from examlab.models.run import BenchmarkAttempt, BenchmarkRun, QuestionSnapshot, RunStatus

log = logging.getLogger(__name__)

ClientFactory = Callable[[ModelProfile], IChatClient]


def _snapshot(question: Question) -> QuestionSnapshot:
    return QuestionSnapshot(
        prompt=question.prompt,
        type=question.type,
        difficulty=question.difficulty,
        options=list(question.options),
        answer=question.answer,
        solution=question.solution,
    )


class BenchmarkRunEngine:
    """
    Выполняет прогон: вопросы строго по очереди, для каждого четыре этапа
    (subject, topic, subtopic, answer), оценка, свертка метрик и событие прогресса.

    Ошибка этапа не прерывает прогон: попытка сохраняется с полем error и
    считается проваленной и по ответу, и по топологии.
    """

    def __init__(self, scheduler: RunScheduler, client_factory: ClientFactory, catalog: TopologyCatalog,
                 sink: ProgressSink, on_fallback: Optional[Callable[[ModelProfile], None]] = None):
        self.scheduler = scheduler
        self.client_factory = client_factory
        self.catalog = catalog
        self.sink = sink
        self.on_fallback = on_fallback

    def execute(self, run_id: str, profile: ModelProfile, questions: List[Question]) -> BenchmarkRun:
        log.info("=" * 80)
        log.info("🚀 НАЧАЛО ПРОГОНА %s: модель %s, вопросов: %d", run_id, profile.model_id, len(questions))

        self.scheduler.mark_running(run_id)
        fallback_reported = False

        try:
            pipeline = StagePipeline(self.client_factory(profile), self.catalog, profile)
            for index, question in enumerate(questions):
                if not self.scheduler.is_active(run_id):
                    log.warning("⏹️ Прогон %s остановлен до вопроса %s", run_id, question.id)
                    return self._stopped(run_id)

                log.info("--- Вопрос %d/%d: %s ---", index + 1, len(questions), question.id)
                self.sink.question_started(run_id, question.id, datetime.now())

                attempt, context = self._run_question(pipeline, question)

                if context.fallback_used:
                    # Остальные вопросы сразу запрашиваем обычным текстом
                    pipeline.profile = pipeline.profile.model_copy(update={
                        "metadata": pipeline.profile.metadata.model_copy(update={"supports_structured_output": False})
                    })
                    if not fallback_reported and self.on_fallback:
                        self.on_fallback(profile)
                    fallback_reported = True

                try:
                    snapshot = self.scheduler.record_attempt(run_id, attempt)
                except (InvalidRunTransition, RunNotFoundError) as e:
                    log.warning("⏹️ Попытка по вопросу %s отброшена: %s", question.id, e)
                    return self._stopped(run_id)

                next_question_id = questions[index + 1].id if index + 1 < len(questions) else None
                self.sink.attempt_recorded(run_id, attempt, snapshot.focus.metrics, datetime.now(), next_question_id)

            snapshot = self.scheduler.complete(run_id)
        except Exception as e:
            log.error("❌ Прогон %s прерван исключением: %s", run_id, e, exc_info=True)
            return self._failed(run_id, e)

        run = snapshot.focus
        self.sink.run_completed(run_id, run.status, run.summary, run.metrics, run.completed_at)
        log.info("🏁 ПРОГОН %s ЗАВЕРШЕН. %s", run_id, run.summary)
        return run

    def _run_question(self, pipeline: StagePipeline, question: Question):
        started_at = datetime.now()
        started = time.perf_counter()
        error = None
        try:
            context = pipeline.execute(question)
        except StageFailure as failure:
            context = failure.context
            error = str(failure.cause)

        if error is None:
            evaluation = evaluate_answer(question, context.answer)
            topology_evaluation = evaluate_topology(question, context.prediction, self.catalog)
        else:
            evaluation = failed_evaluation(question, error)
            topology_evaluation = failed_topology_evaluation(question, self.catalog, error)

        answer_step = next((step for step in context.steps if step.id == "answer"), None)
        if answer_step is not None and error is None:
            answer_step.evaluation = evaluation

        usage = context.usage
        attempt = BenchmarkAttempt(
            id=str(uuid.uuid4()),
            question_id=question.id,
            started_at=started_at,
            completed_at=datetime.now(),
            question_snapshot=_snapshot(question),
            steps=context.steps,
            evaluation=evaluation,
            topology_evaluation=topology_evaluation,
            topology_prediction=context.prediction,
            model_response=context.answer,
            response_text=answer_step.response_text if answer_step else "",
            latency_ms=context.latency_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            error=error,
        )

        verdict = "✅" if evaluation.passed else "❌"
        log.info("    %s Ответ: %s (ожидалось: %s), топология: %.2f, %.0f мс (всего %.0f мс)",
                 verdict, evaluation.received, evaluation.expected, topology_evaluation.score,
                 attempt.latency_ms, (time.perf_counter() - started) * 1000)
        return attempt, context

    def _stopped(self, run_id: str) -> Optional[BenchmarkRun]:
        try:
            run = self.scheduler.get_run(run_id)
        except RunNotFoundError:
            self.sink.run_completed(run_id, RunStatus.CANCELLED, "Run deleted while running.", None, datetime.now())
            return None
        self.sink.run_completed(run_id, run.status, run.summary, run.metrics, run.completed_at or datetime.now())
        return run

    def _failed(self, run_id: str, error: Exception) -> Optional[BenchmarkRun]:
        message = f"{type(error).__name__}: {error}"
        try:
            run = self.scheduler.fail(run_id, message, summary=f"Run failed: {message}").focus
        except (InvalidRunTransition, RunNotFoundError):
            return self._stopped(run_id)
        self.sink.run_completed(run_id, run.status, run.summary, run.metrics, run.completed_at, error=message)
        return run
