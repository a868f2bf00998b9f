"""
Свертка попыток в агрегированные метрики прогона.

Метрики никогда не редактируются напрямую: после каждой попытки
вычисляется новый RunMetrics из предыдущего и новой попытки, а при
восстановлении после перезапуска пересчитываются по всем попыткам.
"""
from typing import Iterable, Optional

from examlab.models.run import BenchmarkAttempt, RunMetrics

TOPOLOGY_LEVELS = ("subject", "topic", "subtopic")


def create_empty_metrics() -> RunMetrics:
    return RunMetrics()


def _ratio(passed: int, failed: int) -> float:
    total = passed + failed
    return passed / total if total else 0.0


def _level_match(attempt: BenchmarkAttempt, level: str) -> Optional[bool]:
    if attempt.topology_evaluation is None:
        return None
    return attempt.topology_evaluation.metrics.get(f"{level}_match")


def fold_attempt(metrics: RunMetrics, attempt: BenchmarkAttempt) -> RunMetrics:
    """Возвращает новые метрики с учетом еще одной попытки."""
    data = metrics.model_dump()

    data["total_count"] += 1
    if attempt.evaluation.passed:
        data["passed_count"] += 1
    else:
        data["failed_count"] += 1
    data["accuracy"] = _ratio(data["passed_count"], data["failed_count"])

    if attempt.topology_evaluation is not None:
        if attempt.topology_evaluation.passed:
            data["topology_passed_count"] += 1
        else:
            data["topology_failed_count"] += 1
        data["topology_accuracy"] = _ratio(data["topology_passed_count"], data["topology_failed_count"])

    for level in TOPOLOGY_LEVELS:
        matched = _level_match(attempt, level)
        if matched is None:
            continue
        data[f"{level}_passed_count" if matched else f"{level}_failed_count"] += 1
        data[f"{level}_accuracy"] = _ratio(data[f"{level}_passed_count"], data[f"{level}_failed_count"])

    data["total_latency_ms"] += attempt.latency_ms
    data["average_latency_ms"] = data["total_latency_ms"] / data["total_count"]

    data["prompt_tokens"] += attempt.prompt_tokens
    data["completion_tokens"] += attempt.completion_tokens
    data["total_tokens"] += attempt.total_tokens

    return RunMetrics(**data)


def compute_metrics(attempts: Iterable[BenchmarkAttempt]) -> RunMetrics:
    metrics = create_empty_metrics()
    for attempt in attempts:
        metrics = fold_attempt(metrics, attempt)
    return metrics


def format_summary(metrics: RunMetrics) -> str:
    """'Accuracy 66.7% across 3 questions. Topology accuracy 33.3%.'"""
    noun = "question" if metrics.total_count == 1 else "questions"
    summary = f"Accuracy {metrics.accuracy * 100:.1f}% across {metrics.total_count} {noun}."
    if metrics.topology_passed_count + metrics.topology_failed_count:
        summary += f" Topology accuracy {metrics.topology_accuracy * 100:.1f}%."
    return summary
