import argparse
import logging
import sys
from pathlib import Path

# Добавляем корень проекта в sys.path для запуска без установки пакета
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from examlab.core.config_loader import EnvConfigLoader  # noqa: E402
from examlab.core.interfaces import ExamlabError  # noqa: E402
from examlab.core.logger import setup_logging  # noqa: E402
from examlab.core.question_repository import QuestionRepository  # noqa: E402
from examlab.core.service import BenchmarkService  # noqa: E402
from examlab.core.storage import JsonRunStore  # noqa: E402
from examlab.core.topology import TopologyCatalog  # noqa: E402
from examlab.models.profile import DiagnosticsLevel, DiagnosticsStatus  # noqa: E402

DEFAULT_DATA = project_root / "examlab" / "data"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Прогон банка экзаменационных вопросов на локальной LLM")
    parser.add_argument("--profile", help="Id профиля (по умолчанию первый профиль из окружения)")
    parser.add_argument("--questions", help="JSON-файл с вопросами")
    parser.add_argument("--topology", help="JSON-файл каталога топологии")
    parser.add_argument("--question-ids", help="Id вопросов через запятую")
    parser.add_argument("--limit", type=int, help="Взять только первые N вопросов")
    parser.add_argument("--label", help="Название прогона")
    parser.add_argument("--data-dir", help="Каталог для profiles.json и runs.json")
    parser.add_argument("--diagnostics", choices=["none", "handshake", "readiness", "all"], default="all",
                        help="Какую диагностику выполнить перед прогоном")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """
    Запуск одного прогона из командной строки: конфигурация из .env,
    диагностика профиля, прогон, итоговая сводка.
    """
    args = parse_args(argv)

    config = EnvConfigLoader(prefix="EXAMLAB").load_config()
    setup_logging(config)
    log = logging.getLogger(__name__)
    log.info("🚀 Запуск examlab...")

    questions_file = Path(args.questions or config.get("questions_file") or DEFAULT_DATA / "questions.json")
    topology_file = Path(args.topology or config.get("topology_file") or DEFAULT_DATA / "topology.json")
    data_dir = args.data_dir or config.get("data_dir", "data")

    try:
        repository = QuestionRepository.load(questions_file)
        catalog = TopologyCatalog.load(topology_file)
    except (OSError, ValueError) as e:
        log.critical("❌ Не удалось загрузить данные: %s", e, exc_info=True)
        return 1

    service = BenchmarkService(
        JsonRunStore(data_dir),
        repository,
        catalog,
        # --diagnostics none явно снимает проверку готовности профиля
        require_diagnostics=bool(config.get("require_diagnostics", True)) and args.diagnostics != "none",
    )
    service.bootstrap(config.get("profiles", []))

    profiles = service.list_profiles()
    if not profiles:
        log.critical("❌ Нет ни одного профиля. Задайте EXAMLAB_PROFILES_0_MODEL_ID и EXAMLAB_PROFILES_0_BASE_URL.")
        return 1
    if args.profile:
        profile_id = args.profile
    elif config.get("profiles"):
        profile_id = config["profiles"][0]["id"]
    else:
        profile_id = profiles[0].id

    levels = {
        "none": [],
        "handshake": [DiagnosticsLevel.HANDSHAKE],
        "readiness": [DiagnosticsLevel.READINESS],
        "all": [DiagnosticsLevel.HANDSHAKE, DiagnosticsLevel.READINESS],
    }[args.diagnostics]

    try:
        for level in levels:
            result = service.run_diagnostics(profile_id, level)
            log.info("🩺 %s: %s (%s)", level.value, result.status.value, result.summary)
            if result.status == DiagnosticsStatus.FAIL:
                log.error("❌ Диагностика не пройдена, прогон отменен.")
                return 2

        question_ids = ([item.strip() for item in args.question_ids.split(",") if item.strip()]
                        if args.question_ids else config.get("question_ids"))
        if args.limit:
            question_ids = [question.id for question in repository.select(question_ids)[:args.limit]]

        run = service.launch_run(profile_id, question_ids, label=args.label)
        service.process_queue()
        run = service.get_run(run.id)
    except (ExamlabError, ValueError) as e:
        log.critical("❌ Прогон не выполнен: %s", e)
        return 1

    metrics = run.metrics
    print("=" * 60)
    print(f"Прогон:     {run.label} ({run.id})")
    print(f"Статус:     {run.status.value}")
    print(f"Точность:   {metrics.accuracy:.1%} ({metrics.passed_count}/{metrics.total_count})")
    print(f"Топология:  {metrics.topology_accuracy:.1%} "
          f"(subject {metrics.subject_accuracy:.1%}, topic {metrics.topic_accuracy:.1%}, "
          f"subtopic {metrics.subtopic_accuracy:.1%})")
    print(f"Задержка:   {metrics.average_latency_ms:.0f} мс в среднем")
    print(f"Токены:     {metrics.total_tokens}")
    print(f"Итог:       {run.summary}")
    print("=" * 60)
    return 0 if run.status.value == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
