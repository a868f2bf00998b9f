import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum
import json
from datetime import datetime

LLM_LOGGER_NAME = "LLM_Interactions"


class LogLevel(Enum):
    """Уровни логирования, допустимые в конфигурации."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


class LogFormat(Enum):
    """Форматы вывода логов."""
    SIMPLE = "simple"
    DETAILED = "detailed"
    JSON = "json"


class StructuredFormatter(logging.Formatter):
    """
    Форматтер с тремя стилями вывода. В JSON-режиме добавляет
    контекст прогона (run_id, question_id, stage), если он передан через extra=.
    """
    CONTEXT_KEYS = ('run_id', 'question_id', 'stage', 'profile_id', 'latency_ms')

    def __init__(self, format_type: LogFormat = LogFormat.DETAILED):
        self.format_type = format_type
        if format_type == LogFormat.SIMPLE:
            fmt = '%(asctime)s - %(name)-24s - %(levelname)-8s - %(message)s'
        elif format_type == LogFormat.DETAILED:
            fmt = '%(asctime)s - %(name)s - %(levelname)s [%(funcName)s:%(lineno)d]\n%(message)s\n' + '-' * 80
        else:
            fmt = None
        super().__init__(fmt, datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record):
        if self.format_type != LogFormat.JSON:
            return super().format(record)

        entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in self.CONTEXT_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _rotating_handler(path: Path, level: int, fmt: LogFormat, max_mb: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_mb * 1024 * 1024, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter(fmt))
    return handler


def setup_logging(config: Optional[Dict[str, Any]] = None):
    """
    Настраивает логирование всего приложения. Вызывается один раз при старте
    (CLI или веб-сервер).

    Ожидает секцию config['logging'] с ключами level, format, directory,
    file_max_mb, file_backup_count, llm_level, llm_format. Плоские ключи
    logging_level / logging_format / logging_directory из .env тоже принимаются.
    """
    config = config or {}
    log_config = dict(config.get('logging', {}))
    for key, value in config.items():
        if key.startswith('logging_'):
            log_config.setdefault(key[len('logging_'):], value)

    log_level = LogLevel[str(log_config.get('level', 'INFO')).upper()].value
    log_format = LogFormat[str(log_config.get('format', 'SIMPLE')).upper()]
    llm_level = LogLevel[str(log_config.get('llm_level', 'INFO')).upper()].value
    llm_format = LogFormat[str(log_config.get('llm_format', 'DETAILED')).upper()]
    log_dir = Path(log_config.get('directory', 'logs'))
    max_mb = int(log_config.get('file_max_mb', 10))
    backups = int(log_config.get('file_backup_count', 5))

    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(min(log_level, llm_level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter(LogFormat.SIMPLE))
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating_handler(log_dir / "examlab.log", log_level, log_format, max_mb, backups))

    # Запросы и ответы моделей пишутся отдельно и не дублируются в общий лог
    llm_logger = logging.getLogger(LLM_LOGGER_NAME)
    llm_logger.setLevel(llm_level)
    llm_logger.propagate = False
    llm_logger.handlers.clear()
    llm_logger.addHandler(_rotating_handler(log_dir / "llm_interactions.log", llm_level, llm_format, 5, 3))

    logging.getLogger(__name__).info("✅ Система логирования настроена (каталог: %s).", log_dir)
