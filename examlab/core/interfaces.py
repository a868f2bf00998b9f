from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, List, Optional


class IChatClient(ABC):
    """
    Абстрактный интерфейс клиента чат-комплишенов.
    Позволяет подменять HTTP-клиент в диагностике и движке (например, в тестах).
    """

    @abstractmethod
    def chat(self, messages: List[Dict[str, Any]], *, schema: Optional[str] = None,
             prefer_structured: bool = True, **generation: Any):
        """
        Отправляет сообщения модели и возвращает ChatCompletionResult.

        Args:
            messages: Упорядоченный список {"role": ..., "content": ...}
            schema: Класс схемы структурированного ответа (answer, topology-subject, ...)
            prefer_structured: Запрашивать ли ответ, ограниченный схемой

        Raises:
            LLMClientError: При ошибках взаимодействия с LLM
        """
        pass

    @abstractmethod
    def list_models(self) -> List[Dict[str, Any]]:
        """Возвращает список моделей, доступных на сервере."""
        pass


class ProgressSink(ABC):
    """
    Получатель событий прогресса прогона.
    Реализации не должны блокировать вызывающий поток надолго.
    """

    @abstractmethod
    def question_started(self, run_id: str, question_id: str, timestamp: datetime) -> None:
        pass

    @abstractmethod
    def attempt_recorded(self, run_id: str, attempt, metrics, timestamp: datetime,
                         next_question_id: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def run_completed(self, run_id: str, status, summary: Optional[str], metrics,
                      completed_at: datetime, error: Optional[str] = None) -> None:
        pass


class RunStore(ABC):
    """Хранилище профилей и прогонов. Каждая запись сохраняется целиком по id."""

    @abstractmethod
    def save_profile(self, profile) -> None:
        pass

    @abstractmethod
    def delete_profile(self, profile_id: str) -> None:
        pass

    @abstractmethod
    def load_profiles(self) -> list:
        pass

    @abstractmethod
    def save_run(self, run) -> None:
        pass

    @abstractmethod
    def delete_run(self, run_id: str) -> None:
        pass

    @abstractmethod
    def load_runs(self) -> list:
        pass


class ExamlabError(Exception):
    """Базовое исключение проекта"""
    pass


class LLMClientError(ExamlabError):
    """Базовое исключение для ошибок LLM клиентов"""
    pass


class LLMTimeoutError(LLMClientError):
    """Исключение для таймаутов запросов к LLM"""
    pass


class LLMConnectionError(LLMClientError):
    """Исключение для ошибок подключения к LLM"""
    pass


class LLMHTTPError(LLMClientError):
    """Сервер вернул код ошибки (4xx/5xx)"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ModelLoadError(LLMHTTPError):
    """Модель не найдена или не смогла загрузиться на сервере"""
    pass


class LLMResponseError(LLMClientError):
    """Исключение для ошибок в ответе LLM"""
    pass


class ResponseParseError(ExamlabError):
    """Ответ модели не содержит ожидаемого JSON или обязательного поля"""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class RunNotFoundError(ExamlabError):
    """Прогон с таким id не найден"""
    pass


class InvalidRunTransition(ExamlabError):
    """Недопустимый переход состояния прогона"""
    pass


class ProfileNotFoundError(ExamlabError):
    """Профиль с таким id не найден"""
    pass


class ProfileNotReadyError(ExamlabError):
    """Профиль не прошел диагностику и не допущен к полному прогону"""
    pass
