import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from examlab.core.http_client import OpenAICompatibleClient, normalize_base_url
from examlab.core.interfaces import LLMClientError
from examlab.models.topology import DiscoveredModel, DiscoveredModelOrigin

log = logging.getLogger(__name__)

RICH_ENDPOINT = "/api/v0/models"
BASIC_ENDPOINT = "/v1/models"
DEFAULT_TIMEOUT_MS = 8000


def _first_str(entry: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str):
            return value
    return None


def normalize_rich_entry(entry: Dict[str, Any], base_url: str, endpoint: str) -> Optional[DiscoveredModel]:
    """Запись из /api/v0/models (LM Studio): тип, состояние, контекст, квантование."""
    model_id = _first_str(entry, "id", "name")
    if not model_id:
        return None

    state = _first_str(entry, "state", "status")
    context_length = entry.get("max_context_length", entry.get("context_length"))
    quantization = entry.get("quantization")
    if isinstance(quantization, (int, float)) and not isinstance(quantization, bool):
        quantization = str(quantization)
    loaded = entry.get("loaded")
    if not isinstance(loaded, bool):
        loaded = state.lower() == "loaded" if state else None

    return DiscoveredModel(
        id=model_id,
        display_name=_first_str(entry, "display_name"),
        kind=_first_str(entry, "type", "kind"),
        state=state,
        max_context_length=context_length if isinstance(context_length, int) else None,
        quantization=quantization if isinstance(quantization, str) else None,
        source=_first_str(entry, "source", "path", "file", "archive"),
        capabilities=[item for item in entry.get("capabilities") or [] if isinstance(item, str)],
        loaded=loaded,
        origin=DiscoveredModelOrigin(base_url=base_url, endpoint=endpoint),
        metadata=entry.get("metadata") if isinstance(entry.get("metadata"), dict) else dict(entry),
    )


def normalize_basic_entry(entry: Dict[str, Any], base_url: str, endpoint: str) -> Optional[DiscoveredModel]:
    model_id = _first_str(entry, "id")
    if not model_id:
        return None
    return DiscoveredModel(
        id=model_id,
        display_name=model_id,
        origin=DiscoveredModelOrigin(base_url=base_url, endpoint=endpoint),
        metadata=dict(entry),
    )


def _entries(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("data") or payload.get("models") or []
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def discover_models(base_url: str, api_key: Optional[str] = None, timeout_ms: int = DEFAULT_TIMEOUT_MS,
                    prefer_rich_metadata: bool = True,
                    session: Optional[requests.Session] = None) -> List[DiscoveredModel]:
    """
    Опрашивает сервер: сначала расширенный эндпоинт LM Studio, затем
    стандартный /v1/models. Возвращает первый непустой результат.
    """
    base = normalize_base_url(base_url)
    client = OpenAICompatibleClient(base, model_id="", api_key=api_key, timeout_ms=timeout_ms, session=session)

    attempts = [(RICH_ENDPOINT, normalize_rich_entry), (BASIC_ENDPOINT, normalize_basic_entry)]
    if not prefer_rich_metadata:
        attempts = attempts[1:]

    last_error: Optional[Exception] = None
    failures = 0
    for endpoint, normalize in attempts:
        try:
            payload = client.get_json(endpoint)
        except LLMClientError as e:
            log.debug("Эндпоинт %s%s недоступен: %s", base, endpoint, e)
            last_error = e
            failures += 1
            continue
        models = [model for model in (normalize(entry, base, endpoint) for entry in _entries(payload)) if model]
        if models:
            log.info("🔎 Найдено %d моделей на %s%s", len(models), base, endpoint)
            return models

    if last_error is not None and failures == len(attempts):
        # Все эндпоинты недоступны: сообщаем причину последней попытки
        raise last_error
    return []


def merge_discovery_results(*groups: Iterable[DiscoveredModel]) -> List[DiscoveredModel]:
    """Объединяет результаты по id; поля из более поздних групп дополняют ранние."""
    merged: Dict[str, DiscoveredModel] = {}
    for group in groups:
        for model in group:
            existing = merged.get(model.id)
            if existing is None:
                merged[model.id] = model
                continue
            updates = {
                field: value for field, value in model.model_dump().items()
                if value not in (None, [], {}) and getattr(existing, field) in (None, [], {})
            }
            merged[model.id] = existing.model_copy(update=updates) if updates else existing
    return sorted(merged.values(), key=lambda item: item.id)


class ModelDiscoveryPoller:
    """
    Периодически опрашивает сервер в фоновом потоке, независимо от прогонов.
    Последний успешный результат доступен через .models.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, interval_s: float = 30.0,
                 discover: Callable[..., List[DiscoveredModel]] = discover_models):
        self.base_url = base_url
        self.api_key = api_key
        self.interval_s = interval_s
        self._discover = discover
        self._lock = threading.Lock()
        self._models: List[DiscoveredModel] = []
        self.last_error: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def models(self) -> List[DiscoveredModel]:
        with self._lock:
            return list(self._models)

    def refresh(self) -> List[DiscoveredModel]:
        try:
            models = self._discover(self.base_url, api_key=self.api_key)
        except LLMClientError as e:
            self.last_error = str(e)
            log.warning("⚠️ Обнаружение моделей на %s не удалось: %s", self.base_url, e)
            return self.models
        with self._lock:
            self._models = models
        self.last_error = None
        return list(models)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.refresh()
            self._stop.wait(self.interval_s)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="model-discovery", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
