import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

import requests

from examlab.core.interfaces import (
    IChatClient, LLMConnectionError, LLMHTTPError, LLMResponseError, LLMTimeoutError, ModelLoadError
)
from examlab.core.logger import LLM_LOGGER_NAME
from examlab.models.run import TokenUsage

_CONFIDENCE = {"type": "number", "minimum": 0, "maximum": 1, "description": "Confidence score"}


def _id_schema(field_name: str, description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            field_name: {"type": "string", "description": description},
            "confidence": _CONFIDENCE,
        },
        "required": [field_name],
        "additionalProperties": False,
    }


# JSON Schema для response_format=json_schema по классам запросов
RESPONSE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "topology-subject": _id_schema("subjectId", "Subject identifier"),
    "topology-topic": _id_schema("topicId", "Topic identifier"),
    "topology-subtopic": _id_schema("subtopicId", "Subtopic identifier"),
    "answer": {
        "type": "object",
        "properties": {
            "answer": {"type": "string", "description": "The answer to the question"},
            "explanation": {"type": "string", "description": "Explanation of the answer"},
            "confidence": _CONFIDENCE,
        },
        "required": ["answer"],
        "additionalProperties": False,
    },
}

_STRUCTURED_REJECTION = re.compile(
    r"response[_-]?format|json[_ -]?schema|json mode|structured[_ ]output|unable to parse", re.IGNORECASE
)
_MODEL_LOAD_FAILURE = re.compile(
    r"model.*not.*found|failed to load model|insufficient.*resources", re.IGNORECASE
)


def normalize_base_url(base_url: str) -> str:
    """'http://host:1234/v1/' -> 'http://host:1234'"""
    url = base_url.strip().rstrip('/')
    if url.endswith('/v1'):
        url = url[:-3]
    return url.rstrip('/')


def is_structured_output_rejection(status_code: Optional[int], body: str) -> bool:
    """4xx с текстом про response_format / JSON mode означает, что сервер не умеет структурированный вывод."""
    if status_code is None or not 400 <= status_code < 500 or status_code == 404:
        return False
    if _MODEL_LOAD_FAILURE.search(body or ""):
        return False
    return bool(_STRUCTURED_REJECTION.search(body or ""))


@dataclass
class ChatCompletionResult:
    text: str
    raw: Dict[str, Any]
    usage: TokenUsage
    latency_ms: float
    fallback_used: bool = False
    structured_output: bool = False
    json_format: str = "none"
    request_payload: Dict[str, Any] = field(default_factory=dict)


class OpenAICompatibleClient(IChatClient):
    """
    HTTP-клиент для любого сервера с OpenAI-совместимым API
    (LM Studio, Jan, vLLM): /v1/chat/completions и /v1/models.

    Сначала запрашивает ответ по JSON-схеме. Если сервер отвергает
    response_format, повторяет запрос один раз без него (fallback_used=True).
    Таймауты, сетевые ошибки и 5xx не повторяются.
    """

    def __init__(self, base_url: str, model_id: str, api_key: Optional[str] = None,
                 timeout_ms: int = 120000, generation: Optional[Dict[str, Any]] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = normalize_base_url(base_url)
        self.model_id = model_id
        self.timeout = max(timeout_ms, 1) / 1000.0
        self.generation = {key: value for key, value in (generation or {}).items() if value is not None}

        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

        self.logger = logging.getLogger(__name__)
        self.llm_logger = logging.getLogger(LLM_LOGGER_NAME)

    @classmethod
    def from_profile(cls, profile, session: Optional[requests.Session] = None) -> "OpenAICompatibleClient":
        return cls(
            base_url=profile.base_url,
            model_id=profile.model_id,
            api_key=profile.api_key,
            timeout_ms=profile.request_timeout_ms,
            generation={
                "temperature": profile.temperature,
                "max_tokens": profile.max_output_tokens,
                "top_p": profile.top_p,
                "frequency_penalty": profile.frequency_penalty,
                "presence_penalty": profile.presence_penalty,
            },
            session=session,
        )

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def build_payload(self, messages: List[Dict[str, Any]], schema: Optional[str],
                      structured: bool, overrides: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model_id, "messages": messages}
        payload.update(self.generation)
        payload.update({key: value for key, value in overrides.items() if value is not None})

        if structured:
            if schema:
                if schema not in RESPONSE_SCHEMAS:
                    raise ValueError(f"Неизвестный класс схемы: {schema}")
                payload["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": f"{schema.replace('-', '_')}_response",
                        "schema": RESPONSE_SCHEMAS[schema],
                        "strict": True,
                    },
                }
            else:
                payload["response_format"] = {"type": "json_object"}
        return payload

    def chat(self, messages: List[Dict[str, Any]], *, schema: Optional[str] = None,
             prefer_structured: bool = True, temperature: Optional[float] = None,
             max_tokens: Optional[int] = None, top_p: Optional[float] = None,
             frequency_penalty: Optional[float] = None,
             presence_penalty: Optional[float] = None) -> ChatCompletionResult:
        overrides = {
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
            "frequency_penalty": frequency_penalty,
            "presence_penalty": presence_penalty,
        }
        started = time.perf_counter()

        if not prefer_structured:
            payload = self.build_payload(messages, schema, False, overrides)
            data = self._post_chat(payload)
            return self._to_result(data, payload, started, fallback_used=False, structured=False)

        payload = self.build_payload(messages, schema, True, overrides)
        try:
            data = self._post_chat(payload)
        except LLMHTTPError as e:
            if isinstance(e, ModelLoadError) or not is_structured_output_rejection(e.status_code, e.body):
                raise
            self.logger.warning(
                "    ⚠️ Сервер отклонил структурированный вывод (HTTP %s), повторяем без response_format.",
                e.status_code,
            )
            plain_payload = self.build_payload(messages, schema, False, overrides)
            data = self._post_chat(plain_payload)
            return self._to_result(data, plain_payload, started, fallback_used=True, structured=False)

        return self._to_result(data, payload, started, fallback_used=False, structured=True)

    def list_models(self) -> List[Dict[str, Any]]:
        data = self.get_json("/v1/models")
        models = data.get("data") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    def get_json(self, path: str) -> Any:
        response = self._send("GET", self.url(path))
        return self._decode(response)

    def _post_chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.url("/v1/chat/completions")
        self.llm_logger.info("REQUEST (HTTP):\n  URL: %s\n  Payload: %s",
                             url, json.dumps(payload, indent=2, ensure_ascii=False))
        response = self._send("POST", url, payload)
        data = self._decode(response)
        self.llm_logger.info("RESPONSE (HTTP %s):\n%s", response.status_code,
                             json.dumps(data, indent=2, ensure_ascii=False))
        if not isinstance(data, dict) or not data.get("choices"):
            raise LLMResponseError("PARSING_ERROR: ответ API не содержит ключ 'choices'")
        return data

    def _send(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        try:
            self.logger.debug("    🚀 %s %s (timeout=%.1fс)", method, url, self.timeout)
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            self.logger.error("RESPONSE (HTTP Timeout Error): сервер не ответил за %.1fс", self.timeout)
            raise LLMTimeoutError(f"Request timed out after {self.timeout:.1f}s") from e
        except requests.exceptions.RequestException as e:
            self.logger.error("RESPONSE (HTTP Request Error): %s", e)
            raise LLMConnectionError(f"HTTP_ERROR: {e}") from e

        if not response.ok:
            body = response.text or ""
            self.llm_logger.info("RESPONSE (HTTP %s): %s", response.status_code, body[:2000])
            if response.status_code == 404 or _MODEL_LOAD_FAILURE.search(body):
                raise ModelLoadError(f"Model loading failed: {response.status_code} - {body[:500]}",
                                     status_code=response.status_code, body=body)
            raise LLMHTTPError(f"Chat completion failed: {response.status_code} - {body[:500]}",
                               status_code=response.status_code, body=body)
        return response

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise LLMResponseError(f"PARSING_ERROR: тело ответа не JSON: {response.text[:200]}") from e

    def _to_result(self, data: Dict[str, Any], payload: Dict[str, Any], started: float,
                   fallback_used: bool, structured: bool) -> ChatCompletionResult:
        choice = data["choices"][0] or {}
        message = choice.get("message") or {}
        delta = choice.get("delta") or {}
        text = message.get("content") or delta.get("content") or ""

        usage = data.get("usage") or {}
        json_format = "none"
        if structured:
            json_format = payload.get("response_format", {}).get("type", "none")

        latency_ms = (time.perf_counter() - started) * 1000
        self.logger.info("    ✅ Ответ получен за %.0f мс (fallback=%s)", latency_ms, fallback_used)
        return ChatCompletionResult(
            text=text,
            raw=data,
            usage=TokenUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
            latency_ms=latency_ms,
            fallback_used=fallback_used,
            structured_output=structured,
            json_format=json_format,
            request_payload=payload,
        )
