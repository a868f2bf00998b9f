from typing import List, Optional

from fastapi import APIRouter, HTTPException

from examlab.core.interfaces import LLMClientError
from examlab.core.model_discovery import DEFAULT_TIMEOUT_MS, discover_models
from examlab.models.topology import DiscoveredModel

router = APIRouter()


@router.get("/discover")
def discover(base_url: str, api_key: Optional[str] = None, timeout_ms: int = DEFAULT_TIMEOUT_MS,
             prefer_rich_metadata: bool = True) -> List[DiscoveredModel]:
    """Получить список моделей на OpenAI-совместимом сервере"""
    try:
        return discover_models(base_url, api_key=api_key, timeout_ms=timeout_ms,
                               prefer_rich_metadata=prefer_rich_metadata)
    except LLMClientError as e:
        raise HTTPException(status_code=502, detail=f"Model discovery failed: {e}")
