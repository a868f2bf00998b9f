from pydantic import BaseModel
from typing import List, Optional


class TopologySubtopic(BaseModel):
    id: str
    name: str


class TopologyTopic(BaseModel):
    id: str
    name: str
    subtopics: List[TopologySubtopic] = []


class TopologySubject(BaseModel):
    id: str
    name: str
    topics: List[TopologyTopic] = []


class TopologyDocument(BaseModel):
    generated_at: Optional[str] = None
    subjects: List[TopologySubject] = []


class DiscoveredModelOrigin(BaseModel):
    base_url: str
    endpoint: str


class DiscoveredModel(BaseModel):
    """Модель, найденная на сервере LM Studio / OpenAI-совместимом сервере"""
    id: str
    display_name: Optional[str] = None
    kind: Optional[str] = None
    state: Optional[str] = None
    max_context_length: Optional[int] = None
    quantization: Optional[str] = None
    source: Optional[str] = None
    capabilities: List[str] = []
    loaded: Optional[bool] = None
    origin: DiscoveredModelOrigin
    metadata: dict = {}
