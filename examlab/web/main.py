import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from examlab.core.config_loader import EnvConfigLoader
from examlab.core.interfaces import ProgressSink
from examlab.core.logger import setup_logging
from examlab.core.progress_tracker import BackgroundProgressSink
from examlab.core.question_repository import QuestionRepository
from examlab.core.service import BenchmarkService
from examlab.core.storage import JsonRunStore
from examlab.core.topology import TopologyCatalog
from examlab.web.routers import models, profiles, runs
from examlab.web.settings import Settings, get_settings

log = logging.getLogger(__name__)


# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, connection_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_connections[connection_id] = websocket

    def disconnect(self, connection_id: str):
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]

    async def broadcast(self, event_data: dict):
        message = json.dumps(event_data)
        for connection_id, websocket in list(self.active_connections.items()):
            try:
                await websocket.send_text(message)
            except Exception as e:
                log.warning("Ошибка отправки события клиенту %s: %s", connection_id, e)
                self.disconnect(connection_id)


class WebSocketProgressSink(ProgressSink):
    """Пересылает события прогона всем подключенным клиентам /ws/runs."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def _publish(self, event: Dict[str, Any]) -> None:
        if self.loop is None or not self.manager.active_connections:
            return
        asyncio.run_coroutine_threadsafe(self.manager.broadcast(event), self.loop)

    def question_started(self, run_id, question_id, timestamp):
        self._publish({
            "type": "question_started",
            "run_id": run_id,
            "question_id": question_id,
            "timestamp": timestamp.isoformat(),
        })

    def attempt_recorded(self, run_id, attempt, metrics, timestamp, next_question_id=None):
        self._publish({
            "type": "attempt_recorded",
            "run_id": run_id,
            "attempt": attempt.model_dump(mode="json"),
            "metrics": metrics.model_dump(mode="json") if metrics else None,
            "next_question_id": next_question_id,
            "timestamp": timestamp.isoformat(),
        })

    def run_completed(self, run_id, status, summary, metrics, completed_at, error=None):
        self._publish({
            "type": "run_completed",
            "run_id": run_id,
            "status": getattr(status, "value", status),
            "summary": summary,
            "metrics": metrics.model_dump(mode="json") if metrics else None,
            "completed_at": completed_at.isoformat() if completed_at else None,
            "error": error,
        })


def build_service(settings: Settings, extra_sinks=()) -> BenchmarkService:
    """Собирает сервис по настройкам: JSON-хранилище, банк вопросов, каталог топологии."""
    repository = (QuestionRepository.load(settings.questions_file) if settings.questions_file.exists()
                  else QuestionRepository([]))
    catalog = (TopologyCatalog.load(settings.topology_file) if settings.topology_file.exists()
               else TopologyCatalog())
    if not settings.questions_file.exists():
        log.warning("⚠️ Файл вопросов %s не найден, банк пуст", settings.questions_file)

    service = BenchmarkService(
        JsonRunStore(settings.data_dir),
        repository,
        catalog,
        require_diagnostics=settings.require_diagnostics,
        extra_sinks=extra_sinks,
    )
    service.bootstrap(EnvConfigLoader().load_config().get("profiles", []))
    return service


def create_app(settings: Optional[Settings] = None, service: Optional[BenchmarkService] = None) -> FastAPI:
    settings = settings or get_settings()
    manager = ConnectionManager()
    ws_sink = WebSocketProgressSink(manager)
    background = BackgroundProgressSink(ws_sink, maxsize=settings.progress_queue_size)

    if service is None:
        setup_logging({"logging": {"level": settings.log_level, "format": settings.log_format,
                                   "directory": settings.log_dir}})
        service = build_service(settings, extra_sinks=[background])
    else:
        service.sink.sinks.append(background)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ws_sink.loop = asyncio.get_running_loop()
        yield
        background.close()

    app = FastAPI(
        title="examlab Web API",
        description="Benchmark engine for LLM exam question answering",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.manager = manager

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(profiles.router, prefix="/api/profiles", tags=["profiles"])
    app.include_router(runs.router, prefix="/api/runs", tags=["runs"])
    app.include_router(models.router, prefix="/api/models", tags=["models"])

    @app.websocket("/ws/runs")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint для событий прогонов в реальном времени"""
        connection_id = str(uuid.uuid4())
        await manager.connect(connection_id, websocket)
        try:
            state = service.active_run()
            if state is not None:
                await websocket.send_text(json.dumps({"type": "active_run", "state": state.model_dump(mode="json")}))
            while True:
                # Входящие сообщения клиента не обрабатываются
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(connection_id)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


def main():
    settings = get_settings()
    uvicorn.run("examlab.web.main:create_app", factory=True, host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    main()
