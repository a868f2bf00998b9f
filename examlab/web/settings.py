from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="EXAMLAB_", extra="ignore")

    # Server settings
    server_name: str = "examlab Web API"
    server_host: str = "localhost"
    server_port: int = 8000
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Data
    data_dir: Path = Path("data")
    questions_file: Path = PACKAGE_ROOT / "data" / "questions.json"
    topology_file: Path = PACKAGE_ROOT / "data" / "topology.json"

    # Runs
    require_diagnostics: bool = True
    progress_queue_size: int = 256

    # Logging
    log_level: str = "INFO"
    log_format: str = "DETAILED"
    log_dir: str = "logs"


def get_settings() -> Settings:
    return Settings()
