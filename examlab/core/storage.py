import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Union

from examlab.core.interfaces import RunStore
from examlab.models.profile import ModelProfile
from examlab.models.run import BenchmarkRun

log = logging.getLogger(__name__)


class JsonRunStore(RunStore):
    """
    Хранилище профилей и прогонов в JSON-файлах:
    <data_dir>/profiles.json и <data_dir>/runs.json, каждый вида {id: запись}.
    Каждая операция перезаписывает файл целиком.
    """

    def __init__(self, data_dir: Union[str, Path] = "data"):
        self.data_dir = Path(data_dir)
        self.profiles_file = self.data_dir / "profiles.json"
        self.runs_file = self.data_dir / "runs.json"
        self._lock = threading.Lock()
        self._ensure_data_directory()

    def _ensure_data_directory(self):
        """Создание директории для данных если не существует"""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _read(self, path: Path) -> Dict[str, Dict]:
        """
        Читает файл вида {id: запись}. Поврежденный файл переносится в
        <имя>.corrupt, чтобы следующая запись не затерла прежнюю историю.
        """
        if not path.exists():
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            log.error("❌ Файл %s поврежден: %s", path, e)
            self._quarantine(path)
            return {}
        if not isinstance(data, dict):
            log.error("❌ Файл %s содержит %s вместо объекта", path, type(data).__name__)
            self._quarantine(path)
            return {}
        return data

    def _quarantine(self, path: Path) -> Path:
        target = path.with_name(path.name + ".corrupt")
        if target.exists():
            target = path.with_name(f"{path.name}.corrupt-{datetime.now():%Y%m%d-%H%M%S-%f}")
        path.replace(target)
        log.warning("⚠️ Поврежденный файл сохранен как %s", target)
        return target

    def _write(self, path: Path, data: Dict[str, Dict]) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(path)

    def _upsert(self, path: Path, record_id: str, record: Dict) -> None:
        with self._lock:
            data = self._read(path)
            data[record_id] = record
            self._write(path, data)

    def _remove(self, path: Path, record_id: str) -> None:
        with self._lock:
            data = self._read(path)
            if data.pop(record_id, None) is not None:
                self._write(path, data)

    def save_profile(self, profile: ModelProfile) -> None:
        self._upsert(self.profiles_file, profile.id, profile.model_dump(mode="json"))

    def delete_profile(self, profile_id: str) -> None:
        self._remove(self.profiles_file, profile_id)

    def load_profiles(self) -> List[ModelProfile]:
        with self._lock:
            data = self._read(self.profiles_file)
        return [ModelProfile.model_validate(item) for item in data.values()]

    def save_run(self, run: BenchmarkRun) -> None:
        self._upsert(self.runs_file, run.id, run.model_dump(mode="json"))

    def delete_run(self, run_id: str) -> None:
        self._remove(self.runs_file, run_id)

    def load_runs(self) -> List[BenchmarkRun]:
        with self._lock:
            data = self._read(self.runs_file)
        return [BenchmarkRun.model_validate(item) for item in data.values()]


class InMemoryRunStore(RunStore):
    """Хранилище в памяти процесса: для тестов и одноразовых запусков CLI."""

    def __init__(self):
        self.profiles: Dict[str, ModelProfile] = {}
        self.runs: Dict[str, BenchmarkRun] = {}
        self.save_count = 0

    def save_profile(self, profile):
        self.profiles[profile.id] = profile.model_copy(deep=True)

    def delete_profile(self, profile_id):
        self.profiles.pop(profile_id, None)

    def load_profiles(self):
        return [profile.model_copy(deep=True) for profile in self.profiles.values()]

    def save_run(self, run):
        self.save_count += 1
        self.runs[run.id] = run.model_copy(deep=True)

    def delete_run(self, run_id):
        self.runs.pop(run_id, None)

    def load_runs(self):
        return [run.model_copy(deep=True) for run in self.runs.values()]
