import json
import logging
import os
import re
from json import JSONDecodeError
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)


class EnvConfigLoader:
    """
    Читает конфигурацию из переменных окружения с префиксом (по умолчанию EXAMLAB_).

    Профили моделей задаются как EXAMLAB_PROFILES_<n>_<FIELD>, параметры генерации
    можно вынести в секцию EXAMLAB_PROFILES_<n>_GENERATION_<KEY>. Остальные ключи
    попадают в корень конфигурации в нижнем регистре.
    """
    GENERATION_FIELDS = ('temperature', 'top_p', 'frequency_penalty', 'presence_penalty',
                         'max_output_tokens', 'request_timeout_ms')

    def __init__(self, prefix: str = "EXAMLAB", dotenv_path: Optional[str] = None):
        self.prefix = prefix
        self.env_vars = self._load_and_filter_env(prefix, dotenv_path)

    @staticmethod
    def _load_and_filter_env(prefix: str, dotenv_path: Optional[str]) -> Dict[str, str]:
        load_dotenv(dotenv_path=dotenv_path, encoding='utf-8-sig')
        prefix_str = f"{prefix}_"
        return {key[len(prefix_str):]: value for key, value in os.environ.items() if key.startswith(prefix_str)}

    @staticmethod
    def _convert_type(value: str) -> Any:
        if not isinstance(value, str):
            return value
        val_lower = value.lower()
        if val_lower == 'true': return True
        if val_lower == 'false': return False
        if re.match(r"^-?\d+$", value): return int(value)
        if re.match(r"^-?\d+\.\d+$", value): return float(value)
        if (value.startswith('[') and value.endswith(']')) or (value.startswith('{') and value.endswith('}')):
            try:
                return json.loads(value)
            except JSONDecodeError:
                pass
        return value

    def load_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        profiles_data: Dict[int, Dict[str, Any]] = {}
        profile_key_pattern = re.compile(r"PROFILES?_(\d+)_(.*)", re.IGNORECASE)

        for key, value in self.env_vars.items():
            profile_match = profile_key_pattern.match(key)
            if profile_match:
                index = int(profile_match.group(1))
                path_str = profile_match.group(2).lower()
                profile = profiles_data.setdefault(index, {})

                if path_str.startswith('generation_'):
                    param_key = path_str[len('generation_'):]
                    profile.setdefault('generation', {})[param_key] = self._convert_type(value)
                else:
                    profile[path_str] = self._convert_type(value)
                continue

            lowered = key.lower()
            if lowered.startswith('logging_'):
                config.setdefault('logging', {})[lowered[len('logging_'):]] = self._convert_type(value)
            elif lowered == 'question_ids':
                converted = self._convert_type(value)
                if isinstance(converted, list):
                    config['question_ids'] = [str(item) for item in converted]
                else:
                    config['question_ids'] = [item.strip() for item in value.split(',') if item.strip()]
            else:
                config[lowered] = self._convert_type(value)

        if profiles_data:
            config["profiles"] = self._flatten_profiles(profiles_data)

        log.debug("Загружено %d ключей конфигурации с префиксом %s", len(self.env_vars), self.prefix)
        return config

    def _flatten_profiles(self, profiles_data: Dict[int, Dict[str, Any]]) -> List[Dict[str, Any]]:
        profiles = []
        for index, raw in sorted(profiles_data.items()):
            if not raw.get('model_id'):
                log.warning("⚠️ Профиль #%d пропущен: не задан MODEL_ID", index)
                continue
            profile = {key: value for key, value in raw.items() if key != 'generation'}
            for key, value in raw.get('generation', {}).items():
                if key in self.GENERATION_FIELDS:
                    profile[key] = value
                else:
                    log.warning("⚠️ Профиль #%d: неизвестный параметр генерации '%s'", index, key)
            profile.setdefault('name', str(profile['model_id']))
            profile.setdefault('id', f"env-{index}")
            if 'model_id' in profile:
                profile['model_id'] = str(profile['model_id'])
            profiles.append(profile)
        return profiles
