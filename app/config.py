import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PLANNER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MAX_SEARCH_LIMIT = 50


class AppSettings(BaseModel):
    database_path: str = "planner.db"
    host: str = "0.0.0.0"
    port: int = 4040
    log_level: str = "INFO"

    # Action autocomplete
    search_limit: int = Field(default=10, ge=1, le=MAX_SEARCH_LIMIT)

    # Executions
    reopen_window_hours: int = Field(default=24, ge=0)
    timestamp_display_format: str = "%Y-%m-%d %H:%M UTC"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        # Clients only need the file name, not where the database lives on disk.
        data["database_path"] = Path(self.database_path).name
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "search_limit": os.getenv("SEARCH_LIMIT"),
        "reopen_window_hours": os.getenv("REOPEN_WINDOW_HOURS"),
        "timestamp_display_format": os.getenv("TIMESTAMP_DISPLAY_FORMAT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "search_limit", "reopen_window_hours"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "log_level" in cleaned:
        cleaned["log_level"] = str(cleaned["log_level"]).upper()
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    known = set(AppSettings.model_fields)
    return AppSettings(**{k: v for k, v in merged.items() if k in known})


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
