import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AUTORESEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_KEYS = ("groq_api_key", "gemini_api_key", "serper_api_key", "tavily_api_key", "brave_search_api_key")


class AppSettings(BaseModel):
    # Fast backend (Groq, OpenAI-compatible)
    groq_api_key: Optional[str] = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.3-70b-versatile"
    groq_min_interval_s: float = 1.5
    groq_backoff_base_s: float = 2.0

    # Quality backend (Gemini)
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-1.5-flash"
    gemini_min_interval_s: float = 2.0
    gemini_backoff_base_s: float = 3.0

    backend_max_retries: int = 3
    request_timeout_s: float = 60.0

    # Search providers
    serper_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None
    brave_search_api_key: Optional[str] = None
    search_max_results: int = 5
    search_timeout_s: float = 10.0
    scrape_timeout_s: float = 15.0
    scrape_max_chars: int = 20000
    scrape_context_chars: int = 12000

    # Orchestration
    max_attempts: int = 2
    step_delay_s: float = 1.0
    step_order: Literal["plan", "dependencies"] = "plan"

    # App
    keepalive_interval_s: float = 15.0
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @property
    def quality_enabled(self) -> bool:
        return bool(self.gemini_api_key)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "groq_api_key": os.getenv("GROQ_API_KEY"),
        "groq_model": os.getenv("GROQ_MODEL"),
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "serper_api_key": os.getenv("SERPER_API_KEY"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "brave_search_api_key": os.getenv("BRAVE_SEARCH_API_KEY"),
        "max_attempts": os.getenv("MAX_ATTEMPTS"),
        "step_delay_s": os.getenv("STEP_DELAY_S"),
        "step_order": os.getenv("STEP_ORDER"),
        "backend_max_retries": os.getenv("BACKEND_MAX_RETRIES"),
        "search_max_results": os.getenv("SEARCH_MAX_RESULTS"),
        "scrape_max_chars": os.getenv("SCRAPE_MAX_CHARS"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "keepalive_interval_s": os.getenv("KEEPALIVE_INTERVAL_S"),
        "cors_origins": os.getenv("CORS_ORIGINS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_attempts", "backend_max_retries", "search_max_results", "scrape_max_chars", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("step_delay_s", "request_timeout_s", "keepalive_interval_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "cors_origins" in cleaned:
        cleaned["cors_origins"] = [o.strip() for o in str(cleaned["cors_origins"]).split(",") if o.strip()]
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
    # Credentials are usually kept out of config.json; backfill them from env.
    for key in SECRET_KEYS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)

