import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PARLEY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_PARAMETERS: Dict[str, Any] = {
    "num_ctx": 2048,
    "num_predict": -1,
    "temperature": 0.8,
    "top_k": 40,
    "top_p": 0.9,
    "min_p": 0.0,
    "typical_p": 1.0,
    "repeat_last_n": 64,
    "repeat_penalty": 1.1,
    "presence_penalty": 0.0,
    "frequency_penalty": 0.0,
    "mirostat": 0,
    "mirostat_tau": 5.0,
    "mirostat_eta": 0.1,
    "seed": 0,
}

DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    "default": {},
    "creative": {"temperature": 1.1, "top_p": 0.95, "top_k": 80, "repeat_penalty": 1.0},
    "precise": {"temperature": 0.2, "top_p": 0.7, "top_k": 20, "repeat_penalty": 1.2},
}


class CloudProviderConfig(BaseModel):
    base_url: str
    api_key: Optional[str] = None
    models: List[str] = Field(default_factory=list)

    model_config = {"protected_namespaces": ()}


class CommandConfig(BaseModel):
    id: str
    key: Optional[str] = None
    description: str = ""
    model: Optional[str] = None
    prompt_template: Optional[str] = None
    system_prompt: Optional[str] = None
    parameter_overrides: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    ollama_base_url: str = "http://127.0.0.1:11434"
    default_model: Optional[str] = None
    system_prompt: Optional[str] = None

    max_history_pairs: int = Field(10, ge=1)
    registry_ttl_s: float = Field(5.0, ge=0)
    request_timeout_s: float = 300.0
    connect_timeout_s: float = 5.0
    token_rate_interval_s: float = Field(0.5, ge=0)
    max_malformed_fragments: int = Field(5, ge=0)

    parameter_defaults: Dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_PARAMETERS))
    parameter_profiles: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: {name: dict(values) for name, values in DEFAULT_PROFILES.items()}
    )
    cloud_providers: Dict[str, CloudProviderConfig] = Field(default_factory=dict)
    commands: List[CommandConfig] = Field(default_factory=list)

    session_db_path: str = "parley_sessions.db"
    host: str = "127.0.0.1"
    port: int = 8400

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for provider in (data.get("cloud_providers") or {}).values():
            if provider.get("api_key"):
                provider["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_base_url": os.getenv("PARLEY_OLLAMA_BASE_URL") or os.getenv("OLLAMA_HOST"),
        "default_model": os.getenv("PARLEY_DEFAULT_MODEL"),
        "system_prompt": os.getenv("PARLEY_SYSTEM_PROMPT"),
        "max_history_pairs": os.getenv("PARLEY_MAX_HISTORY_PAIRS"),
        "registry_ttl_s": os.getenv("PARLEY_REGISTRY_TTL_S"),
        "request_timeout_s": os.getenv("PARLEY_REQUEST_TIMEOUT_S"),
        "token_rate_interval_s": os.getenv("PARLEY_TOKEN_RATE_INTERVAL_S"),
        "max_malformed_fragments": os.getenv("PARLEY_MAX_MALFORMED_FRAGMENTS"),
        "session_db_path": os.getenv("PARLEY_SESSION_DB_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_history_pairs", "max_malformed_fragments", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("registry_ttl_s", "request_timeout_s", "token_rate_interval_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    base_url = cleaned.get("ollama_base_url")
    if base_url and "://" not in base_url:
        # OLLAMA_HOST is often given as host:port
        cleaned["ollama_base_url"] = f"http://{base_url}"
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
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    profiles = merged.get("parameter_profiles")
    if isinstance(profiles, dict) and "default" not in profiles:
        merged["parameter_profiles"] = {"default": {}, **profiles}
    defaults = merged.get("parameter_defaults")
    if isinstance(defaults, dict):
        merged["parameter_defaults"] = {**DEFAULT_PARAMETERS, **defaults}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
