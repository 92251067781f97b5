import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .schemas import TeamConfig

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "INTAKE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class RetryConfig(BaseModel):
    attempts: int = 3
    base_delay_ms: int = 300
    multiplier: float = 2.0
    max_delay_ms: int = 5000
    jitter_ms: int = 100

    model_config = {"protected_namespaces": ()}


class AnalysisConfig(BaseModel):
    max_text_chars: int = 20000
    max_structured_chars: int = 6000
    concurrency: int = 2
    queue_max_size: int = 100
    legacy_max_retries: int = 5
    retry_delay_s: float = 2.0
    preview_ttl_s: int = 3 * 24 * 60 * 60
    summary_max_tokens: int = 800
    vision_max_tokens: int = 512

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    lm_studio_base_url: str = "http://127.0.0.1:1234/v1"
    max_output_tokens: int = 4096

    agent_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-8b")
    )
    summarizer_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-4b")
    )
    vision_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-vl-8b")
    )
    agent_temperature: float = 0.3
    agent_max_tokens: int = 1024

    database_path: str = "intake_data.db"
    upload_dir: str = "uploads"
    upload_max_mb: int = 15
    attachment_max_mb: int = 10
    max_messages: int = 200
    host: str = "0.0.0.0"
    port: int = 8000

    status_ttl_s: int = 24 * 60 * 60
    retry: RetryConfig = Field(default_factory=RetryConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)

    default_team_id: str = "public"
    public_team_slugs: List[str] = Field(default_factory=lambda: ["public"])
    teams: Dict[str, TeamConfig] = Field(default_factory=dict)

    lawyer_search_base_url: str = "https://search.lawyers.example/v1"
    lawyer_search_api_key: Optional[str] = None

    def team_config(self, team_id: Optional[str]) -> TeamConfig:
        key = team_id or self.default_team_id
        team = self.teams.get(key)
        if team is not None:
            return team
        return TeamConfig(id=key, slug=key, name="our legal team", available_services=["General Consultation"])

    def is_public_team(self, team: TeamConfig) -> bool:
        if not team.id:
            return True
        return (team.slug or team.id) in self.public_team_slugs

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("lawyer_search_api_key"):
            data["lawyer_search_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "lm_studio_base_url": os.getenv("LM_STUDIO_BASE_URL"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "model_agent": os.getenv("MODEL_AGENT"),
        "model_summarizer": os.getenv("MODEL_SUMMARIZER"),
        "model_vision": os.getenv("MODEL_VISION"),
        "database_path": os.getenv("DATABASE_PATH"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "attachment_max_mb": os.getenv("ATTACHMENT_MAX_MB"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "status_ttl_s": os.getenv("STATUS_TTL_S"),
        "default_team_id": os.getenv("DEFAULT_TEAM_ID"),
        "lawyer_search_base_url": os.getenv("LAWYER_SEARCH_BASE_URL"),
        "lawyer_search_api_key": os.getenv("LAWYER_SEARCH_API_KEY"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_output_tokens", "upload_max_mb", "attachment_max_mb", "port", "status_ttl_s"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_model_overrides(merged: Dict[str, Any], env_data: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Fold MODEL_* and LM_STUDIO_BASE_URL env vars into the endpoint blocks."""
    base_url = merged.get("lm_studio_base_url")
    for key, env_key in (
        ("agent_endpoint", "model_agent"),
        ("summarizer_endpoint", "model_summarizer"),
        ("vision_endpoint", "model_vision"),
    ):
        model_id = merged.pop(env_key, None)
        endpoint = merged.get(key)
        if not isinstance(endpoint, dict):
            endpoint = {}
        if model_id and (allow_env_overrides or not endpoint.get("model_id")):
            endpoint["model_id"] = model_id
        if base_url and (
            not endpoint.get("base_url") or (allow_env_overrides and env_data.get("lm_studio_base_url"))
        ):
            endpoint["base_url"] = base_url
        if endpoint:
            endpoint.setdefault("base_url", AppSettings().lm_studio_base_url)
            endpoint.setdefault("model_id", getattr(AppSettings(), key).model_id)
            merged[key] = endpoint


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("lawyer_search_api_key") and env_data.get("lawyer_search_api_key"):
        merged["lawyer_search_api_key"] = env_data["lawyer_search_api_key"]
    _apply_model_overrides(merged, env_data, allow_env_overrides)
    return AppSettings(**merged)
