"""Engine configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas import ModelCandidate, Tier

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_FILE, override=False)

OPENROUTER = "openrouter"


class EndpointSettings(BaseModel):
    base_url: str
    api_key: str | None = None


def _default_tiers() -> dict[Tier, list[ModelCandidate]]:
    def c(model_id: str, provider: str) -> ModelCandidate:
        return ModelCandidate(endpoint=OPENROUTER, model_id=model_id, provider=provider)

    return {
        "HIGH": [
            c("google/gemini-2.5-pro", "google-ai-studio"),
            c("qwen/qwen3-235b-a22b-2507", "Cerebras"),
        ],
        "MEDIUM": [
            c("openai/gpt-oss-120b", "Cerebras"),
            c("google/gemini-2.5-flash", "google-ai-studio"),
            c("meta-llama/llama-3.3-70b-instruct", "Cerebras"),
        ],
        "LOW": [
            c("google/gemini-2.5-flash-lite", "google-ai-studio"),
            c("qwen/qwen3-32b", "Cerebras"),
        ],
    }


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ACTION_ENGINE_", env_file=str(ENV_FILE), extra="ignore")

    host: str = "0.0.0.0"
    port: int = 7002
    log_level: str = "INFO"

    openrouter_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "ACTION_ENGINE_OPENROUTER_API_KEY"),
    )
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    # Additional OpenAI-compatible endpoints, keyed by the name candidates refer to.
    endpoints: dict[str, EndpointSettings] = Field(default_factory=dict)
    tiers: dict[Tier, list[ModelCandidate]] = Field(default_factory=_default_tiers)

    step_timeout_s: float = 20.0
    model_timeout_s: float = 40.0

    skip_window_s: float = 60.0
    fallback_error_window_s: float = 3600.0
    stats_max_entries: int = 10_000
    stats_retention_s: float = 30 * 24 * 3600.0

    conversation_max_messages: int = 10
    conversation_keep_head: int = 2
    conversation_keep_tail: int = 6

    # 0 means ambient values are fetched fresh on every render.
    ambient_cache_ttl_s: float = 0.0
    default_timezone: str = "UTC"

    mock_llm: bool = False
    state_dir: str = "state"
    trace_enabled: bool = True
    max_traces: int = 100

    def resolved_endpoints(self) -> dict[str, EndpointSettings]:
        endpoints = {
            OPENROUTER: EndpointSettings(base_url=self.openrouter_base_url, api_key=self.openrouter_api_key),
        }
        endpoints.update(self.endpoints)
        return endpoints


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings()
