from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlannerSettings(BaseModel):
    enabled: bool = Field(True, description="Toggle the planner service on or off.")
    max_concurrent_plans: int = Field(3, ge=1, description="Maximum plans driven at the same time.")
    default_max_agent_turns: int = Field(50, ge=1)
    default_max_tokens: int = Field(500_000, ge=1)
    default_max_time_ms: int = Field(3_600_000, ge=1)
    default_max_concurrency: int = Field(3, ge=1)
    default_max_retries: int = Field(2, ge=0)
    default_replan_threshold: int = Field(50, ge=0, le=100, description="Batch failure percentage that triggers a replan.")
    poll_interval_seconds: float = Field(
        1.0,
        ge=0.0,
        description="Wait applied when tasks are running but none are ready.",
    )
    batch_pause_seconds: float = Field(0.5, ge=0.0, description="Pause between worker batches.")
    startup_delay_seconds: float = Field(0.0, ge=0.0, description="Delay before a launched run starts driving.")


class StoreSettings(BaseModel):
    base_dir: Path = Field(
        default_factory=lambda: Path.home() / ".planforge" / "planner",
        description="Directory holding plans.json and the per-plan audit logs.",
    )


class AgentServiceSettings(BaseModel):
    backend: Literal["http", "ollama"] = Field("http")
    endpoint: str = Field("http://localhost:8700", description="Base URL of the agent execution service.")
    api_key: str | None = Field(default=None, description="Optional bearer token for the agent execution service.")
    timeout_seconds: float = Field(600.0, ge=1.0, description="Upper bound on a single agent turn.")
    max_retries: int = Field(2, ge=0, description="Retries for transport-level failures.")
    retry_backoff_seconds: float = Field(1.0, ge=0.0)
    ollama_host: str = Field("http://localhost:11434", description="Ollama base URL when backend is 'ollama'.")
    ollama_model: str = Field("llama3", min_length=1)
    temperature: float = Field(0.1, ge=0.0, le=1.0)


class NotificationSettings(BaseModel):
    enabled: bool = Field(True)
    webhook_url: str | None = Field(
        None,
        description="Optional webhook that receives {channel, to, account_id, text} payloads.",
    )
    timeout_seconds: float = Field(5.0, ge=0.1)


class AutomationSettings(BaseModel):
    enabled: bool = Field(True)
    webhook_urls: list[str] = Field(
        default_factory=list,
        description="Webhooks receiving plan.started / plan.completed / plan.failed events.",
    )
    timeout_seconds: float = Field(5.0, ge=0.1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    planner: PlannerSettings = Field(default_factory=PlannerSettings)  # type: ignore[arg-type]
    store: StoreSettings = Field(default_factory=StoreSettings)  # type: ignore[arg-type]
    agent_service: AgentServiceSettings = Field(default_factory=AgentServiceSettings)  # type: ignore[arg-type]
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)  # type: ignore[arg-type]
    automation: AutomationSettings = Field(default_factory=AutomationSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
