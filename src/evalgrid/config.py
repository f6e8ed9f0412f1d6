from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EVALGRID_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EVALGRID_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    openrouter_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EVALGRID_OPENROUTER_API_KEY", "OPENROUTER_API_KEY"),
    )
    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EVALGRID_GEMINI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"),
    )
    max_concurrency: int = Field(default=5, gt=0)
    timeout_seconds: float = 120.0
    retry_max_attempts: int = Field(default=4, gt=0)
    retry_base_delay: float = 0.5
    rubric_provider: str = "openai:gpt-4o-mini"
    pipeline_max_steps: int | None = None
    # Per provider kind, e.g. EVALGRID_PROVIDER_CONCURRENCY='{"openai": 2}'
    provider_concurrency: dict[str, int] = Field(default_factory=dict)
    runs_dir: str = "runs"
    log_level: str = "warning"

    model_config = SettingsConfigDict(
        env_prefix="EVALGRID_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
