"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "prompt-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""
    # Label stamped on every persisted result (metadata.environment).
    environment: str = "development"
    record_retention_s: float = Field(default=3600.0, ge=0.0)
    max_concurrent_executions: int = Field(default=4, ge=1)
    adapter_timeout_s: float | None = Field(default=None, gt=0.0)
    max_cases_per_run: int = Field(default=20, ge=1)
    max_comparison_cases: int = Field(default=10, ge=1)
    comparison_run_timeout_s: float | None = Field(default=300.0, gt=0.0)
    exclusive_runs: bool = False
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int | None = Field(default=None, ge=1)
    llm_prompt_cost_per_1k: float = Field(default=0.0, ge=0.0)
    llm_completion_cost_per_1k: float = Field(default=0.0, ge=0.0)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="PROMPT_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
