"""Application configuration managed via environment variables."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Timebox Planner Backend"
    debug: bool = False
    log_level: str = "INFO"
    openai_api_key: str | None = None
    generator_model: str = "gpt-4o-mini"
    generator_max_tokens: int = 4000
    generator_temperature: float = 0.2
    opik_enabled: bool = False
    opik_api_key: str | None = None
    opik_project: str = "timebox-planner"
    session_max_retries: int = 10
    parse_backoff_seconds: float = 2.0
    constraint_backoff_seconds: float = 1.0
    # Break repairer tuning.
    work_time_tolerance: int = 5
    short_break_work_reduction: int = 25


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()


settings = get_settings()
