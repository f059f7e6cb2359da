from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "Europe/London"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Supabase
    # Default placeholder values keep local/test runs from failing when Supabase
    # credentials are not required. Real deployments should override via env.
    SUPABASE_URL: str = "http://localhost"
    SUPABASE_SERVICE_ROLE_KEY: str = "test-service-role-key"
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Redis (arq queue + settings cache)
    REDIS_URL: str = "redis://localhost:6379/0"
    AUTOMATION_SETTINGS_CACHE_ENABLED: bool = True
    AUTOMATION_SETTINGS_CACHE_TTL_SECONDS: int = 300

    # Microservices URLs
    MEMBERS_SERVICE_URL: str = "http://members-service:8001"
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"
    ACTIVITY_SERVICE_URL: str = "http://activity-service:8010"

    # AI gateway (OpenAI-compatible, routed through LiteLLM)
    AI_GATEWAY_URL: str = ""
    AI_GATEWAY_API_KEY: str = ""
    AI_DEFAULT_MODEL: str = "openai/gpt-4o-mini"
    AI_TIMEOUT_SECONDS: float = 20.0

    # Drop-off rescue batch job
    DROPOFF_MAX_CONCURRENCY: int = 8
    DROPOFF_CALL_TIMEOUT_SECONDS: float = 10.0
    DROPOFF_RUN_BUDGET_SECONDS: float = 15 * 60
    DROPOFF_CLAIM_TTL_SECONDS: int = 15 * 60
    DROPOFF_AI_ASSISTED_STAGES: list[int] = [3]
    DROPOFF_CRON_HOUR_UTC: int = 7

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
