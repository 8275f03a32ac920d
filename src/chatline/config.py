"""Configuration management."""

from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_MESSAGE = (
    "You are a helpful AI assistant. You provide clear, accurate, and helpful "
    "responses while being conversational and engaging."
)


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "chatline"
    db_user: str = "chatline"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # "memory" keeps everything in-process (local development, tests)
    storage_backend: Literal["postgres", "memory"] = "postgres"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # Rate limiting - shared counters live in Redis when configured
    redis_url: str = ""
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60

    # Completion provider (OpenAI-compatible chat completions API)
    completion_api_base: str = "https://api.groq.com/openai/v1"
    completion_api_key: str = ""  # Empty selects the mock provider
    completion_timeout: float = 30.0
    default_model: str = "llama-3.1-8b-instant"
    default_temperature: float = 0.7
    default_max_tokens: int = 2048
    system_message: str = DEFAULT_SYSTEM_MESSAGE

    # Post-stream persistence
    persistence_max_attempts: int = 5
    persistence_backoff_seconds: float = 0.5

    # Auth - the fronting proxy sets the principal header
    auth_header: str = "X-User-ID"
    dev_principal: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CHATLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
