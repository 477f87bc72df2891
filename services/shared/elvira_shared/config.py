"""Pydantic settings for application configuration."""

from functools import lru_cache
from typing import Literal
from urllib.parse import quote_plus

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Storage backend settings.

    ``storage`` selects the Storage Port adapter:
    1. local - process-local store, persisted to ``json_path`` when set
    2. postgres - relational store on PostgreSQL (asyncpg)
    3. sqlite - relational store on SQLite (aiosqlite)
    """

    model_config = SettingsConfigDict(env_prefix="DB_")

    storage: Literal["local", "postgres", "sqlite"] = Field(
        default="local",
        description="Storage backend",
    )
    url: str = Field(
        default="",
        description="SQLAlchemy database URL (overrides host/port/... fields)",
    )
    json_path: str = Field(
        default="",
        description="JSON file backing the local store; empty keeps it in memory",
    )
    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    user: str = Field(default="elvira_user", description="PostgreSQL user")
    password: str = Field(default="", description="PostgreSQL password")
    name: str = Field(default="elvira_agent", description="PostgreSQL database name")
    pool_size: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        ge=0,
        le=100,
        description="Max connections beyond pool size",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements",
    )

    @property
    def effective_url(self) -> str:
        """Get the effective SQLAlchemy URL for the relational backends.

        An explicit ``url`` wins. Otherwise the URL is assembled from the
        PostgreSQL fields, or points at an in-memory SQLite database.
        """
        if self.url:
            return self.url

        if self.storage == "sqlite":
            return "sqlite+aiosqlite:///:memory:"

        encoded_password = quote_plus(self.password)
        return (
            f"postgresql+asyncpg://{self.user}:{encoded_password}"
            f"@{self.host}:{self.port}/{self.name}"
        )


class CatalogSettings(BaseSettings):
    """Remote catalog (Elvira) API settings."""

    model_config = SettingsConfigDict(env_prefix="ELVIRA_")

    base_url: str = Field(
        default="",
        description="Catalog service base URL",
    )
    timeout: float = Field(
        default=30.0,
        gt=0,
        description="Request timeout in seconds",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for idempotent catalog reads",
    )


class OpenAISettings(BaseSettings):
    """OpenAI API settings."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = Field(
        default="",
        description="OpenAI API key",
    )
    model: str = Field(
        default="gpt-4.1",
        description="OpenAI model for conversations",
    )
    verbosity: Literal["low", "medium", "high"] = Field(
        default="medium",
        description="Text verbosity requested from the Responses API",
    )


class AgentSettings(BaseSettings):
    """Conversation agent settings."""

    model_config = SettingsConfigDict(env_prefix="AGENT_")

    name: str = Field(
        default="Elvira",
        description="Assistant name used in the system instruction",
    )
    max_tool_rounds: int = Field(
        default=16,
        ge=0,
        description="Max completion rounds per user turn (0 = unlimited)",
    )
    poll_interval: float = Field(
        default=0.05,
        gt=0,
        description="Seconds between event queue polls while streaming",
    )


class QuotaSettings(BaseSettings):
    """Daily usage limit settings."""

    model_config = SettingsConfigDict(env_prefix="DAILY_LIMIT_")

    messages: int = Field(
        default=100,
        ge=0,
        description="Messages per user per day",
    )
    tokens: int = Field(
        default=50000,
        ge=0,
        description="Tokens per user per day",
    )
    reset_hour: int = Field(
        default=0,
        ge=0,
        le=23,
        description="Local hour at which daily budgets roll over",
    )
    sweep_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds between expired limit sweeps",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    json_format: bool = Field(
        default=True,
        description="Use JSON format for logs",
    )


class APISettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(
        default="0.0.0.0",
        description="API server host",
    )
    port: int = Field(
        default=6045,
        ge=1,
        le=65535,
        description="API server port",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
    )

    service_name: str = Field(
        default="elvira-agent",
        description="Service name for logging",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )

    # Nested settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: APISettings = Field(default_factory=APISettings)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        The application settings.
    """
    return Settings()


def refresh_settings() -> Settings:
    """Clear settings cache and return fresh settings.

    Returns:
        Fresh application settings.
    """
    get_settings.cache_clear()
    return get_settings()
