"""Configuration settings for the conductor pipeline."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (agent registry persistence)
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "conductor"
    db_user: str = "agent"
    db_password: str = "agent"
    db_url_override: str | None = None

    # Redis (event fan-out to dashboards)
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Language-model server
    llm_api_url: str = "http://localhost:4096"
    llm_agent: str = "general"
    llm_provider: str | None = None
    llm_model: str | None = None
    llm_directory: str | None = None

    # Timeouts (seconds)
    service_timeout_seconds: float = 120.0

    # Agent matching
    reuse_threshold: float = 0.5
    match_floor: float = 0.4
    min_success_rate: float = 0.6
    capability_weight: float = 0.6
    pattern_weight: float = 0.4

    # Retry bounds
    max_plan_attempts: int = 3
    max_task_retries: int = 2
    max_intake_turns: int = 5

    # Scheduling
    max_workers: int = 1

    # Knowledge base slices handed to the model
    plan_context_chars: int = 5000
    execute_context_chars: int = 10000

    registry_storage_key: str = "agent_registry"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.db_url_override:
            return self.db_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "CONDUCTOR_"
        env_file = ".env"


# Global settings instance
settings = Settings()
