"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Workflow engine settings driven entirely by environment variables."""

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")

    # Job Queues
    queue_backend: Literal["memory", "redis"] = Field(default="memory", env="QUEUE_BACKEND")
    queue_prefix: str = Field(default="workflow", env="QUEUE_PREFIX")
    queue_poll_interval: float = Field(default=1.0, env="QUEUE_POLL_INTERVAL", ge=0.05, le=30.0)
    delayed_claim_lease_seconds: int = Field(default=300, env="DELAYED_CLAIM_LEASE_SECONDS", ge=10)

    # Worker Pool
    worker_concurrency: int = Field(default=10, env="WORKER_CONCURRENCY", ge=1, le=100)
    delayed_worker_concurrency: int = Field(default=5, env="DELAYED_WORKER_CONCURRENCY", ge=1, le=100)
    max_node_attempts: int = Field(default=3, env="MAX_NODE_ATTEMPTS", ge=1, le=20)
    retry_backoff_seconds: float = Field(default=2.0, env="RETRY_BACKOFF_SECONDS", ge=0, le=3600)

    # Engagement Events
    engagement_backend: Literal["memory", "redis"] = Field(default="memory", env="ENGAGEMENT_BACKEND")
    engagement_stream: str = Field(default="workflow:events:engaged", env="ENGAGEMENT_STREAM")

    # Generation Service
    generation_service_url: str = Field(default="http://localhost:8010", env="GENERATION_SERVICE_URL")
    generation_timeout: int = Field(default=30, env="GENERATION_TIMEOUT", ge=5, le=300)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def validate_redis_backends(self):
        """Redis-backed queues and event sources need a reachable Redis URL."""
        uses_redis = self.queue_backend == "redis" or self.engagement_backend == "redis"
        if uses_redis and not (self.redis_enabled and self.redis_url):
            raise ValueError("REDIS_ENABLED and REDIS_URL are required for redis backends")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
