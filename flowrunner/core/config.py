"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Redis (pipeline store + work queue)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    redis_key_prefix: str = Field(default="flowrunner", env="REDIS_KEY_PREFIX")
    redis_state_ttl: int = Field(default=86400, env="REDIS_STATE_TTL", ge=60)

    # Execution Engine
    dlq_enabled: bool = Field(default=False, env="DLQ_ENABLED")
    max_concurrent_jobs: int = Field(default=5, env="MAX_CONCURRENT_JOBS", ge=1, le=256)
    default_max_retries: int = Field(default=3, env="DEFAULT_MAX_RETRIES", ge=0, le=50)
    max_pipeline_iterations: int = Field(default=100, env="MAX_PIPELINE_ITERATIONS", ge=1)
    job_priority_strategy: Literal["dependency_order", "fifo", "custom"] = Field(
        default="dependency_order", env="JOB_PRIORITY_STRATEGY"
    )
    retry_strategy: Literal["individual", "stop_on_failure"] = Field(
        default="individual", env="RETRY_STRATEGY"
    )

    # Lifecycle events
    event_sink: Literal["null", "logging", "memory"] = Field(default="logging", env="EVENT_SINK")

    # Pipeline lock (seconds to wait for it; also the Redis lock expiry)
    pipeline_lock_timeout: float = Field(default=60.0, env="PIPELINE_LOCK_TIMEOUT", gt=0)

    # Node execution
    node_timeout: float = Field(default=300.0, env="NODE_TIMEOUT", gt=0)

    # Workers
    worker_concurrency: int = Field(default=2, env="WORKER_CONCURRENCY", ge=1, le=64)
    worker_poll_interval: float = Field(default=1.0, env="WORKER_POLL_INTERVAL", gt=0, le=60)
    worker_max_requeues: int = Field(default=3, env="WORKER_MAX_REQUEUES", ge=0, le=100)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Normalise and check the log level name."""
        level = (v or "INFO").upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def use_redis(self) -> bool:
        """Redis is used only when enabled and a URL is configured."""
        return self.redis_enabled and bool(self.redis_url)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
