# planflow/config.py
import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-level configuration for the job subsystem."""

    model_config = SettingsConfigDict(
        env_prefix="PLANFLOW_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Shared store
    redis_url: Optional[str] = Field(default=None, description="Redis URL; unset runs in-process only")
    require_redis: bool = Field(default=False, description="Fail start-up when Redis is unreachable")
    queue_name: str = Field(default="training-plan-generation", description="Distributed queue name")

    # In-process runner
    max_concurrent_jobs: int = Field(default=3, gt=0, description="Concurrent in-process jobs")
    job_retention_ms: int = Field(default=3_600_000, gt=0, description="Terminal job TTL in-process")

    # Distributed worker
    worker_concurrency: int = Field(default=2, gt=0, description="Concurrent jobs per worker process")
    worker_poll_interval_ms: int = Field(default=500, gt=0, description="Idle dequeue poll interval")
    job_attempts: int = Field(default=3, gt=0, description="Attempts per job")
    backoff_delay_ms: int = Field(default=5000, ge=0, description="Exponential backoff base")
    job_timeout_ms: int = Field(default=300_000, gt=0, description="Per-job timeout")
    stalled_interval_ms: int = Field(default=30_000, gt=0, description="Stall detection sweep interval")
    max_stalled_count: int = Field(default=1, ge=0, description="Stalls tolerated before failing")
    remove_on_complete: int = Field(default=10, ge=0, description="Completed records retained")
    remove_on_fail: int = Field(default=25, ge=0, description="Failed records retained")
    clean_grace_ms: int = Field(default=86_400_000, ge=0, description="Grace period for drain_old_jobs")

    # Admission control
    max_queue_size: int = Field(default=1000, gt=0, description="Max waiting + active jobs")
    near_capacity_ratio: float = Field(default=0.8, gt=0, le=1, description="Deprioritize above this ratio")
    overload_retry_after_s: int = Field(default=300, gt=0, description="Retry hint for rejected submissions")
    lowered_priority: int = Field(default=-1, description="Priority given to near-capacity submissions")

    # Circuit breaker
    breaker_failure_threshold: int = Field(default=3, gt=0, description="Failures before opening")
    breaker_reset_timeout_ms: int = Field(default=30_000, gt=0, description="Open duration before a probe")
    breaker_monitoring_interval_ms: int = Field(default=30_000, gt=0, description="Status log interval")

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("redis_url")
    @classmethod
    def _check_redis_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return value


class _GlobalConfig:
    def __init__(self):
        self.settings: Optional[Settings] = None

_GLOBAL_CONFIG = _GlobalConfig()

def configure(settings: Optional[Settings]) -> None:
    _GLOBAL_CONFIG.settings = settings

def get_settings() -> Settings:
    if _GLOBAL_CONFIG.settings is None:
        _GLOBAL_CONFIG.settings = Settings()
    return _GLOBAL_CONFIG.settings

def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
