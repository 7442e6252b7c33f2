# backend/app/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import BRAND_NAME


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


EnforcementLevelName = Literal["strict", "warn", "off"]


class Settings(BaseSettings):
    """Runtime configuration for the flow integrity engine and its adapters."""

    app_name: str = Field(default=f"{BRAND_NAME} API")
    environment: str = Field(default="development", description="development|staging|production")

    database_url: str = Field(
        default="sqlite:///./smiling_steps.db",
        description="SQLAlchemy URL for the session store",
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for locks and Celery")
    monitoring_api_key: Optional[str] = Field(
        default=None,
        description="X-API-Key required by the flow integrity admin endpoints; unset disables them",
    )

    # Integrity enforcement (kill switch)
    integrity_enforcement: EnforcementLevelName = Field(
        default="strict",
        description="strict blocks violations, warn logs them, off skips checks",
    )

    # Edge cases
    late_join_threshold_minutes: int = Field(default=30, ge=0)
    overtime_grace_minutes: int = Field(default=5, ge=0)
    overtime_default_rate_per_minute: float = Field(
        default=50.0,
        ge=0,
        description="Per-minute overtime rate used when the provider has no session rate",
    )
    payment_resume_window_minutes: int = Field(default=30, ge=0)

    # Booking locks
    booking_lock_timeout_seconds: float = Field(default=5.0, gt=0)
    booking_lock_backend: Literal["memory", "redis"] = Field(default="memory")
    booking_lock_namespace: str = Field(default="smilingsteps")

    # Retry with backoff
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)
    retry_jitter_seconds: float = Field(default=1.0, ge=0)

    # Queues
    operation_queue_drain_interval_seconds: int = Field(default=30, gt=0)
    notification_queue_drain_interval_seconds: int = Field(default=15 * 60, gt=0)
    notification_max_age_hours: int = Field(default=24, gt=0)
    queue_persistence: Literal["memory", "database"] = Field(default="memory")

    # Alerting
    alert_consecutive_failure_threshold: int = Field(default=3, ge=1)
    alert_cooldown_seconds: int = Field(default=300, ge=0)

    run_in_process_scheduler: bool = Field(
        default=False,
        description="Tick the periodic jobs inside the API process instead of Celery beat",
    )

    # Monitoring
    health_check_interval_seconds: int = Field(default=60, gt=0)
    health_queue_depth_limit: int = Field(default=100, ge=1)
    health_recent_violation_limit: int = Field(default=10, ge=1)
    max_violations_before_alert: int = Field(default=3, ge=1)
    log_retention_hours: int = Field(default=72, gt=0)

    # Use ConfigDict instead of Config class (Pydantic V2 style)
    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("integrity_enforcement", mode="before")
    @classmethod
    def _normalize_enforcement(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or "strict"
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production", "live"}


settings = Settings()
logger.info(
    "[CONFIG] Flow integrity configuration: environment=%s enforcement=%s lock_backend=%s",
    settings.environment,
    settings.integrity_enforcement,
    settings.booking_lock_backend,
)
