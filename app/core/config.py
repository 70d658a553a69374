from functools import lru_cache
from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"
    api_port: int = 8000

    postgres_host: str = "127.0.0.1"
    postgres_port: int = 5432
    postgres_db: str = "retail_handoff"
    postgres_user: str = "handoff_user"
    postgres_password: str = "handoff_password"
    database_url_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL_OVERRIDE", "DATABASE_URL"),
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_auto_create: bool = False

    cors_allowed_origins_raw: str = "http://127.0.0.1:5173,http://localhost:5173"

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    state_write_max_attempts: int = 5
    state_write_backoff_min_seconds: float = 0.05
    state_write_backoff_max_seconds: float = 1.0

    flow_tables_dir: str | None = None

    queue_lock_lease_seconds: int = 900
    queue_lock_lease_overrides_raw: str = ""
    operator_max_active_locks: int = 5
    queue_sweep_interval_seconds: int = 30

    escalation_max_cycles: int = 8
    escalation_completeness_threshold: float = 0.8
    escalation_min_confidence: float = 0.5
    escalation_predicate: Literal["completeness", "confidence"] = "completeness"
    escalation_inactivity_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cors_allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allowed_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def queue_lock_lease_overrides(self) -> dict[UUID, int]:
        overrides: dict[UUID, int] = {}
        for item in self.queue_lock_lease_overrides_raw.split(","):
            if not item.strip():
                continue
            workspace_raw, _, seconds_raw = item.partition("=")
            overrides[UUID(workspace_raw.strip())] = int(seconds_raw.strip())
        return overrides

    def lock_lease_seconds_for(self, workspace_id: UUID) -> int:
        return self.queue_lock_lease_overrides.get(
            workspace_id, self.queue_lock_lease_seconds
        )

    def validate_runtime_settings(self) -> None:
        if self.queue_lock_lease_seconds <= 0:
            raise ValueError("QUEUE_LOCK_LEASE_SECONDS must be positive.")
        if any(seconds <= 0 for seconds in self.queue_lock_lease_overrides.values()):
            raise ValueError(
                "QUEUE_LOCK_LEASE_OVERRIDES_RAW must only contain positive leases."
            )
        if self.state_write_max_attempts < 1:
            raise ValueError("STATE_WRITE_MAX_ATTEMPTS must be at least 1.")
        if self.operator_max_active_locks < 1:
            raise ValueError("OPERATOR_MAX_ACTIVE_LOCKS must be at least 1.")
        if not 0.0 <= self.escalation_completeness_threshold <= 1.0:
            raise ValueError(
                "ESCALATION_COMPLETENESS_THRESHOLD must be between 0 and 1."
            )
        if not 0.0 <= self.escalation_min_confidence <= 1.0:
            raise ValueError("ESCALATION_MIN_CONFIDENCE must be between 0 and 1.")
        if self.escalation_max_cycles < 1:
            raise ValueError("ESCALATION_MAX_CYCLES must be at least 1.")
        if self.app_env.lower() == "production" and "*" in self.cors_allowed_origins:
            raise ValueError("Wildcard CORS origin is not allowed in production.")


@lru_cache
def get_settings() -> Settings:
    return Settings()
