from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FIELDSYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "FieldSync"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))

    app_base_url: str = "http://localhost:3000"
    api_prefix: str = "/api"
    auth_token: SecretStr | None = None
    http_timeout_seconds: PositiveFloat = 30.0

    probe_path: str = "/manifest.json"
    probe_timeout_seconds: PositiveFloat = 3.0
    probe_interval_seconds: PositiveFloat = 2.0
    probe_confirmations: PositiveInt = 1

    sync_interval_seconds: PositiveFloat = 15.0
    startup_sync_delay_seconds: float = Field(default=2.0, ge=0)
    max_retries: PositiveInt = 3

    job_fetch_limit: PositiveInt = 100
    precache_retry_delay_seconds: float = Field(default=2.0, ge=0)

    page_cache_max_age_days: PositiveInt = 7
    technician_dashboard_route: str = "/technician"
    job_detail_route_prefix: str = "/technician/jobs"
    navigation_suggestion_limit: PositiveInt = 5

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("api_prefix", "probe_path", "technician_dashboard_route", "job_detail_route_prefix")
    @classmethod
    def _require_leading_slash(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped.startswith("/"):
            raise ValueError("Route settings must start with '/'")
        if len(stripped) > 1:
            stripped = stripped.rstrip("/")
        return stripped

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        self.app_base_url = self.app_base_url.strip().rstrip("/")
        if not self.app_base_url.startswith(("http://", "https://")):
            raise ValueError("app_base_url must be an http(s) URL")

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        if self.probe_timeout_seconds > self.http_timeout_seconds:
            raise ValueError("probe_timeout_seconds must be less than or equal to http_timeout_seconds")

        if not self.job_detail_route_prefix.startswith(self.technician_dashboard_route):
            raise ValueError("job_detail_route_prefix must live under technician_dashboard_route")

        return self

    def store_database_url(self, store_name: str) -> str:
        db_path = self.state_root / f"{store_name}.sqlite3"
        return f"sqlite+aiosqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
