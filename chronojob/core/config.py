from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_BACKOFF_STRATEGIES = {"fixed", "linear", "exponential"}
SUPPORTED_ENVIRONMENTS = {"development", "test", "staging", "production"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHRONOJOB_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "chronojob"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    sqlite_busy_timeout_ms: PositiveInt = 10000

    dispatch_secret: SecretStr | None = None
    auth_soft_fail: bool = False
    session_ttl_seconds: PositiveInt = 12 * 3600

    dispatch_batch_limit: PositiveInt = 50
    max_batch_limit: PositiveInt = 500
    handler_timeout_seconds: float = 30.0
    handler_pool_size: PositiveInt = 4
    claim_ttl_seconds: PositiveInt = 900
    recover_stale_on_dispatch: bool = True

    default_max_retries: int = 3
    retry_backoff_strategy: str = "exponential"
    retry_base_seconds: PositiveInt = 30
    retry_max_seconds: PositiveInt = 3600

    poll_interval_seconds: PositiveInt = 60
    worker_id: str | None = None

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", mode="before")
    @classmethod
    def _require_absolute_state_root(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("state_root must not use ~ expansion")
        if "$" in raw:
            raise ValueError("state_root must not reference environment variables")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("state_root must be an absolute path")
        return path

    @field_validator("dispatch_secret", mode="before")
    @classmethod
    def _blank_secret_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        if self.database_url is None:
            self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_environment = self.environment.lower().strip()
        if normalized_environment not in SUPPORTED_ENVIRONMENTS:
            raise ValueError(f"environment must be one of {sorted(SUPPORTED_ENVIRONMENTS)}")
        self.environment = normalized_environment

        if self.auth_soft_fail and self.environment == "production":
            raise ValueError("auth_soft_fail cannot be enabled in production")

        normalized_strategy = self.retry_backoff_strategy.lower().strip()
        if normalized_strategy not in SUPPORTED_BACKOFF_STRATEGIES:
            raise ValueError(f"retry_backoff_strategy must be one of {sorted(SUPPORTED_BACKOFF_STRATEGIES)}")
        self.retry_backoff_strategy = normalized_strategy

        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry_max_seconds must be greater than or equal to retry_base_seconds")

        if self.default_max_retries < 0:
            raise ValueError("default_max_retries must be >= 0")

        if self.handler_timeout_seconds <= 0:
            raise ValueError("handler_timeout_seconds must be greater than zero")

        if self.claim_ttl_seconds <= self.handler_timeout_seconds:
            raise ValueError("claim_ttl_seconds must be greater than handler_timeout_seconds")

        if self.max_batch_limit < self.dispatch_batch_limit:
            raise ValueError("max_batch_limit must be greater than or equal to dispatch_batch_limit")

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "chronojob.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def dispatch_auth_enabled(self) -> bool:
        return self.dispatch_secret is not None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
