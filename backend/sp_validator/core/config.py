# sp_validator/core/config.py
import json
from pathlib import Path
from typing import Annotated, List, Optional, Tuple, Union

from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator, model_validator


def _env_file_candidates() -> Tuple[Union[str, Path], ...]:
    """Build a prioritized list of .env files for cross-platform support."""
    base_dir = Path(__file__).resolve().parent.parent
    project_root = base_dir.parent
    candidates: List[Union[str, Path]] = [
        base_dir / ".env",
        base_dir / ".env.local",
        project_root / ".env",
        project_root / ".env.local",
        ".env",
    ]

    unique_candidates: List[Union[str, Path]] = []
    seen = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        unique_candidates.append(candidate)
    return tuple(unique_candidates)


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "SP Validator"
    APP_ENV: str = "dev"
    API_PREFIX: str = "/api"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    RELOAD: bool = False
    LOG_LEVEL: str = "info"
    SQL_LOG_LEVEL: str = "WARNING"
    MAX_REQUEST_SIZE: int = 10 * 1024 * 1024  # 10MB for JSON bodies

    # Security
    API_KEY: str = ""
    ENCRYPTION_MASTER_KEY: str = ""
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # Database
    DATABASE_URL: str = "sqlite:///sp_validator.db"

    # Probe defaults
    DEFAULT_RESOURCE_GROUP: str = "validation-rg"
    DEFAULT_LOCATION: str = "eastus"
    # NoDecode hands the raw env string to parse_file_list
    DEFAULT_TEST_FILES: Annotated[List[str], NoDecode] = ["index.html", "404.html"]
    TEST_FILES_DIR: str = "test-files"
    STORAGE_ACCOUNT_PREFIX: str = "azval"
    CLEANUP_ENABLED: bool = False

    # Validation job queue
    VALIDATION_MAX_ATTEMPTS: int = 3
    VALIDATION_BACKOFF_BASE_SECONDS: float = 2.0
    VALIDATION_BACKOFF_CAP_SECONDS: float = 60.0
    VALIDATION_TIMEOUT_SECONDS: float = 300.0
    VALIDATION_WORKERS: int = 1

    # Webhook delivery
    WEBHOOK_RETRY_COUNT: int = 3
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_BACKOFF_BASE_SECONDS: float = 1.0
    WEBHOOK_BACKOFF_CAP_SECONDS: float = 30.0
    WEBHOOK_RESPONSE_BODY_LIMIT: int = 1000
    WEBHOOK_JOB_MAX_ATTEMPTS: int = 3
    WEBHOOK_JOB_TIMEOUT_SECONDS: float = 300.0
    WEBHOOK_WORKERS: int = 1

    # Queue polling
    JOB_POLL_INTERVAL_SECONDS: float = 1.0

    @field_validator("DEFAULT_TEST_FILES", mode="before")
    @classmethod
    def parse_file_list(cls, v):
        """Parse list fields from a JSON array or comma-separated string"""
        if v is None or v == "":
            return []
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    return []
            return [p.strip() for p in s.split(",") if p.strip()]
        return v or []

    @field_validator("VALIDATION_MAX_ATTEMPTS", "WEBHOOK_RETRY_COUNT", "WEBHOOK_JOB_MAX_ATTEMPTS")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempt budgets must be at least 1")
        return v

    @model_validator(mode="after")
    def enforce_production_security(self):
        env = (self.APP_ENV or "").lower()
        if env in {"prod", "production", "staging"}:
            if not self.API_KEY:
                raise ValueError("API_KEY must be set for production/staging.")
            if not self.ENCRYPTION_MASTER_KEY:
                raise ValueError("ENCRYPTION_MASTER_KEY must be set for production/staging.")
        return self

    @property
    def is_dev(self) -> bool:
        return (self.APP_ENV or "").lower() in {"dev", "test"}

    model_config = {
        "env_file": _env_file_candidates(),
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
__all__ = ["settings", "Settings"]
