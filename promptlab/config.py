"""Runtime configuration.

All values come from environment variables (or a local ``.env`` file) and fall
back to the defaults below. Variable names are unprefixed so the usual
``REDIS_URL`` / ``OPENAI_API_KEY`` / ``ANTHROPIC_API_KEY`` work as-is.
"""

import logging
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    testing: bool = False
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"

    # "key:owner,key2:owner2"; a bare key maps to itself as owner
    api_keys: str = ""

    rate_limit_max_requests: int = Field(default=100, ge=1)
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    rate_limit_key_prefix: str = "api-ratelimit"

    result_cache_ttl_seconds: int = Field(default=3600, ge=1)

    worker_poll_seconds: float = Field(default=5.0, gt=0)
    worker_batch_size: int = Field(default=10, ge=1)
    worker_concurrency: int = Field(default=1, ge=1)
    worker_claim_ttl_seconds: int = Field(default=300, ge=1)

    job_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_ms: str = "1000,3000,10000"

    generation_timeout_seconds: float = Field(default=30.0, gt=0)
    generation_max_tokens: int = Field(default=4096, ge=1)
    generation_temperature: float = 1.0

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-haiku-20240307"

    @field_validator("retry_backoff_ms")
    @classmethod
    def _check_backoff(cls, value: str) -> str:
        delays = [part.strip() for part in value.split(",") if part.strip()]
        if not delays or not all(part.isdigit() for part in delays):
            raise ValueError("retry_backoff_ms must be a comma separated list of milliseconds")
        return value

    def backoff_schedule_ms(self) -> List[int]:
        return [int(part) for part in self.retry_backoff_ms.split(",") if part.strip()]

    def api_key_owners(self) -> Dict[str, str]:
        owners: Dict[str, str] = {}
        for entry in self.api_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            key, _, owner = entry.partition(":")
            owners[key] = owner or key
        return owners


def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
