"""Process configuration loaded once from the environment (or `.env`)."""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Upstream (Are.na)
    ARENA_ACCESS_TOKEN: Optional[str] = None
    ARENA_API_BASE: str = "https://api.are.na/v2"
    REQUEST_TIMEOUT: float = 10.0  # seconds, per upstream call

    # Gateway
    CACHE_TTL_SECONDS: float = 600.0  # successful responses
    RATE_LIMIT_TTL_SECONDS: float = 15.0  # 429s without a usable Retry-After
    MAX_UPSTREAM_CONCURRENCY: int = 3
    DEFAULT_PER: int = 100

    # Inbound
    CORS_ORIGINS: List[str] = ["http://localhost:5173"]
    RATE_LIMIT: str = "600/minute"  # per client IP


settings = Settings()
