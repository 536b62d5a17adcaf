from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class StorageConfig(str, Enum):
    """Backing store for the shared exercise cache, resolved once at startup."""
    IN_MEMORY = "in_memory"
    REMOTE_KV = "remote_kv"


class InvalidationPolicy(str, Enum):
    """What happens to a cached exercise once a user completes it."""
    PER_USER_FILTER = "per_user_filter"  # keep shared supply, filter per identity
    EAGER = "eager"                      # drop from the shared pool on completion


class Settings(BaseSettings):
    # Database (remote progress ledger)
    DATABASE_URL: str = "sqlite+aiosqlite:///./vjezbajmo.db"

    # Remote key-value store (exercise cache); empty means in-memory fallback
    REDIS_URL: str = ""
    REDIS_POOL_SIZE: int = 20

    # Exercise generation
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    GENERATION_MAX_TOKENS: int = 1500
    GENERATION_TIMEOUT_SECONDS: float = 45.0

    # Cache lifetimes
    EXERCISE_CACHE_TTL_SECONDS: int = 7 * 24 * 60 * 60
    SOLUTION_CACHE_TTL_SECONDS: int = 60 * 60
    CACHE_CLEANUP_INTERVAL_SECONDS: int = 60 * 60
    CACHE_INVALIDATION_POLICY: InvalidationPolicy = InvalidationPolicy.PER_USER_FILTER

    # Progress
    PROGRESS_RETENTION_DAYS: int = 30
    LOCAL_PROGRESS_DIR: Path = PROJECT_ROOT / ".progress"

    # Static catalog
    WORKSHEETS_DIR: Path = PROJECT_ROOT / "data" / "worksheets"

    # Backend
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000
    APP_DEBUG: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # True for production (structured JSON), False for dev (colored)
    LOG_SQL: bool = False

    def storage_config(self) -> StorageConfig:
        """Pick the cache backend from the presence of remote-store parameters."""
        return StorageConfig.REMOTE_KV if self.REDIS_URL else StorageConfig.IN_MEMORY

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
