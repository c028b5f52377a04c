"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./house_haunters.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # Internal cron endpoints (X-Internal-Token)
    internal_token: str = "haunters-internal"

    # Escrow economics
    platform_commission_rate: float = 0.15
    currency: str = "KES"

    # Viewing timing
    viewing_duration_minutes: int = 60
    auto_release_grace_minutes: int = 10

    # Scheduler
    scheduler_enabled: bool = True
    auto_release_interval_minutes: int = 10
    expiration_check_hour: int = 0
    morning_prompt_hour: int = 7

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
