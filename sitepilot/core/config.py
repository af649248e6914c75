"""
Configuration management for the SitePilot scheduler.

Handles environment-based configuration for the scheduling runtime and its store.
"""
import logging
import os
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Site whose schedules this process owns
    site_key: str = os.getenv("SITE_KEY", "trendsinusa")

    # Debug - handle non-boolean values gracefully
    debug: bool = False

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        """Parse debug from environment, handling non-boolean values."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes")
        debug_env = os.getenv("DEBUG", "false").lower()
        return debug_env in ("true", "1", "yes")

    # Database (DATABASE_URL wins over DATABASE_PATH)
    database_url: Optional[str] = os.getenv("DATABASE_URL", None)
    database_path: str = os.getenv("DATABASE_PATH", str(Path.home() / ".sitepilot" / "sitepilot.db"))
    database_echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Scheduler loops (seconds). Poll intervals are clamped by RuntimeConfig.
    scheduler_poll_seconds: int = int(os.getenv("SCHEDULER_POLL_SECONDS", "30"))
    scheduler_process_every_seconds: int = int(os.getenv("SCHEDULER_PROCESS_EVERY_SECONDS", "5"))
    scheduler_claim_window_seconds: float = float(os.getenv("SCHEDULER_CLAIM_WINDOW_SECONDS", "30"))
    scheduler_process_batch_size: int = int(os.getenv("SCHEDULER_PROCESS_BATCH_SIZE", "3"))

    # Run the schedule runtime at all (host processes may embed the service only)
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "1").strip().lower() in ("1", "true", "yes")

    class Config:
        # Load .env from project root (sitepilot/core/config.py -> parent.parent.parent)
        env_file = str(Path(__file__).resolve().parent.parent.parent / ".env")
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_database_url() -> str:
    """Get the database URL, defaulting to a local SQLite file."""
    if settings.database_url:
        return settings.database_url
    # Ensure directory exists
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{settings.database_path}"


def configure_logging(level: Optional[int] = None) -> None:
    """Configure root logging for a host process embedding the scheduler."""
    logging.basicConfig(
        level=level if level is not None else (logging.DEBUG if settings.debug else logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
