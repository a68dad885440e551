"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings

from metrics_collector.errors import ConfigError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    DATABASE_URL: Optional[str] = None
    SQLITE_PATH: str = "metrics_dev.db"
    SQL_DEBUG: bool = False

    # Fetching
    FETCH_BATCH_SIZE: int = 4
    FETCH_BATCH_DELAY: float = 5.0
    FETCH_MAX_ATTEMPTS: int = 3
    API_TIMEOUT: float = 30.0
    SERVICE_PAUSE_SECONDS: float = 2.0

    # TopVisor
    TOPVISOR_API_URL: str = "https://api.topvisor.com/v2/json/get/positions_2/history"
    TOPVISOR_API_KEY: Optional[str] = None
    TOPVISOR_USER_ID: Optional[str] = None

    # Google OAuth / Search Console
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: str = "urn:ietf:wg:oauth:2.0:oob"
    GOOGLE_SCOPES: str = "https://www.googleapis.com/auth/webmasters.readonly"
    GOOGLE_REFRESH_TOKEN_PATH: str = "./tokens/google-refresh.json"
    GOOGLE_TOKEN_FORCE_REFRESH: bool = False
    GOOGLE_TOKEN_REFRESH_ON_START: bool = False
    GSC_SITE_URL: Optional[str] = None
    GSC_ROW_LIMIT: int = 25000

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None
    RESEND_API_KEY: Optional[str] = None
    NOTIFY_EMAIL_TO: Optional[str] = None
    NOTIFY_EMAIL_FROM: str = "collector@localhost"

    # Services
    SERVICES_CONFIG_PATH: str = "config/services.json"

    # Legacy environment switches
    MANUAL_MODE: bool = False
    MANUAL_START_DATE: Optional[str] = None
    MANUAL_END_DATE: Optional[str] = None
    FORCE_OVERRIDE: bool = False

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase

    def require(self, *names: str) -> None:
        """Raise ConfigError listing every named setting that is empty."""
        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


class ServiceConfig(BaseModel):
    """Scheduling options for one service."""
    enabled: bool = False
    priority: int = 999
    date_offset: int = -1


DEFAULT_SERVICES: Dict[str, ServiceConfig] = {
    "topvisor": ServiceConfig(enabled=True, priority=1, date_offset=-1),
    # Search Console data lags by a few days
    "gsc": ServiceConfig(enabled=False, priority=2, date_offset=-3),
}


def load_services_config(path: Optional[str] = None) -> Dict[str, ServiceConfig]:
    """
    Load per-service scheduling options.

    Falls back to DEFAULT_SERVICES when the JSON file does not exist.
    """
    config_path = Path(path or get_settings().SERVICES_CONFIG_PATH)
    if not config_path.exists():
        logger.debug(f"No services config at {config_path}, using defaults")
        return dict(DEFAULT_SERVICES)

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid services config {config_path}: {e}") from e

    return {name: ServiceConfig(**options) for name, options in raw.items()}


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
