"""
Configuration management using Pydantic Settings.
Handles environment variables and YAML configuration loading.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from courtwatch.errors import ConfigError
from courtwatch.models.schemas import Player

SQUASH_SPORT_ID = 15


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # SquashCity account
    squash_city_username: str = Field(..., alias="SQUASH_CITY_USERNAME")
    squash_city_password: SecretStr = Field(..., alias="SQUASH_CITY_PASSWORD")
    base_url: str = Field(
        default="https://squashcity.baanreserveren.nl", alias="BASE_URL"
    )
    sport_id: int = Field(default=SQUASH_SPORT_ID, alias="SPORT_ID")

    # Telegram Bot Configuration
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str = Field(
        default="",
        alias="TELEGRAM_CHAT_ID",
        description="Comma separated Telegram chat IDs for notifications",
    )

    # Session and HTTP behaviour
    session_ttl_seconds: int = Field(default=1800, alias="SESSION_TTL_SECONDS")
    http_timeout: float = Field(default=30.0, alias="HTTP_TIMEOUT")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    retry_delay: float = Field(
        default=1.0,
        alias="RETRY_DELAY",
        description="Base delay in seconds, doubled on every attempt",
    )

    # Scheduling
    queue_interval_seconds: int = Field(default=300, alias="QUEUE_INTERVAL_SECONDS")
    monitor_interval_seconds: int = Field(default=900, alias="MONITOR_INTERVAL_SECONDS")
    monitor_lookahead_days: int = Field(default=7, alias="MONITOR_LOOKAHEAD_DAYS")
    timezone: str = Field(default="Europe/Amsterdam", alias="TIMEZONE")

    # Change detection
    state_retention_days: int = Field(default=7, alias="STATE_RETENTION_DAYS")
    change_detection_mode: str = Field(
        default="transition",
        alias="CHANGE_DETECTION_MODE",
        description="'transition' (newly free slots) or 'changed' (any availability change)",
    )

    # Booking
    booking_min_lead_hours: float = Field(default=0.0, alias="BOOKING_MIN_LEAD_HOURS")
    calendar_webhook_url: Optional[str] = Field(default=None, alias="CALENDAR_WEBHOOK_URL")

    # Application Settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///data/courtwatch.db", alias="DATABASE_URL"
    )
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Logfire Configuration
    logfire_token: Optional[str] = Field(default=None, alias="LOGFIRE_TOKEN")

    # Configuration File Paths
    players_config_path: str = Field(
        default="config/players.yaml", alias="PLAYERS_CONFIG_PATH"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v

    @field_validator("change_detection_mode")
    @classmethod
    def validate_change_detection_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in ["transition", "changed"]:
            raise ValueError("CHANGE_DETECTION_MODE must be 'transition' or 'changed'")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def telegram_chat_ids(self) -> list[str]:
        return [c.strip() for c in self.telegram_chat_id.split(",") if c.strip()]

    @property
    def login_url(self) -> str:
        return f"{self.base_url}/auth/login"

    def load_players_config(self) -> list[Player]:
        """
        Load booking partners from the YAML file.

        The file is optional: without it bookings keep the form's default players.
        """
        path = Path(self.players_config_path)
        if not path.exists():
            return []

        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if not config or "players" not in config:
            raise ConfigError(
                f"Invalid players configuration: missing 'players' key in {path}"
            )

        return [Player(**entry) for entry in config["players"]]


def load_settings() -> Settings:
    """Build settings, converting validation failures into ConfigError."""
    try:
        return Settings()
    except ValidationError as e:
        missing = [
            str(err["loc"][0]) for err in e.errors() if err.get("type") == "missing"
        ]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            ) from e
        raise ConfigError(f"Invalid configuration: {e}") from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings singleton.
    Uses lru_cache to ensure single instance across application.
    """
    return load_settings()
