"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import pytz


def _default_timezone() -> str:
    """Device zone: the TZ environment variable when it names an IANA zone."""
    tz_name = os.environ.get("TZ", "").lstrip(":")
    if tz_name in pytz.all_timezones_set:
        return tz_name
    return "UTC"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEETSYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    # Google OAuth / Calendar API
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for refresh"
    )
    google_api_base: str = Field(
        default="https://www.googleapis.com/calendar/v3",
        description="Calendar REST API base URL"
    )
    google_calendar_id: str = Field(default="primary", description="Calendar to sync with")
    google_channel_token: Optional[str] = Field(None, description="Expected X-Goog-Channel-Token on push notifications")

    # Application
    app_name: str = Field(default="meetsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    timezone: str = Field(default_factory=_default_timezone, description="IANA zone of the device")

    # Storage
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".meetsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Network
    request_timeout_seconds: int = Field(default=30, ge=1, le=300, description="HTTP request timeout")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for rate limited or 5xx calls")

    # Sync window and defaults
    sync_past_days: int = Field(default=0, ge=0, description="Days before today pulled from the calendar")
    sync_future_days: int = Field(default=30, ge=1, description="Days after today pulled from the calendar")
    default_sync_interval_minutes: int = Field(default=15, ge=1)

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            return f"sqlite:///{values['data_dir']}/meetsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('timezone')
    def validate_timezone(cls, v):
        """Only IANA zone names are accepted."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tzinfo(self):
        """pytz zone object for the configured device zone."""
        return pytz.timezone(self.timezone)

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def can_refresh_tokens(self) -> bool:
        """Refresh needs both halves of the OAuth client."""
        return bool(self.google_client_id and self.google_client_secret)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        env_file: Optional path to a .env file overriding the default

    Returns:
        Settings instance
    """
    if env_file:
        settings = Settings(_env_file=env_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# meetsync configuration
# Copy this file to .env and fill in your actual credentials

# Google OAuth client (needed to refresh expired access tokens)
MEETSYNC_GOOGLE_CLIENT_ID=your_google_client_id_here
MEETSYNC_GOOGLE_CLIENT_SECRET=your_google_client_secret_here
MEETSYNC_GOOGLE_CALENDAR_ID=primary
# MEETSYNC_GOOGLE_CHANNEL_TOKEN=shared_secret_for_push_notifications

# Application
MEETSYNC_DEBUG=false
MEETSYNC_LOG_LEVEL=INFO
MEETSYNC_TIMEZONE=Europe/Madrid

# Sync window (days relative to today)
MEETSYNC_SYNC_PAST_DAYS=0
MEETSYNC_SYNC_FUTURE_DAYS=30
MEETSYNC_DEFAULT_SYNC_INTERVAL_MINUTES=15

# Network
MEETSYNC_REQUEST_TIMEOUT_SECONDS=30
MEETSYNC_RETRY_ATTEMPTS=3

# Storage (optional)
# MEETSYNC_DATA_DIR=~/.meetsync
# MEETSYNC_DATABASE_URL=sqlite:///~/.meetsync/meetsync.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
