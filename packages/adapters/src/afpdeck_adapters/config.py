"""
Storage config from environment with defaults.
Single place for env-derived values used to select and build the storage backend.
Uses pydantic-settings so all env vars are validated and documented in one model.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from afpdeck_shared import TableNames
from afpdeck_shared.models import (
    DEFAULT_BROWSERID_TABLENAME,
    DEFAULT_SUBSCRIPTIONS_TABLENAME,
    DEFAULT_USERPREFS_TABLENAME,
    DEFAULT_WEBPUSH_TABLENAME,
)


class StorageSettings(BaseSettings):
    """
    All environment variables used to build the AccessStorage.
    Env vars are read from os.environ (UPPER_SNAKE_CASE, case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_file=None,  # .env is loaded by bootstrap_env() so os.environ is ready
        extra="ignore",
    )

    # Backend selection
    use_mongodb: bool = False
    mongodb_url: str | None = None
    mongodb_database: str | None = None

    # Table / collection names
    userprefs_tablename: str = DEFAULT_USERPREFS_TABLENAME
    webpush_table_name: str = DEFAULT_WEBPUSH_TABLENAME
    subscriptions_table_name: str = DEFAULT_SUBSCRIPTIONS_TABLENAME
    browserid_table_name: str = DEFAULT_BROWSERID_TABLENAME

    # DynamoDB client
    aws_region: str | None = None
    aws_endpoint_url: str | None = None

    # Explicit timeout / retry for either backend
    storage_connect_timeout: float = Field(5.0, gt=0)
    storage_read_timeout: float = Field(10.0, gt=0)
    storage_max_attempts: int = Field(3, ge=1)

    debug: bool = False

    @property
    def table_names(self) -> TableNames:
        return TableNames(
            user_preferences=self.userprefs_tablename,
            web_push=self.webpush_table_name,
            subscriptions=self.subscriptions_table_name,
            subscription_by_browser=self.browserid_table_name,
        )


def get_settings() -> StorageSettings:
    """Return validated settings from current environment."""
    return StorageSettings()


def bootstrap_env() -> None:
    """
    Load .env from path in AFPDECK_ENV_FILE if set.
    Call once at process startup before using get_settings() so vars from the file are in os.environ.
    """
    import os

    import dotenv

    path = os.environ.get("AFPDECK_ENV_FILE")
    if path:
        dotenv.load_dotenv(Path(path).resolve())
