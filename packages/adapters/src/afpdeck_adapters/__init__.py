"""Backend selection for the notification-center storage layer."""

from .config import StorageSettings, bootstrap_env, get_settings
from .env_config import access_storage_from_env, backend_name, create_access_storage

__all__ = [
    "StorageSettings",
    "access_storage_from_env",
    "backend_name",
    "bootstrap_env",
    "create_access_storage",
    "get_settings",
]
