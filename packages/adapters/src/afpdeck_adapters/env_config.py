"""
Backend factory: build a connected AccessStorage from StorageSettings.

USE_MONGODB selects the MongoDB backend (MONGODB_URL required); otherwise the
DynamoDB backend is used. Call once at process startup and share the returned
instance; call disconnect() (or use it as a context manager) at shutdown.
"""

import logging
from typing import Any

from afpdeck_shared import AccessStorage, ConfigurationError, configure_logging

from .config import StorageSettings, bootstrap_env, get_settings

logger = logging.getLogger(__name__)


def _build_mongodb(settings: StorageSettings, **backend_options: Any) -> AccessStorage:
    if not settings.mongodb_url:
        raise ConfigurationError("USE_MONGODB is true but MONGODB_URL is not set")
    from afpdeck_mongo_adapters import MongoDBAccessStorage

    return MongoDBAccessStorage(
        settings.mongodb_url,
        settings.table_names,
        database_name=settings.mongodb_database,
        connect_timeout=settings.storage_connect_timeout,
        read_timeout=settings.storage_read_timeout,
        max_attempts=settings.storage_max_attempts,
        **backend_options,
    )


def _build_dynamodb(settings: StorageSettings, **backend_options: Any) -> AccessStorage:
    from afpdeck_aws_adapters import DynamoDBAccessStorage

    return DynamoDBAccessStorage(
        settings.table_names,
        region_name=settings.aws_region,
        endpoint_url=settings.aws_endpoint_url,
        connect_timeout=settings.storage_connect_timeout,
        read_timeout=settings.storage_read_timeout,
        max_attempts=settings.storage_max_attempts,
        **backend_options,
    )


def backend_name(settings: StorageSettings) -> str:
    """Return "mongodb" or "dynamodb" for the backend the settings select."""
    return "mongodb" if settings.use_mongodb else "dynamodb"


def create_access_storage(settings: StorageSettings, **backend_options: Any) -> AccessStorage:
    """
    Build and connect the backend selected by settings.

    backend_options are passed to the backend constructor (e.g. client_factory
    for MongoDBAccessStorage). Raises ConfigurationError when USE_MONGODB is set
    without MONGODB_URL.
    """
    if settings.use_mongodb:
        storage = _build_mongodb(settings, **backend_options)
    else:
        storage = _build_dynamodb(settings, **backend_options)
    logger.info("storage backend: %s", backend_name(settings))
    return storage.connect()


def access_storage_from_env(**backend_options: Any) -> AccessStorage:
    """Load .env (AFPDECK_ENV_FILE), configure logging, and build the backend from env."""
    bootstrap_env()
    settings = get_settings()
    configure_logging(debug=settings.debug)
    return create_access_storage(settings, **backend_options)
