"""Shared types and conventions for the afpdeck notification-center storage layer."""

from .errors import (
    BackendError,
    ConfigurationError,
    InvalidKeyError,
    NotConnectedError,
    NotFoundError,
    StorageError,
)
from .interfaces import AccessStorage
from .keys import is_all, require_lookup_key, require_owner, require_real_key
from .logging_config import configure_logging
from .models import (
    ALL,
    DeletedSubscriptionRemainder,
    PushSubscription,
    PushSubscriptionKeys,
    RegisteredSubscriptionDocument,
    RegisterSubscriptionDocument,
    SubscriptionDocument,
    TableNames,
    UserPreferencesDocument,
    VapidKeys,
    WebPushUserDocument,
    ensure_utc,
    from_epoch_millis,
    to_epoch_millis,
    utc_now,
)

__version__ = "0.1.0"
__all__ = [
    "ALL",
    "AccessStorage",
    "BackendError",
    "ConfigurationError",
    "DeletedSubscriptionRemainder",
    "InvalidKeyError",
    "NotConnectedError",
    "NotFoundError",
    "PushSubscription",
    "PushSubscriptionKeys",
    "RegisterSubscriptionDocument",
    "RegisteredSubscriptionDocument",
    "StorageError",
    "SubscriptionDocument",
    "TableNames",
    "UserPreferencesDocument",
    "VapidKeys",
    "WebPushUserDocument",
    "configure_logging",
    "ensure_utc",
    "from_epoch_millis",
    "is_all",
    "require_lookup_key",
    "require_owner",
    "require_real_key",
    "to_epoch_millis",
    "utc_now",
]
