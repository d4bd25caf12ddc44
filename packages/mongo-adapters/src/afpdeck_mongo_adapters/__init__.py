"""MongoDB implementation of the notification-center AccessStorage."""

from .mongo_storage import DEFAULT_DATABASE, MongoDBAccessStorage

__all__ = ["DEFAULT_DATABASE", "MongoDBAccessStorage"]
