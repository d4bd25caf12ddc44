"""DynamoDB implementation of the notification-center AccessStorage."""

from .dynamodb_storage import DynamoDBAccessStorage, index_sort_key
from .dynamodb_tables import OWNER_BROWSER_GSI, create_tables, table_schemas

__all__ = [
    "DynamoDBAccessStorage",
    "OWNER_BROWSER_GSI",
    "create_tables",
    "index_sort_key",
    "table_schemas",
]
