"""
DynamoDB key schemas for the four notification-center tables, and a helper that
creates missing tables (tests with moto, LocalStack / DynamoDB Local).

Tables:
- user preferences: owner (HASH), name (RANGE)
- web push: owner (HASH), browserID (RANGE)
- subscriptions (canonical): owner (HASH), name (RANGE)
- subscription-by-browser (index): name (HASH), ownerBrowserID (RANGE) with the
  owner-browserID-index GSI (owner HASH, browserID RANGE) for "which
  subscriptions does this browser have".
"""

import logging
from typing import Any

from afpdeck_shared import TableNames

logger = logging.getLogger(__name__)

OWNER_BROWSER_GSI = "owner-browserID-index"


def _string_attrs(*names: str) -> list[dict[str, str]]:
    return [{"AttributeName": n, "AttributeType": "S"} for n in names]


def _key_schema(hash_key: str, range_key: str) -> list[dict[str, str]]:
    return [
        {"AttributeName": hash_key, "KeyType": "HASH"},
        {"AttributeName": range_key, "KeyType": "RANGE"},
    ]


USER_PREFERENCES_SCHEMA: dict[str, Any] = {
    "KeySchema": _key_schema("owner", "name"),
    "AttributeDefinitions": _string_attrs("owner", "name"),
}

WEB_PUSH_SCHEMA: dict[str, Any] = {
    "KeySchema": _key_schema("owner", "browserID"),
    "AttributeDefinitions": _string_attrs("owner", "browserID"),
}

SUBSCRIPTIONS_SCHEMA: dict[str, Any] = {
    "KeySchema": _key_schema("owner", "name"),
    "AttributeDefinitions": _string_attrs("owner", "name"),
}

SUBSCRIPTION_BY_BROWSER_SCHEMA: dict[str, Any] = {
    "KeySchema": _key_schema("name", "ownerBrowserID"),
    "AttributeDefinitions": _string_attrs("name", "ownerBrowserID", "owner", "browserID"),
    "GlobalSecondaryIndexes": [
        {
            "IndexName": OWNER_BROWSER_GSI,
            "KeySchema": _key_schema("owner", "browserID"),
            "Projection": {"ProjectionType": "ALL"},
        }
    ],
}


def table_schemas(names: TableNames) -> dict[str, dict[str, Any]]:
    """Map physical table name -> create_table key schema arguments."""
    return {
        names.user_preferences: USER_PREFERENCES_SCHEMA,
        names.web_push: WEB_PUSH_SCHEMA,
        names.subscriptions: SUBSCRIPTIONS_SCHEMA,
        names.subscription_by_browser: SUBSCRIPTION_BY_BROWSER_SCHEMA,
    }


def _existing_tables(client: Any) -> set[str]:
    existing: set[str] = set()
    for page in client.get_paginator("list_tables").paginate():
        existing.update(page.get("TableNames", []))
    return existing


def create_tables(client: Any, names: TableNames | None = None) -> list[str]:
    """
    Create any of the four tables that do not exist yet (PAY_PER_REQUEST).

    Waits until each created table is ACTIVE. Returns the names of the tables
    created; existing tables are left untouched.
    """
    names = names or TableNames()
    existing = _existing_tables(client)
    created: list[str] = []
    for table_name, schema in table_schemas(names).items():
        if table_name in existing:
            continue
        client.create_table(TableName=table_name, BillingMode="PAY_PER_REQUEST", **schema)
        client.get_waiter("table_exists").wait(TableName=table_name)
        logger.info("dynamodb: created table %s", table_name)
        created.append(table_name)
    return created
