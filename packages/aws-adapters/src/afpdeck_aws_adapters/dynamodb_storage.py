"""
DynamoDB implementation of AccessStorage.

Four tables (see dynamodb_tables): user preferences, web push, canonical
subscriptions keyed by (owner, name), and the subscription-by-browser index
keyed by (name, "<owner>#<browserID>"). DynamoDB cannot list the browsers of a
subscription without a scan, so every store_subscription also writes an index
row, and every delete removes index rows before the canonical row. A crash
between the two writes leaves a canonical record with no index row (valid,
repaired by re-running store_subscription), never an index row pointing at a
deleted canonical record.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from afpdeck_shared import (
    ALL,
    BackendError,
    DeletedSubscriptionRemainder,
    InvalidKeyError,
    NotConnectedError,
    NotFoundError,
    PushSubscription,
    PushSubscriptionKeys,
    RegisteredSubscriptionDocument,
    RegisterSubscriptionDocument,
    TableNames,
    UserPreferencesDocument,
    VapidKeys,
    WebPushUserDocument,
    from_epoch_millis,
    is_all,
    require_lookup_key,
    require_owner,
    require_real_key,
    to_epoch_millis,
    utc_now,
)

from .dynamodb_tables import OWNER_BROWSER_GSI

logger = logging.getLogger(__name__)

_PREFERENCES = "user_preferences"
_WEB_PUSH = "web_push"
_SUBSCRIPTIONS = "subscriptions"
_BY_BROWSER = "subscription_by_browser"

INDEX_SEPARATOR = "#"


def index_sort_key(owner: str, browser_id: str) -> str:
    """Sort key of a subscription-by-browser row."""
    return f"{owner}{INDEX_SEPARATOR}{browser_id}"


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


@contextmanager
def _backend_call(operation: str) -> Iterator[None]:
    """Translate botocore failures into BackendError, keeping the original as cause."""
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        logger.warning("dynamodb: %s failed: %s", operation, e)
        raise BackendError(f"dynamodb {operation} failed: {e}", cause=e) from e


def _set_expression(
    fields: dict[str, Any], *, keep_created: int | None = None
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """
    Build "SET #a = :a, ..." with placeholders for every attribute.

    keep_created: when set, also SET created = if_not_exists(created, keep_created).
    """
    updates: list[str] = []
    expr_names: dict[str, str] = {}
    expr_values: dict[str, Any] = {}
    for attr, value in fields.items():
        updates.append(f"#{attr} = :{attr}")
        expr_names[f"#{attr}"] = attr
        expr_values[f":{attr}"] = value
    if keep_created is not None:
        updates.append("#created = if_not_exists(#created, :created)")
        expr_names["#created"] = "created"
        expr_values[":created"] = keep_created
    return "SET " + ", ".join(updates), expr_names, expr_values


def _query_all(table: Any, **params: Any) -> list[dict[str, Any]]:
    """Run a query following LastEvaluatedKey until every page is read."""
    items: list[dict[str, Any]] = []
    while True:
        resp = table.query(**params)
        items.extend(resp.get("Items", []))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        params["ExclusiveStartKey"] = last_key


def _item_to_preferences(item: dict[str, Any]) -> UserPreferencesDocument:
    raw = item.get("preferences")
    return UserPreferencesDocument(
        owner=item["owner"],
        name=item["name"],
        preferences=json.loads(raw) if raw is not None else None,
        updated=from_epoch_millis(item["updated"]) if "updated" in item else None,
    )


def _web_push_fields(document: WebPushUserDocument) -> dict[str, Any]:
    """Flatten nested VAPID keys and push subscription into item attributes."""
    return {
        "publicKey": document.api_keys.public_key,
        "privateKey": document.api_keys.private_key,
        "endpoint": document.subscription.endpoint,
        "p256dh": document.subscription.keys.p256dh,
        "auth": document.subscription.keys.auth,
    }


def _item_to_web_push(item: dict[str, Any]) -> WebPushUserDocument:
    return WebPushUserDocument(
        owner=item["owner"],
        browser_id=item["browserID"],
        api_keys=VapidKeys(public_key=item["publicKey"], private_key=item["privateKey"]),
        subscription=PushSubscription(
            endpoint=item["endpoint"],
            keys=PushSubscriptionKeys(auth=item["auth"], p256dh=item["p256dh"]),
        ),
        created=from_epoch_millis(item["created"]) if "created" in item else None,
        updated=from_epoch_millis(item["updated"]) if "updated" in item else None,
    )


def _item_to_subscription(
    item: dict[str, Any], browser_ids: list[str]
) -> RegisteredSubscriptionDocument:
    raw = item.get("subscription")
    return RegisteredSubscriptionDocument(
        owner=item["owner"],
        name=item["name"],
        uno=item["uno"],
        subscription=json.loads(raw) if raw else {},
        created=from_epoch_millis(item["created"]) if "created" in item else None,
        updated=from_epoch_millis(item["updated"]) if "updated" in item else None,
        browser_ids=browser_ids,
    )


class DynamoDBAccessStorage:
    """AccessStorage over DynamoDB tables with an explicit subscription-by-browser index."""

    def __init__(
        self,
        table_names: TableNames | None = None,
        *,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        max_attempts: int = 3,
    ) -> None:
        self._table_names = table_names or TableNames()
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        )
        self._resource: Any = None
        self._tables: dict[str, Any] = {}

    @property
    def table_names(self) -> TableNames:
        return self._table_names

    # --- lifecycle ---

    def connect(self) -> "DynamoDBAccessStorage":
        """Create the DynamoDB resource and table handles. Idempotent."""
        if self._resource is not None:
            return self
        with _backend_call("connect"):
            resource = boto3.resource(
                "dynamodb",
                region_name=self._region_name,
                endpoint_url=self._endpoint_url,
                config=self._config,
            )
        names = self._table_names
        self._tables = {
            _PREFERENCES: resource.Table(names.user_preferences),
            _WEB_PUSH: resource.Table(names.web_push),
            _SUBSCRIPTIONS: resource.Table(names.subscriptions),
            _BY_BROWSER: resource.Table(names.subscription_by_browser),
        }
        self._resource = resource
        logger.info(
            "dynamodb: connected (preferences=%s, webpush=%s, subscriptions=%s, index=%s)",
            names.user_preferences,
            names.web_push,
            names.subscriptions,
            names.subscription_by_browser,
        )
        return self

    def disconnect(self) -> None:
        """Close the underlying client. Further operations raise NotConnectedError."""
        if self._resource is None:
            return
        self._resource.meta.client.close()
        self._resource = None
        self._tables = {}
        logger.info("dynamodb: disconnected")

    def __enter__(self) -> "DynamoDBAccessStorage":
        return self.connect()

    def __exit__(self, *exc: object) -> None:
        self.disconnect()

    def _table(self, kind: str) -> Any:
        if self._resource is None:
            raise NotConnectedError(type(self).__name__)
        return self._tables[kind]

    # --- user preferences ---

    def store_user_preferences(self, document: UserPreferencesDocument) -> None:
        owner = require_owner(document.owner)
        name = require_real_key(document.name, "name")
        table = self._table(_PREFERENCES)
        with _backend_call("store_user_preferences"):
            table.put_item(
                Item={
                    "owner": owner,
                    "name": name,
                    "preferences": json.dumps(document.preferences),
                    "updated": to_epoch_millis(utc_now()),
                }
            )

    def get_user_preferences(self, owner: str, name: str) -> list[UserPreferencesDocument]:
        require_owner(owner)
        require_lookup_key(name, "name")
        table = self._table(_PREFERENCES)
        with _backend_call("get_user_preferences"):
            if is_all(name):
                items = _query_all(table, KeyConditionExpression=Key("owner").eq(owner))
                return [_item_to_preferences(item) for item in items]
            item = table.get_item(Key={"owner": owner, "name": name}).get("Item")
        if not item:
            raise NotFoundError("user preferences", owner, name)
        return [_item_to_preferences(item)]

    def delete_user_preferences(self, owner: str, name: str) -> None:
        require_owner(owner)
        require_lookup_key(name, "name")
        table = self._table(_PREFERENCES)
        with _backend_call("delete_user_preferences"):
            if is_all(name):
                items = _query_all(table, KeyConditionExpression=Key("owner").eq(owner))
                self._batch_delete(table, [{"owner": owner, "name": i["name"]} for i in items])
                logger.info("dynamodb: deleted %d preference set(s) of %s", len(items), owner)
                return
            if not self._delete_if_exists(table, {"owner": owner, "name": name}):
                raise NotFoundError("user preferences", owner, name)

    # --- web push registrations ---

    def find_push_registrations(self, owner: str, browser_id: str) -> list[WebPushUserDocument]:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        table = self._table(_WEB_PUSH)
        with _backend_call("find_push_registrations"):
            if is_all(browser_id):
                items = _query_all(table, KeyConditionExpression=Key("owner").eq(owner))
                return [_item_to_web_push(item) for item in items]
            item = table.get_item(Key={"owner": owner, "browserID": browser_id}).get("Item")
        if not item:
            raise NotFoundError("web push registration", owner, browser_id)
        return [_item_to_web_push(item)]

    def store_web_push_registration(self, document: WebPushUserDocument) -> None:
        """Upsert in one update_item; created is only written when absent."""
        owner = require_owner(document.owner)
        browser_id = require_real_key(document.browser_id, "browser_id")
        table = self._table(_WEB_PUSH)
        now = to_epoch_millis(utc_now())
        fields = _web_push_fields(document)
        fields["updated"] = now
        expr, names, values = _set_expression(fields, keep_created=now)
        with _backend_call("store_web_push_registration"):
            table.update_item(
                Key={"owner": owner, "browserID": browser_id},
                UpdateExpression=expr,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )

    def update_web_push_registration(self, document: WebPushUserDocument) -> None:
        owner = require_owner(document.owner)
        browser_id = require_real_key(document.browser_id, "browser_id")
        table = self._table(_WEB_PUSH)
        fields = _web_push_fields(document)
        fields["updated"] = to_epoch_millis(utc_now())
        expr, names, values = _set_expression(fields)
        names["#bid"] = "browserID"
        with _backend_call("update_web_push_registration"):
            try:
                table.update_item(
                    Key={"owner": owner, "browserID": browser_id},
                    UpdateExpression=expr,
                    ConditionExpression="attribute_exists(#bid)",
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                )
            except ClientError as e:
                if _is_conditional_failure(e):
                    raise NotFoundError("web push registration", owner, browser_id) from e
                raise

    def delete_web_push_registrations(self, owner: str, browser_id: str) -> None:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        table = self._table(_WEB_PUSH)
        with _backend_call("delete_web_push_registrations"):
            if is_all(browser_id):
                items = _query_all(table, KeyConditionExpression=Key("owner").eq(owner))
                self._batch_delete(
                    table, [{"owner": owner, "browserID": i["browserID"]} for i in items]
                )
                logger.info("dynamodb: deleted %d web push registration(s) of %s", len(items), owner)
                return
            if not self._delete_if_exists(table, {"owner": owner, "browserID": browser_id}):
                raise NotFoundError("web push registration", owner, browser_id)

    # --- subscriptions ---

    def get_subscriptions(self, owner: str) -> list[RegisteredSubscriptionDocument]:
        require_owner(owner)
        table = self._table(_SUBSCRIPTIONS)
        with _backend_call("get_subscriptions"):
            items = _query_all(table, KeyConditionExpression=Key("owner").eq(owner))
            return [
                _item_to_subscription(item, self._browser_ids(owner, item["name"]))
                for item in items
            ]

    def get_subscription(self, owner: str, name: str) -> RegisteredSubscriptionDocument:
        require_owner(owner)
        require_lookup_key(name, "name")
        if is_all(name):
            raise InvalidKeyError(f"get_subscription needs a real name; use get_subscriptions for {ALL!r}")
        table = self._table(_SUBSCRIPTIONS)
        with _backend_call("get_subscription"):
            item = table.get_item(Key={"owner": owner, "name": name}, ConsistentRead=True).get("Item")
            if not item:
                raise NotFoundError("subscription", owner, name)
            return _item_to_subscription(item, self._browser_ids(owner, name))

    def get_browser_subscriptions(self, owner: str, browser_id: str) -> list[str]:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        with _backend_call("get_browser_subscriptions"):
            return self._names_for_browser(owner, browser_id)

    def store_subscription(self, document: RegisterSubscriptionDocument) -> None:
        """
        Read-modify-write of the canonical record, then insert-if-absent of the index row.

        The canonical branch is last-writer-wins; the index write is conditional
        and therefore idempotent whatever the interleaving with concurrent stores.
        """
        owner = require_owner(document.owner)
        name = require_real_key(document.name, "name")
        browser_id = require_real_key(document.browser_id, "browser_id")
        table = self._table(_SUBSCRIPTIONS)
        now = to_epoch_millis(utc_now())
        with _backend_call("store_subscription"):
            existing = table.get_item(
                Key={"owner": owner, "name": name}, ConsistentRead=True
            ).get("Item")
            if existing:
                self._update_canonical(document, now)
            else:
                try:
                    table.put_item(
                        Item={
                            "owner": owner,
                            "name": name,
                            "uno": document.uno,
                            "subscription": json.dumps(document.subscription),
                            "created": now,
                            "updated": now,
                        },
                        ConditionExpression="attribute_not_exists(#owner)",
                        ExpressionAttributeNames={"#owner": "owner"},
                    )
                except ClientError as e:
                    if not _is_conditional_failure(e):
                        raise
                    logger.info(
                        "dynamodb: subscription %s/%s inserted concurrently, updating", owner, name
                    )
                    self._update_canonical(document, now)
            self._ensure_index_row(owner, name, browser_id)

    def delete_subscription(
        self, owner: str, name: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        require_owner(owner)
        require_lookup_key(name, "name")
        require_lookup_key(browser_id, "browser_id")
        self._table(_SUBSCRIPTIONS)
        with _backend_call("delete_subscription"):
            if is_all(name):
                return self._delete_from_every_subscription(owner, browser_id)
            if is_all(browser_id):
                return self._delete_cascading(owner, name)
            return self._delete_scoped(owner, name, browser_id)

    # --- subscription internals (callers wrap these in _backend_call) ---

    def _update_canonical(self, document: RegisterSubscriptionDocument, now: int) -> None:
        # if_not_exists(created) covers a row deleted between the read and this write.
        expr, names, values = _set_expression(
            {
                "uno": document.uno,
                "subscription": json.dumps(document.subscription),
                "updated": now,
            },
            keep_created=now,
        )
        self._table(_SUBSCRIPTIONS).update_item(
            Key={"owner": document.owner, "name": document.name},
            UpdateExpression=expr,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    def _ensure_index_row(self, owner: str, name: str, browser_id: str) -> bool:
        """Insert the (name, owner#browser) row if absent. Returns True when it was inserted."""
        try:
            self._table(_BY_BROWSER).put_item(
                Item={
                    "name": name,
                    "ownerBrowserID": index_sort_key(owner, browser_id),
                    "owner": owner,
                    "browserID": browser_id,
                },
                ConditionExpression="attribute_not_exists(#name)",
                ExpressionAttributeNames={"#name": "name"},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.debug("dynamodb: index row %s/%s/%s already present", owner, name, browser_id)
                return False
            raise
        logger.debug("dynamodb: index row %s/%s/%s inserted", owner, name, browser_id)
        return True

    def _index_rows(self, owner: str, name: str) -> list[dict[str, Any]]:
        rows = _query_all(
            self._table(_BY_BROWSER),
            KeyConditionExpression=Key("name").eq(name)
            & Key("ownerBrowserID").begins_with(f"{owner}{INDEX_SEPARATOR}"),
            ConsistentRead=True,
        )
        # begins_with alone would also match owners that extend this one past a '#'.
        return [row for row in rows if row.get("owner") == owner]

    def _browser_ids(self, owner: str, name: str) -> list[str]:
        return sorted({row["browserID"] for row in self._index_rows(owner, name)})

    def _names_for_browser(self, owner: str, browser_id: str) -> list[str]:
        condition = Key("owner").eq(owner)
        if not is_all(browser_id):
            condition = condition & Key("browserID").eq(browser_id)
        rows = _query_all(
            self._table(_BY_BROWSER),
            IndexName=OWNER_BROWSER_GSI,
            KeyConditionExpression=condition,
        )
        return sorted({row["name"] for row in rows})

    def _delete_scoped(
        self, owner: str, name: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        index_removed = self._delete_if_exists(
            self._table(_BY_BROWSER),
            {"name": name, "ownerBrowserID": index_sort_key(owner, browser_id)},
        )
        remains = self._browser_ids(owner, name)
        if remains:
            if not index_removed:
                # Live subscription, but this browser was never linked to it.
                raise NotFoundError("subscription", owner, f"{name}/{browser_id}")
            logger.info(
                "dynamodb: %s/%s unlinked from %s, still used by %d browser(s)",
                owner,
                name,
                browser_id,
                len(remains),
            )
            return DeletedSubscriptionRemainder(identifier=name, remains=remains)
        # No index rows left: the canonical record goes too, even when it had
        # no row for this browser (a store that crashed before its index write).
        canonical = self._delete_returning(
            self._table(_SUBSCRIPTIONS), {"owner": owner, "name": name}
        )
        if not index_removed and canonical is None:
            raise NotFoundError("subscription", owner, f"{name}/{browser_id}")
        remains = self._restore_if_relinked(canonical, owner, name)
        return DeletedSubscriptionRemainder(identifier=name, remains=remains)

    def _restore_if_relinked(
        self, canonical: dict[str, Any] | None, owner: str, name: str
    ) -> list[str]:
        """
        Put a just-deleted canonical record back when a concurrent store linked a
        browser between the remaining-rows read and the canonical delete.

        Returns the browsers now linked (empty in the common case).
        """
        remains = self._browser_ids(owner, name)
        if not remains or canonical is None:
            return remains
        try:
            self._table(_SUBSCRIPTIONS).put_item(
                Item=canonical,
                ConditionExpression="attribute_not_exists(#owner)",
                ExpressionAttributeNames={"#owner": "owner"},
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            # The concurrent store already rewrote the canonical record.
        logger.warning(
            "dynamodb: %s/%s re-linked to %d browser(s) during delete, canonical kept",
            owner,
            name,
            len(remains),
        )
        return remains

    def _delete_cascading(self, owner: str, name: str) -> DeletedSubscriptionRemainder:
        index = self._table(_BY_BROWSER)
        rows = self._index_rows(owner, name)
        self._batch_delete(
            index, [{"name": name, "ownerBrowserID": row["ownerBrowserID"]} for row in rows]
        )
        canonical_removed = self._delete_if_exists(
            self._table(_SUBSCRIPTIONS), {"owner": owner, "name": name}
        )
        if not rows and not canonical_removed:
            raise NotFoundError("subscription", owner, name)
        # Remainder is read back from the index: anything here was re-registered
        # by a concurrent store after the rows above were listed.
        remains = self._browser_ids(owner, name)
        if remains:
            logger.warning(
                "dynamodb: %s/%s deleted but %d browser(s) re-registered concurrently",
                owner,
                name,
                len(remains),
            )
        logger.info("dynamodb: deleted subscription %s/%s (%d browser(s))", owner, name, len(rows))
        return DeletedSubscriptionRemainder(identifier=name, remains=remains)

    def _delete_from_every_subscription(
        self, owner: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        if is_all(browser_id):
            canonical = _query_all(
                self._table(_SUBSCRIPTIONS), KeyConditionExpression=Key("owner").eq(owner)
            )
            names = {item["name"] for item in canonical} | set(self._names_for_browser(owner, ALL))
        else:
            names = set(self._names_for_browser(owner, browser_id))
        alive: list[str] = []
        for name in sorted(names):
            try:
                if is_all(browser_id):
                    result = self._delete_cascading(owner, name)
                else:
                    result = self._delete_scoped(owner, name, browser_id)
            except NotFoundError:
                # GSI reads are eventually consistent; the name is already gone.
                logger.debug("dynamodb: %s/%s vanished during bulk delete", owner, name)
                continue
            if result.remains:
                alive.append(name)
        return DeletedSubscriptionRemainder(identifier=ALL, remains=alive)

    # --- generic helpers ---

    def _delete_if_exists(self, table: Any, key: dict[str, str]) -> bool:
        """Conditional delete_item. Returns False when no item had that key."""
        return self._delete_returning(table, key) is not None

    @staticmethod
    def _delete_returning(table: Any, key: dict[str, str]) -> dict[str, Any] | None:
        """Conditional delete_item returning the deleted item, or None when absent."""
        attr = next(iter(key))
        try:
            resp = table.delete_item(
                Key=key,
                ConditionExpression="attribute_exists(#k)",
                ExpressionAttributeNames={"#k": attr},
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return resp.get("Attributes") or dict(key)

    @staticmethod
    def _batch_delete(table: Any, keys: list[dict[str, str]]) -> None:
        if not keys:
            return
        with table.batch_writer() as batch:
            for key in keys:
                batch.delete_item(Key=key)
