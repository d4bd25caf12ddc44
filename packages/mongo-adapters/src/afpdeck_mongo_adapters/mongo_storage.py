"""
MongoDB implementation of AccessStorage.

One collection per entity kind. Subscriptions embed their browsers in a
``browserIDs`` array, so there is no separate index collection: "which browsers
use subscription X" and "which subscriptions does browser B have" are plain
filters, and store_subscription is a single atomic upsert.
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

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
    ensure_utc,
    is_all,
    require_lookup_key,
    require_owner,
    require_real_key,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "afpdeck"


@contextmanager
def _backend_call(operation: str) -> Iterator[None]:
    """Translate pymongo failures into BackendError, keeping the original as cause."""
    try:
        yield
    except PyMongoError as e:
        logger.warning("mongodb: %s failed: %s", operation, e)
        raise BackendError(f"mongodb {operation} failed: {e}", cause=e) from e


def _doc_to_preferences(doc: dict[str, Any]) -> UserPreferencesDocument:
    updated = doc.get("updated")
    return UserPreferencesDocument(
        owner=doc["owner"],
        name=doc["name"],
        preferences=doc.get("preferences"),
        updated=ensure_utc(updated) if updated else None,
    )


def _web_push_fields(document: WebPushUserDocument) -> dict[str, Any]:
    return {
        "apiKeys": {
            "publicKey": document.api_keys.public_key,
            "privateKey": document.api_keys.private_key,
        },
        "subscription": {
            "endpoint": document.subscription.endpoint,
            "keys": {
                "auth": document.subscription.keys.auth,
                "p256dh": document.subscription.keys.p256dh,
            },
        },
    }


def _doc_to_web_push(doc: dict[str, Any]) -> WebPushUserDocument:
    api_keys = doc["apiKeys"]
    subscription = doc["subscription"]
    return WebPushUserDocument(
        owner=doc["owner"],
        browser_id=doc["browserID"],
        api_keys=VapidKeys(public_key=api_keys["publicKey"], private_key=api_keys["privateKey"]),
        subscription=PushSubscription(
            endpoint=subscription["endpoint"],
            keys=PushSubscriptionKeys(
                auth=subscription["keys"]["auth"], p256dh=subscription["keys"]["p256dh"]
            ),
        ),
        created=ensure_utc(doc["created"]) if doc.get("created") else None,
        updated=ensure_utc(doc["updated"]) if doc.get("updated") else None,
    )


def _doc_to_subscription(doc: dict[str, Any]) -> RegisteredSubscriptionDocument:
    return RegisteredSubscriptionDocument(
        owner=doc["owner"],
        name=doc["name"],
        uno=doc["uno"],
        subscription=doc.get("subscription") or {},
        created=ensure_utc(doc["created"]) if doc.get("created") else None,
        updated=ensure_utc(doc["updated"]) if doc.get("updated") else None,
        browser_ids=list(doc.get("browserIDs") or []),
    )


class MongoDBAccessStorage:
    """AccessStorage over MongoDB collections (no denormalized index)."""

    def __init__(
        self,
        mongo_url: str,
        table_names: TableNames | None = None,
        *,
        database_name: str | None = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        max_attempts: int = 3,
        client_factory: Callable[..., Any] = MongoClient,
    ) -> None:
        self._mongo_url = mongo_url
        self._table_names = table_names or TableNames()
        self._database_name = database_name
        self._client_options: dict[str, Any] = {
            "tz_aware": True,
            "serverSelectionTimeoutMS": int(connect_timeout * 1000),
            "connectTimeoutMS": int(connect_timeout * 1000),
            "socketTimeoutMS": int(read_timeout * 1000),
            "retryWrites": max_attempts > 1,
            "retryReads": max_attempts > 1,
        }
        self._client_factory = client_factory
        self._client: Any = None
        self._preferences: Any = None
        self._web_push: Any = None
        self._subscriptions: Any = None

    @property
    def table_names(self) -> TableNames:
        return self._table_names

    # --- lifecycle ---

    def connect(self) -> "MongoDBAccessStorage":
        """Open the client, check the server answers, and ensure indexes. Idempotent."""
        if self._client is not None:
            return self
        with _backend_call("connect"):
            client = self._client_factory(self._mongo_url, **self._client_options)
            try:
                client.admin.command("ping")
                if self._database_name:
                    db = client[self._database_name]
                else:
                    db = client.get_default_database(DEFAULT_DATABASE)
                names = self._table_names
                self._preferences = db[names.user_preferences]
                self._web_push = db[names.web_push]
                self._subscriptions = db[names.subscriptions]
                self._ensure_indexes()
            except PyMongoError:
                client.close()
                raise
        self._client = client
        logger.info(
            "mongodb: connected to database %s (preferences=%s, webpush=%s, subscriptions=%s)",
            db.name,
            names.user_preferences,
            names.web_push,
            names.subscriptions,
        )
        return self

    def disconnect(self) -> None:
        """Close the client. Further operations raise NotConnectedError."""
        if self._client is None:
            return
        self._client.close()
        self._client = None
        self._preferences = self._web_push = self._subscriptions = None
        logger.info("mongodb: disconnected")

    def __enter__(self) -> "MongoDBAccessStorage":
        return self.connect()

    def __exit__(self, *exc: object) -> None:
        self.disconnect()

    def _ensure_indexes(self) -> None:
        self._preferences.create_index([("owner", ASCENDING), ("name", ASCENDING)], unique=True)
        self._web_push.create_index([("owner", ASCENDING), ("browserID", ASCENDING)], unique=True)
        self._subscriptions.create_index([("owner", ASCENDING), ("name", ASCENDING)], unique=True)
        self._subscriptions.create_index([("owner", ASCENDING), ("browserIDs", ASCENDING)])

    def _collection(self, collection: Any) -> Any:
        if self._client is None:
            raise NotConnectedError(type(self).__name__)
        return collection

    # --- user preferences ---

    def store_user_preferences(self, document: UserPreferencesDocument) -> None:
        owner = require_owner(document.owner)
        name = require_real_key(document.name, "name")
        collection = self._collection(self._preferences)
        with _backend_call("store_user_preferences"):
            collection.update_one(
                {"owner": owner, "name": name},
                {"$set": {"preferences": document.preferences, "updated": utc_now()}},
                upsert=True,
            )

    def get_user_preferences(self, owner: str, name: str) -> list[UserPreferencesDocument]:
        require_owner(owner)
        require_lookup_key(name, "name")
        collection = self._collection(self._preferences)
        with _backend_call("get_user_preferences"):
            if is_all(name):
                return [_doc_to_preferences(d) for d in collection.find({"owner": owner}).sort("name")]
            doc = collection.find_one({"owner": owner, "name": name})
        if doc is None:
            raise NotFoundError("user preferences", owner, name)
        return [_doc_to_preferences(doc)]

    def delete_user_preferences(self, owner: str, name: str) -> None:
        require_owner(owner)
        require_lookup_key(name, "name")
        collection = self._collection(self._preferences)
        with _backend_call("delete_user_preferences"):
            if is_all(name):
                result = collection.delete_many({"owner": owner})
                logger.info("mongodb: deleted %d preference set(s) of %s", result.deleted_count, owner)
                return
            result = collection.delete_one({"owner": owner, "name": name})
        if result.deleted_count == 0:
            raise NotFoundError("user preferences", owner, name)

    # --- web push registrations ---

    def find_push_registrations(self, owner: str, browser_id: str) -> list[WebPushUserDocument]:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        collection = self._collection(self._web_push)
        with _backend_call("find_push_registrations"):
            if is_all(browser_id):
                return [_doc_to_web_push(d) for d in collection.find({"owner": owner}).sort("browserID")]
            doc = collection.find_one({"owner": owner, "browserID": browser_id})
        if doc is None:
            raise NotFoundError("web push registration", owner, browser_id)
        return [_doc_to_web_push(doc)]

    def store_web_push_registration(self, document: WebPushUserDocument) -> None:
        owner = require_owner(document.owner)
        browser_id = require_real_key(document.browser_id, "browser_id")
        collection = self._collection(self._web_push)
        now = utc_now()
        fields = _web_push_fields(document)
        fields["updated"] = now
        with _backend_call("store_web_push_registration"):
            collection.update_one(
                {"owner": owner, "browserID": browser_id},
                {"$set": fields, "$setOnInsert": {"created": now}},
                upsert=True,
            )

    def update_web_push_registration(self, document: WebPushUserDocument) -> None:
        owner = require_owner(document.owner)
        browser_id = require_real_key(document.browser_id, "browser_id")
        collection = self._collection(self._web_push)
        fields = _web_push_fields(document)
        fields["updated"] = utc_now()
        with _backend_call("update_web_push_registration"):
            result = collection.update_one({"owner": owner, "browserID": browser_id}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFoundError("web push registration", owner, browser_id)

    def delete_web_push_registrations(self, owner: str, browser_id: str) -> None:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        collection = self._collection(self._web_push)
        with _backend_call("delete_web_push_registrations"):
            if is_all(browser_id):
                result = collection.delete_many({"owner": owner})
                logger.info(
                    "mongodb: deleted %d web push registration(s) of %s", result.deleted_count, owner
                )
                return
            result = collection.delete_one({"owner": owner, "browserID": browser_id})
        if result.deleted_count == 0:
            raise NotFoundError("web push registration", owner, browser_id)

    # --- subscriptions ---

    def get_subscriptions(self, owner: str) -> list[RegisteredSubscriptionDocument]:
        require_owner(owner)
        collection = self._collection(self._subscriptions)
        with _backend_call("get_subscriptions"):
            return [_doc_to_subscription(d) for d in collection.find({"owner": owner}).sort("name")]

    def get_subscription(self, owner: str, name: str) -> RegisteredSubscriptionDocument:
        require_owner(owner)
        require_lookup_key(name, "name")
        if is_all(name):
            raise InvalidKeyError(f"get_subscription needs a real name; use get_subscriptions for {ALL!r}")
        collection = self._collection(self._subscriptions)
        with _backend_call("get_subscription"):
            doc = collection.find_one({"owner": owner, "name": name})
        if doc is None:
            raise NotFoundError("subscription", owner, name)
        return _doc_to_subscription(doc)

    def get_browser_subscriptions(self, owner: str, browser_id: str) -> list[str]:
        require_owner(owner)
        require_lookup_key(browser_id, "browser_id")
        collection = self._collection(self._subscriptions)
        if is_all(browser_id):
            query: dict[str, Any] = {"owner": owner, "browserIDs": {"$exists": True, "$ne": []}}
        else:
            query = {"owner": owner, "browserIDs": browser_id}
        with _backend_call("get_browser_subscriptions"):
            return sorted({d["name"] for d in collection.find(query, {"name": 1})})

    def store_subscription(self, document: RegisterSubscriptionDocument) -> None:
        """Single upsert: canonical fields, created on insert only, browser added to the set."""
        owner = require_owner(document.owner)
        name = require_real_key(document.name, "name")
        browser_id = require_real_key(document.browser_id, "browser_id")
        collection = self._collection(self._subscriptions)
        now = utc_now()
        update = {
            "$set": {"uno": document.uno, "subscription": document.subscription, "updated": now},
            "$setOnInsert": {"created": now},
            "$addToSet": {"browserIDs": browser_id},
        }
        with _backend_call("store_subscription"):
            try:
                collection.update_one({"owner": owner, "name": name}, update, upsert=True)
            except DuplicateKeyError:
                # Lost an upsert race on the unique (owner, name) index; the row now exists.
                logger.info("mongodb: subscription %s/%s inserted concurrently, updating", owner, name)
                collection.update_one({"owner": owner, "name": name}, update)

    def delete_subscription(
        self, owner: str, name: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        require_owner(owner)
        require_lookup_key(name, "name")
        require_lookup_key(browser_id, "browser_id")
        self._collection(self._subscriptions)
        with _backend_call("delete_subscription"):
            if is_all(name):
                return self._delete_from_every_subscription(owner, browser_id)
            if is_all(browser_id):
                return self._delete_cascading(owner, name)
            return self._delete_scoped(owner, name, browser_id)

    def _delete_scoped(
        self, owner: str, name: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        doc = self._subscriptions.find_one_and_update(
            {"owner": owner, "name": name, "browserIDs": browser_id},
            {"$pull": {"browserIDs": browser_id}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("subscription", owner, f"{name}/{browser_id}")
        remains = sorted(doc.get("browserIDs") or [])
        if not remains:
            # $size guard: keep the document if a concurrent store re-added a browser.
            result = self._subscriptions.delete_one(
                {"owner": owner, "name": name, "browserIDs": {"$size": 0}}
            )
            if result.deleted_count == 0:
                current = self._subscriptions.find_one({"owner": owner, "name": name})
                remains = sorted((current or {}).get("browserIDs") or [])
                logger.warning(
                    "mongodb: %s/%s re-linked to %d browser(s) during delete, document kept",
                    owner,
                    name,
                    len(remains),
                )
        return DeletedSubscriptionRemainder(identifier=name, remains=remains)

    def _delete_cascading(self, owner: str, name: str) -> DeletedSubscriptionRemainder:
        result = self._subscriptions.delete_many({"owner": owner, "name": name})
        if result.deleted_count == 0:
            raise NotFoundError("subscription", owner, name)
        # Remainder is read back from the same collection with the same filter;
        # only a concurrent store can make it non-empty.
        remains: set[str] = set()
        for doc in self._subscriptions.find({"owner": owner, "name": name}):
            remains.update(doc.get("browserIDs") or [])
        if remains:
            logger.warning(
                "mongodb: %s/%s deleted but %d browser(s) re-registered concurrently",
                owner,
                name,
                len(remains),
            )
        logger.info("mongodb: deleted subscription %s/%s", owner, name)
        return DeletedSubscriptionRemainder(identifier=name, remains=sorted(remains))

    def _delete_from_every_subscription(
        self, owner: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        if is_all(browser_id):
            self._subscriptions.delete_many({"owner": owner})
            logger.info("mongodb: deleted every subscription of %s", owner)
            return DeletedSubscriptionRemainder(identifier=ALL, remains=[])
        alive: list[str] = []
        names = sorted({d["name"] for d in self._subscriptions.find({"owner": owner, "browserIDs": browser_id})})
        for name in names:
            try:
                result = self._delete_scoped(owner, name, browser_id)
            except NotFoundError:
                continue
            if result.remains:
                alive.append(name)
        return DeletedSubscriptionRemainder(identifier=ALL, remains=alive)
