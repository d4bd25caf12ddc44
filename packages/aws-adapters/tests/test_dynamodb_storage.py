"""Tests for DynamoDBAccessStorage: canonical table + subscription-by-browser index."""

import boto3
import pytest
from afpdeck_shared import (
    ALL,
    BackendError,
    InvalidKeyError,
    NotConnectedError,
    NotFoundError,
    RegisterSubscriptionDocument,
    TableNames,
    UserPreferencesDocument,
)
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from afpdeck_aws_adapters import DynamoDBAccessStorage, index_sort_key


def _register(owner="alice", name="market-news", browser_id="B1", uno="U1", **subscription):
    return RegisterSubscriptionDocument(
        owner=owner,
        name=name,
        uno=uno,
        browser_id=browser_id,
        subscription=subscription or {"query": {"name": "product", "in": ["news"]}},
    )


def _index_rows(index_table, name):
    return index_table.query(KeyConditionExpression=Key("name").eq(name))["Items"]


class TestLifecycle:
    """connect / disconnect semantics."""

    def test_operations_before_connect_raise_not_connected(self, dynamodb_tables):
        storage = DynamoDBAccessStorage(dynamodb_tables, region_name="us-east-1")
        with pytest.raises(NotConnectedError):
            storage.get_subscriptions("alice")
        with pytest.raises(NotConnectedError):
            storage.store_user_preferences(
                UserPreferencesDocument(owner="alice", name="deck", preferences={})
            )

    def test_operations_after_disconnect_raise_not_connected(self, dynamodb_tables):
        storage = DynamoDBAccessStorage(dynamodb_tables, region_name="us-east-1").connect()
        storage.disconnect()
        with pytest.raises(NotConnectedError):
            storage.find_push_registrations("alice", ALL)

    def test_connect_is_idempotent(self, dynamodb_tables):
        storage = DynamoDBAccessStorage(dynamodb_tables, region_name="us-east-1")
        assert storage.connect() is storage
        assert storage.connect() is storage
        storage.disconnect()
        storage.disconnect()

    def test_missing_table_surfaces_backend_error(self, moto_aws):
        storage = DynamoDBAccessStorage(TableNames(), region_name="us-east-1").connect()
        with pytest.raises(BackendError) as exc_info:
            storage.get_user_preferences("alice", "deck")
        assert isinstance(exc_info.value.cause, ClientError)
        assert isinstance(exc_info.value.__cause__, ClientError)
        assert exc_info.value.kind == "backend"


class TestStoreSubscriptionIndex:
    """Dual write: canonical record plus one index row per browser."""

    def test_first_store_writes_canonical_and_index(self, storage, dynamodb_tables, index_table):
        storage.store_subscription(_register())
        canonical = boto3.resource("dynamodb", region_name="us-east-1").Table(
            dynamodb_tables.subscriptions
        )
        item = canonical.get_item(Key={"owner": "alice", "name": "market-news"})["Item"]
        assert item["uno"] == "U1"
        assert item["created"] == item["updated"]
        assert "browserID" not in item
        rows = _index_rows(index_table, "market-news")
        assert rows == [
            {
                "name": "market-news",
                "ownerBrowserID": index_sort_key("alice", "B1"),
                "owner": "alice",
                "browserID": "B1",
            }
        ]

    def test_repeated_store_keeps_single_index_row(self, storage, index_table):
        for _ in range(5):
            storage.store_subscription(_register())
        assert len(_index_rows(index_table, "market-news")) == 1

    def test_distinct_browsers_get_distinct_rows(self, storage, index_table):
        for browser in ["B2", "B1", "B3", "B1", "B2"]:
            storage.store_subscription(_register(browser_id=browser))
        rows = _index_rows(index_table, "market-news")
        assert sorted(r["browserID"] for r in rows) == ["B1", "B2", "B3"]
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B1", "B2", "B3"]

    def test_index_repair_after_missing_row(self, storage, index_table):
        """A canonical record whose index row was lost is repaired by re-running the store."""
        storage.store_subscription(_register())
        index_table.delete_item(
            Key={"name": "market-news", "ownerBrowserID": index_sort_key("alice", "B1")}
        )
        assert storage.get_subscription("alice", "market-news").browser_ids == []

        storage.store_subscription(_register())
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B1"]
        assert len(_index_rows(index_table, "market-news")) == 1

    def test_same_name_same_browser_different_owners_do_not_collide(self, storage, index_table):
        storage.store_subscription(_register(owner="alice"))
        storage.store_subscription(_register(owner="bob", uno="U2"))
        assert len(_index_rows(index_table, "market-news")) == 2
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B1"]
        assert storage.get_subscription("bob", "market-news").browser_ids == ["B1"]

        storage.delete_subscription("bob", "market-news", ALL)
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B1"]

    def test_owner_prefix_does_not_leak(self, storage):
        storage.store_subscription(_register(owner="alice"))
        storage.store_subscription(_register(owner="alice#x", browser_id="B9"))
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B1"]
        assert storage.get_subscription("alice#x", "market-news").browser_ids == ["B9"]

    def test_store_rejects_sentinel_keys(self, storage):
        with pytest.raises(InvalidKeyError):
            storage.store_subscription(_register(name=ALL))
        with pytest.raises(InvalidKeyError):
            storage.store_subscription(_register(browser_id=ALL))

    def test_concurrent_insert_falls_back_to_update(self, storage, dynamodb_tables, monkeypatch):
        """The conditional put losing to a concurrent insert turns into an update."""
        canonical = storage._table("subscriptions")
        real_get_item = canonical.get_item

        def stale_get_item(**kwargs):
            # Simulate the other writer inserting between our read and our put.
            result = real_get_item(**kwargs)
            canonical.put_item(
                Item={
                    "owner": "alice",
                    "name": "market-news",
                    "uno": "U0",
                    "subscription": "{}",
                    "created": 1000,
                    "updated": 1000,
                }
            )
            return {k: v for k, v in result.items() if k != "Item"}

        monkeypatch.setattr(canonical, "get_item", stale_get_item)
        storage.store_subscription(_register(uno="U1"))
        monkeypatch.setattr(canonical, "get_item", real_get_item)

        got = storage.get_subscription("alice", "market-news")
        assert got.uno == "U1"
        assert int(got.created.timestamp() * 1000) == 1000
        assert got.browser_ids == ["B1"]


class TestDeleteSubscription:
    """Scoped and cascading deletes keep the index consistent with canonical records."""

    def test_scoped_delete_of_last_browser_removes_canonical(self, storage, index_table):
        storage.store_subscription(_register())
        result = storage.delete_subscription("alice", "market-news", "B1")
        assert result.identifier == "market-news"
        assert result.remains == []
        assert _index_rows(index_table, "market-news") == []
        with pytest.raises(NotFoundError):
            storage.get_subscription("alice", "market-news")

    def test_scoped_delete_keeps_canonical_while_other_browsers_remain(self, storage, index_table):
        storage.store_subscription(_register(browser_id="B1"))
        storage.store_subscription(_register(browser_id="B2"))
        result = storage.delete_subscription("alice", "market-news", "B1")
        assert result.remains == ["B2"]
        assert [r["browserID"] for r in _index_rows(index_table, "market-news")] == ["B2"]
        assert storage.get_subscription("alice", "market-news").browser_ids == ["B2"]

    def test_scoped_delete_of_canonical_without_index_rows(self, storage, index_table):
        storage.store_subscription(_register())
        index_table.delete_item(
            Key={"name": "market-news", "ownerBrowserID": index_sort_key("alice", "B1")}
        )
        result = storage.delete_subscription("alice", "market-news", "B1")
        assert result.remains == []
        with pytest.raises(NotFoundError):
            storage.get_subscription("alice", "market-news")

    def test_scoped_delete_of_unlinked_browser_keeps_index(self, storage, index_table):
        storage.store_subscription(_register(browser_id="B1"))
        with pytest.raises(NotFoundError):
            storage.delete_subscription("alice", "market-news", "B9")
        assert [r["browserID"] for r in _index_rows(index_table, "market-news")] == ["B1"]

    def test_scoped_delete_restores_canonical_relinked_concurrently(
        self, storage, index_table, monkeypatch
    ):
        """A browser linked between the remaining-rows read and the canonical delete wins."""
        storage.store_subscription(_register(browser_id="B1", uno="U1"))
        canonical = storage._table("subscriptions")
        real_delete_item = canonical.delete_item

        def delete_then_relink(**kwargs):
            result = real_delete_item(**kwargs)
            # The concurrent store wrote its canonical update first, its index row now.
            index_table.put_item(
                Item={
                    "name": "market-news",
                    "ownerBrowserID": index_sort_key("alice", "B2"),
                    "owner": "alice",
                    "browserID": "B2",
                }
            )
            return result

        monkeypatch.setattr(canonical, "delete_item", delete_then_relink)
        result = storage.delete_subscription("alice", "market-news", "B1")
        monkeypatch.setattr(canonical, "delete_item", real_delete_item)

        assert result.remains == ["B2"]
        got = storage.get_subscription("alice", "market-news")
        assert got.uno == "U1"
        assert got.browser_ids == ["B2"]

    def test_cascading_delete_removes_every_index_row(self, storage, index_table):
        for browser in ["B1", "B2", "B3"]:
            storage.store_subscription(_register(browser_id=browser))
        storage.store_subscription(_register(name="sports", browser_id="B1"))
        result = storage.delete_subscription("alice", "market-news", ALL)
        assert result.identifier == "market-news"
        # Remainder is re-read from the index after the delete: nothing left.
        assert result.remains == []
        assert _index_rows(index_table, "market-news") == []
        assert [s.name for s in storage.get_subscriptions("alice")] == ["sports"]

    def test_delete_missing_raises_not_found(self, storage):
        with pytest.raises(NotFoundError):
            storage.delete_subscription("alice", "nonexistent", "B1")
        with pytest.raises(NotFoundError):
            storage.delete_subscription("alice", "nonexistent", ALL)

    def test_delete_browser_from_every_subscription(self, storage, index_table):
        storage.store_subscription(_register(name="market-news", browser_id="B1"))
        storage.store_subscription(_register(name="market-news", browser_id="B2"))
        storage.store_subscription(_register(name="sports", browser_id="B1"))
        result = storage.delete_subscription("alice", ALL, "B1")
        assert result.identifier == ALL
        assert result.remains == ["market-news"]
        assert storage.get_browser_subscriptions("alice", "B1") == []
        assert [s.name for s in storage.get_subscriptions("alice")] == ["market-news"]

    def test_delete_all_subscriptions_of_owner(self, storage, index_table):
        storage.store_subscription(_register(name="market-news", browser_id="B1"))
        storage.store_subscription(_register(name="sports", browser_id="B2"))
        storage.store_subscription(_register(owner="bob", name="sports", browser_id="B2"))
        result = storage.delete_subscription("alice", ALL, ALL)
        assert result.remains == []
        assert storage.get_subscriptions("alice") == []
        assert storage.get_browser_subscriptions("alice", ALL) == []
        assert [s.name for s in storage.get_subscriptions("bob")] == ["sports"]
        assert len(_index_rows(index_table, "sports")) == 1


class TestBrowserSubscriptions:
    """owner-browserID GSI lookups."""

    def test_names_for_one_browser(self, storage):
        storage.store_subscription(_register(name="market-news", browser_id="B1"))
        storage.store_subscription(_register(name="sports", browser_id="B1"))
        storage.store_subscription(_register(name="weather", browser_id="B2"))
        assert storage.get_browser_subscriptions("alice", "B1") == ["market-news", "sports"]
        assert storage.get_browser_subscriptions("alice", ALL) == [
            "market-news",
            "sports",
            "weather",
        ]
        assert storage.get_browser_subscriptions("bob", "B1") == []
