"""Pytest fixtures for mongo-adapters tests (mongomock-backed collections)."""

import mongomock
import pytest
from afpdeck_shared import TableNames

from afpdeck_mongo_adapters import MongoDBAccessStorage

TEST_DATABASE = "afpdeck-test"
TEST_URL = f"mongodb://localhost:27017/{TEST_DATABASE}"


@pytest.fixture
def mongo_client():
    """In-memory client; the test database is dropped afterwards."""
    client = mongomock.MongoClient()
    yield client
    client.drop_database(TEST_DATABASE)


@pytest.fixture
def table_names() -> TableNames:
    return TableNames(
        user_preferences="test-preferences",
        web_push="test-webpush",
        subscriptions="test-subscriptions",
    )


@pytest.fixture
def make_storage(mongo_client, table_names):
    """Factory for unconnected MongoDBAccessStorage instances sharing mongo_client."""

    def _make() -> MongoDBAccessStorage:
        return MongoDBAccessStorage(
            TEST_URL,
            table_names,
            database_name=TEST_DATABASE,
            client_factory=lambda url, **options: mongo_client,
        )

    return _make


@pytest.fixture
def storage(make_storage):
    """Connected MongoDBAccessStorage; disconnected after the test."""
    with make_storage() as s:
        yield s


@pytest.fixture
def subscriptions_collection(mongo_client, table_names):
    return mongo_client[TEST_DATABASE][table_names.subscriptions]
