"""
Pytest fixtures for the backend factory and the storage contract suite.

The contract suite runs against both backends: DynamoDB through moto and
MongoDB through mongomock, each built by create_access_storage().
"""

import os

import boto3
import mongomock
import pytest
from afpdeck_aws_adapters import create_tables
from moto import mock_aws

from afpdeck_adapters import StorageSettings, create_access_storage

STORAGE_ENV_VARS = (
    "USE_MONGODB",
    "MONGODB_URL",
    "MONGODB_DATABASE",
    "USERPREFS_TABLENAME",
    "WEBPUSH_TABLE_NAME",
    "SUBSCRIPTIONS_TABLE_NAME",
    "BROWSERID_TABLE_NAME",
    "AWS_REGION",
    "AWS_ENDPOINT_URL",
    "STORAGE_CONNECT_TIMEOUT",
    "STORAGE_READ_TIMEOUT",
    "STORAGE_MAX_ATTEMPTS",
    "DEBUG",
    "AFPDECK_ENV_FILE",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every storage env var so settings fall back to defaults."""
    for name in STORAGE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set fake AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def moto_aws(aws_credentials):
    with mock_aws():
        yield


def _dynamodb_settings() -> StorageSettings:
    return StorageSettings(
        use_mongodb=False,
        aws_region="us-east-1",
        userprefs_tablename="contract-preferences",
        webpush_table_name="contract-webpush",
        subscriptions_table_name="contract-subscriptions",
        browserid_table_name="contract-browserid",
    )


def _mongodb_settings() -> StorageSettings:
    return StorageSettings(
        use_mongodb=True,
        mongodb_url="mongodb://localhost:27017/contract",
        mongodb_database="contract",
        userprefs_tablename="contract-preferences",
        webpush_table_name="contract-webpush",
        subscriptions_table_name="contract-subscriptions",
    )


@pytest.fixture(params=["dynamodb", "mongodb"])
def access_storage(request, clean_env, aws_credentials):
    """Connected AccessStorage for each backend, built through the factory."""
    if request.param == "dynamodb":
        with mock_aws():
            settings = _dynamodb_settings()
            create_tables(boto3.client("dynamodb", region_name="us-east-1"), settings.table_names)
            storage = create_access_storage(settings)
            yield storage
            storage.disconnect()
    else:
        client = mongomock.MongoClient()
        storage = create_access_storage(
            _mongodb_settings(), client_factory=lambda url, **options: client
        )
        yield storage
        storage.disconnect()
        client.drop_database("contract")


@pytest.fixture(autouse=True)
def _restore_environ():
    """Tests here mutate os.environ through settings helpers; restore it afterwards."""
    saved = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(saved)
