"""Pytest fixtures for aws-adapters tests (moto-backed DynamoDB tables)."""

import os

import boto3
import pytest
from afpdeck_shared import TableNames
from moto import mock_aws

from afpdeck_aws_adapters import DynamoDBAccessStorage, create_tables


@pytest.fixture(scope="function")
def aws_credentials():
    """Set fake AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def moto_aws(aws_credentials):
    """Enable moto mock for DynamoDB."""
    with mock_aws():
        yield


@pytest.fixture
def table_names() -> TableNames:
    return TableNames(
        user_preferences="test-preferences",
        web_push="test-webpush",
        subscriptions="test-subscriptions",
        subscription_by_browser="test-browserid",
    )


@pytest.fixture
def dynamodb_tables(moto_aws, table_names):
    """Create the four tables with the production key schemas."""
    client = boto3.client("dynamodb", region_name="us-east-1")
    create_tables(client, table_names)
    return table_names


@pytest.fixture
def storage(dynamodb_tables):
    """Connected DynamoDBAccessStorage; disconnected after the test."""
    with DynamoDBAccessStorage(dynamodb_tables, region_name="us-east-1") as s:
        yield s


@pytest.fixture
def index_table(dynamodb_tables):
    """Raw boto3 handle on the subscription-by-browser table for row-level asserts."""
    return boto3.resource("dynamodb", region_name="us-east-1").Table(
        dynamodb_tables.subscription_by_browser
    )
