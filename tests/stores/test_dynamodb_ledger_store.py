import json

import boto3
import pytest
from botocore.stub import ANY, Stubber

from lockward.plugins.dynamodb_ledger_store.dynamodb_ledger_store import DynamoDBLedgerStore
from lockward.server.store_base import RowAlreadyExists, RowNotFound, VersionMismatch

pytestmark = pytest.mark.anyio

FIELDS = {"owner": "hostX", "acquired_at": "2024-01-01T00:00:00Z"}


@pytest.fixture
def client():
    return boto3.client(
        "dynamodb",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubber(client):
    with Stubber(client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def store(client):
    return DynamoDBLedgerStore(client, table="locks")


def item(version: str) -> dict:
    return {
        "lock_id": {"S": "envA"},
        "fields": {"S": json.dumps(FIELDS)},
        "version": {"S": version},
    }


async def test_insert_if_absent(store, stubber):
    stubber.add_response(
        "put_item",
        {},
        {
            "TableName": "locks",
            "Item": ANY,
            "ConditionExpression": "attribute_not_exists(#key)",
            "ExpressionAttributeNames": {"#key": "lock_id"},
        },
    )

    version = await store.insert_if_absent("envA", FIELDS)
    assert len(version) == 32


async def test_insert_existing_row(store, stubber):
    stubber.add_client_error("put_item", service_error_code="ConditionalCheckFailedException", http_status_code=400)

    with pytest.raises(RowAlreadyExists):
        await store.insert_if_absent("envA", FIELDS)


async def test_delete_if_version_mismatch(store, stubber):
    stubber.add_client_error(
        "delete_item",
        service_error_code="ConditionalCheckFailedException",
        http_status_code=400,
        modeled_fields={"Item": item("other")},
    )

    with pytest.raises(VersionMismatch):
        await store.delete_if_version("envA", "v1")


async def test_delete_if_version_missing_row(store, stubber):
    stubber.add_client_error(
        "delete_item",
        service_error_code="ConditionalCheckFailedException",
        http_status_code=400,
    )

    with pytest.raises(RowNotFound):
        await store.delete_if_version("envA", "v1")


async def test_get_row(store, stubber):
    stubber.add_response(
        "get_item",
        {"Item": item("v1")},
        {"TableName": "locks", "Key": {"lock_id": {"S": "envA"}}, "ConsistentRead": True},
    )

    row = await store.get("envA")
    assert row.version == "v1"
    assert row.fields == FIELDS


async def test_get_missing_row(store, stubber):
    stubber.add_response("get_item", {}, {"TableName": "locks", "Key": {"lock_id": {"S": "envA"}}, "ConsistentRead": True})

    with pytest.raises(RowNotFound):
        await store.get("envA")
