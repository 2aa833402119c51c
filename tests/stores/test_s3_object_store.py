import io
from datetime import datetime, timezone

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from lockward.plugins.s3_object_store.s3_object_store import S3ObjectStore
from lockward.server.store_base import ObjectNotFound, PreconditionFailed

pytestmark = pytest.mark.anyio

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    return boto3.client(
        "s3",
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
    return S3ObjectStore(client, bucket="locks-bucket", prefix="team/")


def add_get_object(stubber, body: bytes, etag: str):
    stubber.add_response(
        "get_object",
        {
            "Body": StreamingBody(io.BytesIO(body), len(body)),
            "ETag": etag,
            "LastModified": CREATED,
        },
        {"Bucket": "locks-bucket", "Key": "team/locks/envA.lock"},
    )


async def test_conditional_put_uses_if_none_match(store, stubber):
    stubber.add_response(
        "put_object",
        {"ETag": '"t1"'},
        {
            "Bucket": "locks-bucket",
            "Key": "team/locks/envA.lock",
            "Body": b"{}",
            "ContentType": "application/json",
            "IfNoneMatch": "*",
        },
    )

    assert await store.conditional_put("locks/envA.lock", b"{}") == '"t1"'


async def test_conditional_put_precondition_failed(store, stubber):
    stubber.add_client_error("put_object", service_error_code="PreconditionFailed", http_status_code=412)

    with pytest.raises(PreconditionFailed):
        await store.conditional_put("locks/envA.lock", b"{}")


async def test_get_translates_missing_key(store, stubber):
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)

    with pytest.raises(ObjectNotFound):
        await store.get("locks/envA.lock")


async def test_get_returns_metadata(store, stubber):
    add_get_object(stubber, b'{"owner": "hostX"}', '"t1"')

    stored = await store.get("locks/envA.lock")

    assert stored.body == b'{"owner": "hostX"}'
    assert stored.token == '"t1"'
    assert stored.created_at == CREATED


async def test_conditional_delete_token_mismatch(store, stubber):
    add_get_object(stubber, b"{}", '"t2"')
    stubber.add_client_error("delete_object", service_error_code="PreconditionFailed", http_status_code=412)

    with pytest.raises(PreconditionFailed):
        await store.conditional_delete("locks/envA.lock", '"t1"')


async def test_conditional_delete_uses_if_match(store, stubber):
    add_get_object(stubber, b"{}", '"t1"')
    stubber.add_response(
        "delete_object",
        {},
        {"Bucket": "locks-bucket", "Key": "team/locks/envA.lock", "IfMatch": '"t1"'},
    )

    await store.conditional_delete("locks/envA.lock", '"t1"')
