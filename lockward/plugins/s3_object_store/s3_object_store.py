import pathlib
from typing import Any, Optional, Self, override

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel

from lockward.server.store_base import (
    ObjectNotFound,
    ObjectStoreProtocol,
    PreconditionFailed,
    StoredObject,
)

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


class S3ObjectStoreInitConfig(BaseModel):
    """Initialization params required to initialize the S3 object store.

    The bucket must support conditional writes (`If-None-Match` / `If-Match`).

    Attributes:
        bucket: The bucket that holds the lock markers.
        prefix: Prefix prepended to every key.
        region_name: AWS region of the bucket.
        endpoint_url: Custom endpoint - for S3 compatible services.
        profile_name: AWS profile to load credentials from.
    """

    bucket: str
    prefix: str = ""
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    profile_name: Optional[str] = None


class S3ObjectStore(ObjectStoreProtocol):
    def __init__(self, client: Any, bucket: str, prefix: str = "") -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = S3ObjectStoreInitConfig.model_validate(raw_config)
        session = boto3.session.Session(profile_name=result.profile_name, region_name=result.region_name)
        client = session.client("s3", endpoint_url=result.endpoint_url)
        return cls(client, bucket=result.bucket, prefix=result.prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @override
    async def conditional_put(
        self,
        key: str,
        body: bytes,
        *,
        fail_if_exists: bool = True,
        expected_token: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self._key(key),
            "Body": body,
            "ContentType": "application/json",
        }
        if fail_if_exists:
            kwargs["IfNoneMatch"] = "*"
        if expected_token is not None:
            kwargs["IfMatch"] = expected_token

        try:
            response = self.client.put_object(**kwargs)

        except ClientError as e:
            if _error_code(e) in PRECONDITION_CODES:
                raise PreconditionFailed(f"Object {key} precondition failed") from e
            raise

        return response["ETag"]

    @override
    async def conditional_delete(self, key: str, token: str) -> None:
        # a conditional delete of a missing key fails the precondition instead of reporting 404
        await self.get(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(key), IfMatch=token)

        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object {key} not found") from e
            if code in PRECONDITION_CODES:
                raise PreconditionFailed(f"Object {key} does not match token {token}") from e
            raise

    @override
    async def get(self, key: str) -> StoredObject:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))

        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object {key} not found") from e
            raise

        return StoredObject(
            body=response["Body"].read(),
            token=response["ETag"],
            created_at=response["LastModified"],
        )

    @override
    async def delete(self, key: str) -> None:
        # S3 deletes succeed on missing keys
        await self.get(key)
        self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
