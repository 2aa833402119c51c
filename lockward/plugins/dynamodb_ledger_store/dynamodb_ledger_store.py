import json
import pathlib
import uuid
from typing import Any, Optional, Self, override

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel

from lockward.server.store_base import (
    LedgerRow,
    LedgerStoreProtocol,
    RowAlreadyExists,
    RowNotFound,
    VersionMismatch,
)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


class DynamoDBLedgerStoreInitConfig(BaseModel):
    """Initialization params required to initialize the DynamoDB ledger store.

    The table must have a string partition key named after `key_attribute`.

    Attributes:
        table: Name of the DynamoDB table.
        key_attribute: Name of the partition key attribute.
        region_name: AWS region of the table.
        endpoint_url: Custom endpoint - for local DynamoDB.
        profile_name: AWS profile to load credentials from.
    """

    table: str
    key_attribute: str = "lock_id"
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    profile_name: Optional[str] = None


class DynamoDBLedgerStore(LedgerStoreProtocol):
    def __init__(self, client: Any, table: str, key_attribute: str = "lock_id") -> None:
        self.client = client
        self.table = table
        self.key_attribute = key_attribute

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = DynamoDBLedgerStoreInitConfig.model_validate(raw_config)
        session = boto3.session.Session(profile_name=result.profile_name, region_name=result.region_name)
        client = session.client("dynamodb", endpoint_url=result.endpoint_url)
        return cls(client, table=result.table, key_attribute=result.key_attribute)

    def _key(self, row_key: str) -> dict[str, Any]:
        return {self.key_attribute: {"S": row_key}}

    def _to_row(self, item: dict[str, Any]) -> LedgerRow:
        return LedgerRow(fields=json.loads(item["fields"]["S"]), version=item["version"]["S"])

    @override
    async def insert_if_absent(self, row_key: str, fields: dict[str, str]) -> str:
        version = uuid.uuid4().hex
        try:
            self.client.put_item(
                TableName=self.table,
                Item={
                    **self._key(row_key),
                    "fields": {"S": json.dumps(fields)},
                    "version": {"S": version},
                },
                ConditionExpression="attribute_not_exists(#key)",
                ExpressionAttributeNames={"#key": self.key_attribute},
            )

        except ClientError as e:
            if e.response["Error"]["Code"] == CONDITIONAL_CHECK_FAILED:
                raise RowAlreadyExists(f"Row {row_key} already exists") from e
            raise

        return version

    @override
    async def delete_if_version(self, row_key: str, version: str) -> None:
        try:
            self.client.delete_item(
                TableName=self.table,
                Key=self._key(row_key),
                ConditionExpression="attribute_exists(#key) AND #version = :version",
                ExpressionAttributeNames={"#key": self.key_attribute, "#version": "version"},
                ExpressionAttributeValues={":version": {"S": version}},
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )

        except ClientError as e:
            if e.response["Error"]["Code"] != CONDITIONAL_CHECK_FAILED:
                raise

            if "Item" not in e.response:
                raise RowNotFound(f"Row {row_key} not found") from e

            raise VersionMismatch(f"Row {row_key} does not match version {version}") from e

    @override
    async def get(self, row_key: str) -> LedgerRow:
        response = self.client.get_item(TableName=self.table, Key=self._key(row_key), ConsistentRead=True)
        if "Item" not in response:
            raise RowNotFound(f"Row {row_key} not found")

        return self._to_row(response["Item"])

    @override
    async def delete(self, row_key: str) -> None:
        try:
            self.client.delete_item(
                TableName=self.table,
                Key=self._key(row_key),
                ConditionExpression="attribute_exists(#key)",
                ExpressionAttributeNames={"#key": self.key_attribute},
            )

        except ClientError as e:
            if e.response["Error"]["Code"] == CONDITIONAL_CHECK_FAILED:
                raise RowNotFound(f"Row {row_key} not found") from e
            raise

    @override
    async def list_rows(self) -> list[tuple[str, LedgerRow]]:
        rows: list[tuple[str, LedgerRow]] = []
        paginator = self.client.get_paginator("scan")
        for page in paginator.paginate(TableName=self.table, ConsistentRead=True):
            for item in page["Items"]:
                rows.append((item[self.key_attribute]["S"], self._to_row(item)))

        return sorted(rows, key=lambda row: row[0])
