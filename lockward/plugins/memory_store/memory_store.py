import asyncio
import pathlib
import uuid
from typing import Any, Self, override

from pydantic import BaseModel

from lockward.server.lock_base import utcnow
from lockward.server.store_base import (
    LedgerRow,
    LedgerStoreProtocol,
    ObjectNotFound,
    ObjectStoreProtocol,
    PreconditionFailed,
    RowAlreadyExists,
    RowNotFound,
    StoredObject,
    VersionMismatch,
)


class MemoryStoreInitConfig(BaseModel):
    """Initialization params required to initialize the in-memory stores.

    In-memory stores currently have no initialization params required.
    Their content is lost when the process exits - they only coordinate tasks of a single process.
    """


class MemoryObjectStore(ObjectStoreProtocol):
    def __init__(self) -> None:
        self.objects: dict[str, StoredObject] = {}
        self._guard = asyncio.Lock()

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        MemoryStoreInitConfig.model_validate(raw_config)
        return cls()

    @override
    async def conditional_put(
        self,
        key: str,
        body: bytes,
        *,
        fail_if_exists: bool = True,
        expected_token: str | None = None,
    ) -> str:
        async with self._guard:
            current = self.objects.get(key)
            if fail_if_exists and current is not None:
                raise PreconditionFailed(f"Object {key} already exists")

            if expected_token is not None and (current is None or current.token != expected_token):
                raise PreconditionFailed(f"Object {key} does not match token {expected_token}")

            token = uuid.uuid4().hex
            self.objects[key] = StoredObject(body=body, token=token, created_at=utcnow())
            return token

    @override
    async def conditional_delete(self, key: str, token: str) -> None:
        async with self._guard:
            current = self.objects.get(key)
            if current is None:
                raise ObjectNotFound(f"Object {key} not found")

            if current.token != token:
                raise PreconditionFailed(f"Object {key} does not match token {token}")

            del self.objects[key]

    @override
    async def get(self, key: str) -> StoredObject:
        current = self.objects.get(key)
        if current is None:
            raise ObjectNotFound(f"Object {key} not found")

        return current

    @override
    async def delete(self, key: str) -> None:
        async with self._guard:
            if self.objects.pop(key, None) is None:
                raise ObjectNotFound(f"Object {key} not found")


class MemoryLedgerStore(LedgerStoreProtocol):
    def __init__(self) -> None:
        self.rows: dict[str, LedgerRow] = {}
        self._guard = asyncio.Lock()

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        MemoryStoreInitConfig.model_validate(raw_config)
        return cls()

    @override
    async def insert_if_absent(self, row_key: str, fields: dict[str, str]) -> str:
        async with self._guard:
            if row_key in self.rows:
                raise RowAlreadyExists(f"Row {row_key} already exists")

            version = uuid.uuid4().hex
            self.rows[row_key] = LedgerRow(fields=dict(fields), version=version)
            return version

    @override
    async def delete_if_version(self, row_key: str, version: str) -> None:
        async with self._guard:
            current = self.rows.get(row_key)
            if current is None:
                raise RowNotFound(f"Row {row_key} not found")

            if current.version != version:
                raise VersionMismatch(f"Row {row_key} is at version {current.version}, not {version}")

            del self.rows[row_key]

    @override
    async def get(self, row_key: str) -> LedgerRow:
        current = self.rows.get(row_key)
        if current is None:
            raise RowNotFound(f"Row {row_key} not found")

        return current

    @override
    async def delete(self, row_key: str) -> None:
        async with self._guard:
            if self.rows.pop(row_key, None) is None:
                raise RowNotFound(f"Row {row_key} not found")

    @override
    async def list_rows(self) -> list[tuple[str, LedgerRow]]:
        return sorted(self.rows.items(), key=lambda item: item[0])
