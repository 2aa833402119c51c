import json
import pathlib
import sqlite3
import uuid
from contextlib import closing, contextmanager
from typing import Any, Iterator, Optional, Self, override

from pydantic import BaseModel

from lockward.server.store_base import (
    LedgerRow,
    LedgerStoreProtocol,
    RowAlreadyExists,
    RowNotFound,
    VersionMismatch,
)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS {table} (
    row_key TEXT PRIMARY KEY,
    fields TEXT NOT NULL,
    version TEXT NOT NULL
)
"""


class SqliteLedgerStoreInitConfig(BaseModel):
    """Initialization params required to initialize the SQLite ledger store.

    Attributes:
        path: Location of the database file - defaults to `<workdir>/ledger.sqlite3`.
        table: Name of the ledger table.
        timeout: Seconds to wait for a busy database before failing.
    """

    path: Optional[pathlib.Path] = None
    table: str = "locks"
    timeout: float = 5.0


class SqliteLedgerStore(LedgerStoreProtocol):
    def __init__(self, path: pathlib.Path, table: str = "locks", timeout: float = 5.0) -> None:
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table}")

        self.path = path.expanduser()
        self.table = table
        self.timeout = timeout

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(SCHEMA.format(table=self.table))

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = SqliteLedgerStoreInitConfig.model_validate(raw_config)
        return cls(
            path=result.path or (workdir / "ledger.sqlite3"),
            table=result.table,
            timeout=result.timeout,
        )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self.path, timeout=self.timeout)) as conn:
            with conn:
                yield conn

    @override
    async def insert_if_absent(self, row_key: str, fields: dict[str, str]) -> str:
        version = uuid.uuid4().hex
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {self.table} (row_key, fields, version) VALUES (?, ?, ?)",
                    (row_key, json.dumps(fields), version),
                )

        except sqlite3.IntegrityError as e:
            raise RowAlreadyExists(f"Row {row_key} already exists") from e

        return version

    @override
    async def delete_if_version(self, row_key: str, version: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE row_key = ? AND version = ?",
                (row_key, version),
            )
            if cursor.rowcount == 1:
                return

            current = conn.execute(f"SELECT version FROM {self.table} WHERE row_key = ?", (row_key,)).fetchone()

        if current is None:
            raise RowNotFound(f"Row {row_key} not found")

        raise VersionMismatch(f"Row {row_key} is at version {current[0]}, not {version}")

    @override
    async def get(self, row_key: str) -> LedgerRow:
        with self._connect() as conn:
            row = conn.execute(f"SELECT fields, version FROM {self.table} WHERE row_key = ?", (row_key,)).fetchone()

        if row is None:
            raise RowNotFound(f"Row {row_key} not found")

        return LedgerRow(fields=json.loads(row[0]), version=row[1])

    @override
    async def delete(self, row_key: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE row_key = ?", (row_key,))

        if cursor.rowcount == 0:
            raise RowNotFound(f"Row {row_key} not found")

    @override
    async def list_rows(self) -> list[tuple[str, LedgerRow]]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT row_key, fields, version FROM {self.table} ORDER BY row_key").fetchall()

        return [(row_key, LedgerRow(fields=json.loads(fields), version=version)) for row_key, fields, version in rows]
