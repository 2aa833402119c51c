import pathlib
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Protocol, Self, runtime_checkable

from lockward.server.lock_base import InvalidIdentity, LockError, LockIdentity, TransientLockError

STORE_PROVIDERS_ENTRYPOINT = "lockward.plugins.store"


class StoreError(Exception):
    """Base class for errors raised by store backends."""


class PreconditionFailed(StoreError):
    pass


class ObjectNotFound(StoreError):
    pass


class RowAlreadyExists(StoreError):
    pass


class VersionMismatch(StoreError):
    pass


class RowNotFound(StoreError):
    pass


class InvalidKey(StoreError, ValueError):
    pass


@dataclass(frozen=True)
class StoredObject:
    body: bytes
    token: str
    created_at: datetime


@dataclass(frozen=True)
class LedgerRow:
    fields: dict[str, str]
    version: str


@runtime_checkable
class StoreProtocol(Protocol):
    """Protocol shared by every store backend.

    Every store backend must implement `from_config` - and register to the `lockward.plugins.store` entrypoint.

    Example:
        Register a store backend - in your `pyproject.toml`:
        ```toml
        [project.entry-points."lockward.plugins.store"]
        local = "lockward.plugins.local_object_store.local_object_store:LocalObjectStore"
        ```
    """

    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        """Create an instance of the store from the configuration.

        Args:
            raw_config: The raw configuration propagated from the store config.
            workdir: The data directory of lockward - located at `~/.local/share/lockward` -
                can be used to manage state of the store.
        """
        ...


@runtime_checkable
class ObjectStoreProtocol(StoreProtocol, Protocol):
    """Protocol for key/object stores with conditional writes.

    Conditional operations must be atomic on the backend - the lock strategy built on top of
    them never falls back to read-then-write.
    """

    async def conditional_put(
        self,
        key: str,
        body: bytes,
        *,
        fail_if_exists: bool = True,
        expected_token: str | None = None,
    ) -> str:
        """Write the object only if the precondition holds.

        Args:
            key: The object key.
            body: The object content.
            fail_if_exists: Reject the write if any object exists at `key`.
            expected_token: Reject the write unless the current object has this token.

        Returns:
            The precondition token of the written object version.

        Raises:
            PreconditionFailed: the precondition did not hold.
        """
        ...

    async def conditional_delete(self, key: str, token: str) -> None:
        """Delete the object only if its current token is `token`.

        Raises:
            PreconditionFailed: the object has a different token.
            ObjectNotFound: no object exists at `key`.
        """
        ...

    async def get(self, key: str) -> StoredObject:
        """Read the object and its metadata.

        Raises:
            ObjectNotFound: no object exists at `key`.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete the object unconditionally.

        Raises:
            ObjectNotFound: no object exists at `key`.
        """
        ...


@runtime_checkable
class LedgerStoreProtocol(StoreProtocol, Protocol):
    """Protocol for table-like stores with a version column per row."""

    async def insert_if_absent(self, row_key: str, fields: dict[str, str]) -> str:
        """Insert the row only if no row with `row_key` exists.

        Returns:
            The version of the inserted row.

        Raises:
            RowAlreadyExists: a row with `row_key` already exists.
        """
        ...

    async def delete_if_version(self, row_key: str, version: str) -> None:
        """Delete the row only if its version is `version`.

        Raises:
            VersionMismatch: the row has a different version.
            RowNotFound: no row with `row_key` exists.
        """
        ...

    async def get(self, row_key: str) -> LedgerRow:
        """Read a single row.

        Raises:
            RowNotFound: no row with `row_key` exists.
        """
        ...

    async def delete(self, row_key: str) -> None:
        """Delete the row unconditionally.

        Raises:
            RowNotFound: no row with `row_key` exists.
        """
        ...

    async def list_rows(self) -> list[tuple[str, LedgerRow]]:
        """List every row in the ledger."""
        ...


@contextmanager
def classify_backend_errors(identity: LockIdentity) -> Iterator[None]:
    """Treat any unexpected backend failure as transient.

    Store exceptions with a lock meaning must be handled inside the block -
    everything that escapes is wrapped in `TransientLockError`, except `InvalidKey`
    which becomes a non-retryable `InvalidIdentity`.
    """
    try:
        yield
    except LockError:
        raise
    except InvalidKey as e:
        raise InvalidIdentity(f"Invalid lock identity {identity}: {e}", identity=identity) from e
    except Exception as e:
        raise TransientLockError(
            f"Backend failure while handling lock {identity}: {e}",
            identity=identity,
        ) from e
