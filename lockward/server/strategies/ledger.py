import logging
from datetime import timedelta
from typing import Optional

from lockward.server.lock_base import (
    AlreadyLocked,
    EnumerableLockStrategyProtocol,
    LockHandle,
    LockIdentity,
    LockLost,
    LockNotFound,
    LockRecord,
    MarkerBody,
    StaleLock,
    TransientLockError,
    utcnow,
)
from lockward.server.store_base import (
    LedgerRow,
    LedgerStoreProtocol,
    RowAlreadyExists,
    RowNotFound,
    VersionMismatch,
    classify_backend_errors,
)
from lockward.server.strategies.object_conditional import StalePolicy

logger = logging.getLogger(__name__)


def row_to_record(identity: LockIdentity, row: LedgerRow) -> LockRecord:
    marker = MarkerBody.model_validate(row.fields)
    return LockRecord(
        identity=identity,
        owner=marker.owner,
        acquired_at=marker.acquired_at,
        token=row.version,
    )


class LedgerLock(EnumerableLockStrategyProtocol):
    """Lock strategy based on a conditionally inserted ledger row.

    The row is keyed by the lock identity and its version column is the fencing token.
    Unlike object markers, the ledger can be listed - so lock state is browsable.
    """

    def __init__(self, store: LedgerStoreProtocol, stale_policy: StalePolicy = "report") -> None:
        self.store = store
        self.stale_policy = stale_policy

    async def _insert(self, identity: LockIdentity, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        marker = MarkerBody(owner=owner, acquired_at=utcnow())
        version = await self.store.insert_if_absent(identity, marker.model_dump(mode="json"))
        return LockHandle(
            identity=identity,
            owner=owner,
            acquired_at=marker.acquired_at,
            fencing_token=version,
            ttl=ttl,
        )

    async def _read_holder(self, identity: LockIdentity) -> LockRecord | None:
        try:
            row = await self.store.get(identity)

        except RowNotFound:
            return None

        return row_to_record(identity, row)

    async def acquire(self, identity: LockIdentity, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        with classify_backend_errors(identity):
            for _ in range(2):
                try:
                    return await self._insert(identity, owner, ttl)

                except RowAlreadyExists:
                    holder = await self._read_holder(identity)

                if holder is not None:
                    break

            if holder is None:
                raise TransientLockError(f"Lock {identity} is changing hands too fast to read", identity=identity)

            if not holder.is_stale(ttl):
                raise AlreadyLocked(identity, holder)

            if self.stale_policy != "reclaim":
                raise StaleLock(identity, holder)

            logger.warning("Reclaiming stale lock %s held by %s since %s", identity, holder.owner, holder.acquired_at)
            try:
                await self.store.delete_if_version(identity, holder.token)
                return await self._insert(identity, owner, ttl)

            except (VersionMismatch, RowNotFound, RowAlreadyExists):
                current = await self._read_holder(identity)
                raise AlreadyLocked(identity, current or holder) from None

    async def release(self, handle: LockHandle) -> None:
        identity = handle.identity
        with classify_backend_errors(identity):
            try:
                await self.store.delete_if_version(identity, handle.fencing_token)

            except VersionMismatch as e:
                raise LockLost(
                    f"Lock {identity} was taken over by someone else - the protected operation may have raced",
                    identity=identity,
                ) from e

            except RowNotFound as e:
                raise LockLost(
                    f"Lock {identity} was removed while it was held - the protected operation may have raced",
                    identity=identity,
                ) from e

    async def force_release(self, identity: LockIdentity) -> None:
        with classify_backend_errors(identity):
            try:
                await self.store.delete(identity)

            except RowNotFound as e:
                raise LockNotFound(f"Lock {identity} not found", identity=identity) from e

    async def inspect(self, identity: LockIdentity) -> LockRecord:
        with classify_backend_errors(identity):
            holder = await self._read_holder(identity)

        if holder is None:
            raise LockNotFound(f"Lock {identity} not found", identity=identity)

        return holder

    async def list_locks(self) -> list[LockRecord]:
        with classify_backend_errors("*"):
            rows = await self.store.list_rows()

        return [row_to_record(row_key, row) for row_key, row in rows]
