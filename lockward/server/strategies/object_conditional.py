import logging
from datetime import timedelta
from typing import Literal, Optional

from lockward.server.lock_base import (
    AlreadyLocked,
    LockHandle,
    LockIdentity,
    LockLost,
    LockNotFound,
    LockRecord,
    LockStrategyProtocol,
    MarkerBody,
    StaleLock,
    TransientLockError,
    utcnow,
)
from lockward.server.store_base import (
    ObjectNotFound,
    ObjectStoreProtocol,
    PreconditionFailed,
    classify_backend_errors,
)

logger = logging.getLogger(__name__)

StalePolicy = Literal["report", "reclaim"]


class ObjectConditionalLock(LockStrategyProtocol):
    """Lock strategy based on a marker object created with a conditional put.

    The marker lives at `<key_prefix><identity>.lock` and holds the owner and the acquire time.
    The object store's precondition token of the marker is used as the fencing token.
    """

    def __init__(
        self,
        store: ObjectStoreProtocol,
        key_prefix: str = "locks/",
        stale_policy: StalePolicy = "report",
    ) -> None:
        self.store = store
        self.key_prefix = key_prefix
        self.stale_policy = stale_policy

    def derive(self, identity: LockIdentity) -> str:
        return f"{self.key_prefix}{identity}.lock"

    def _parse_marker(self, identity: LockIdentity, body: bytes, token: str) -> LockRecord:
        marker = MarkerBody.model_validate_json(body)
        return LockRecord(
            identity=identity,
            owner=marker.owner,
            acquired_at=marker.acquired_at,
            token=token,
        )

    async def _put_marker(self, identity: LockIdentity, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        marker = MarkerBody(owner=owner, acquired_at=utcnow())
        token = await self.store.conditional_put(
            self.derive(identity),
            marker.model_dump_json().encode(),
            fail_if_exists=True,
        )
        return LockHandle(
            identity=identity,
            owner=owner,
            acquired_at=marker.acquired_at,
            fencing_token=token,
            ttl=ttl,
        )

    async def _read_holder(self, identity: LockIdentity) -> LockRecord | None:
        try:
            existing = await self.store.get(self.derive(identity))

        except ObjectNotFound:
            return None

        return self._parse_marker(identity, existing.body, existing.token)

    async def _reclaim(self, holder: LockRecord, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        identity = holder.identity
        logger.warning("Reclaiming stale lock %s held by %s since %s", identity, holder.owner, holder.acquired_at)
        try:
            # only the exact stale version may be removed
            await self.store.conditional_delete(self.derive(identity), holder.token)
            return await self._put_marker(identity, owner, ttl)

        except (PreconditionFailed, ObjectNotFound):
            current = await self._read_holder(identity)
            raise AlreadyLocked(identity, current or holder) from None

    async def acquire(self, identity: LockIdentity, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        with classify_backend_errors(identity):
            # the marker may vanish between a rejected put and the read - retry the put once in that case
            for _ in range(2):
                try:
                    return await self._put_marker(identity, owner, ttl)

                except PreconditionFailed:
                    holder = await self._read_holder(identity)

                if holder is not None:
                    break

            if holder is None:
                raise TransientLockError(f"Lock {identity} is changing hands too fast to read", identity=identity)

            if not holder.is_stale(ttl):
                raise AlreadyLocked(identity, holder)

            if self.stale_policy == "reclaim":
                return await self._reclaim(holder, owner, ttl)

            raise StaleLock(identity, holder)

    async def release(self, handle: LockHandle) -> None:
        identity = handle.identity
        with classify_backend_errors(identity):
            try:
                await self.store.conditional_delete(self.derive(identity), handle.fencing_token)

            except PreconditionFailed as e:
                raise LockLost(
                    f"Lock {identity} was taken over by someone else - the protected operation may have raced",
                    identity=identity,
                ) from e

            except ObjectNotFound as e:
                raise LockLost(
                    f"Lock {identity} was removed while it was held - the protected operation may have raced",
                    identity=identity,
                ) from e

    async def force_release(self, identity: LockIdentity) -> None:
        with classify_backend_errors(identity):
            try:
                await self.store.delete(self.derive(identity))

            except ObjectNotFound as e:
                raise LockNotFound(f"Lock {identity} not found", identity=identity) from e

    async def inspect(self, identity: LockIdentity) -> LockRecord:
        with classify_backend_errors(identity):
            holder = await self._read_holder(identity)

        if holder is None:
            raise LockNotFound(f"Lock {identity} not found", identity=identity)

        return holder
