from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict

from lockward.server.coordinator import LockTarget
from lockward.server.lock_base import (
    LockError,
    LockHandle,
    LockLost,
    LockRecord,
    LockStatus,
)


class LockInfo(BaseModel):
    """Data struct that contains the lock information sent by terraform.

    It follows the same fields names as the terraform lock info.

    See offical [source](https://github.com/hashicorp/terraform/blob/aea5c0cc180e0e6915454b3bf61f471c230c111b/internal/states/statemgr/locker.go#L129).

    Attributes:
        ID: The ID of the lock.
        Operation: The operation that is being performed.
        Info: Extra information about the lock.
        Who: The entity that is performing the operation.
        Version: The version of terraform.
        Created: The time when the lock was created.
        Path: The path of the state.
    """

    model_config = ConfigDict(from_attributes=True)

    ID: str
    Operation: str = ""
    Info: str = ""
    Who: str = ""
    Version: str = ""
    Created: str = ""
    Path: str = ""

    @classmethod
    def from_record(cls, record: LockRecord) -> "LockInfo":
        who, _, lock_id = record.owner.rpartition(":")
        return cls(
            ID=lock_id,
            Who=who or record.owner,
            Created=record.acquired_at.isoformat(),
            Path=record.identity,
        )


class LockNotHeld(LockError):
    pass


class UndeclaredLock(LookupError):
    pass


@dataclass
class HeldLock:
    lock_id: str
    handle: LockHandle


@dataclass
class LockBroker:
    """Holds locks on behalf of clients that can only speak HTTP.

    Each lock name maps to a configured `LockTarget`. The broker keeps the handles of the locks it
    acquired in memory - so only the client that locked through this broker can unlock through it.
    """

    targets: dict[str, LockTarget]
    held: dict[str, HeldLock] = field(default_factory=dict)

    def _validate_target(self, lock_name: str) -> LockTarget:
        target = self.targets.get(lock_name)
        if target is None:
            raise UndeclaredLock(f"Undeclared lock: {lock_name}")

        return target

    async def lock(self, lock_name: str, info: LockInfo) -> LockHandle:
        target = self._validate_target(lock_name)
        handle = await target.coordinator.try_acquire(target.identity, owner=f"{info.Who}:{info.ID}")
        self.held[lock_name] = HeldLock(lock_id=info.ID, handle=handle)
        return handle

    async def unlock(self, lock_name: str, info: Optional[LockInfo] = None) -> None:
        target = self._validate_target(lock_name)
        held = self.held.get(lock_name)
        if held is None:
            raise LockNotHeld(f"Lock {lock_name} is not held through this server", identity=target.identity)

        if info is not None and info.ID and info.ID != held.lock_id:
            raise LockNotHeld(
                f"Lock {lock_name} is held with id {held.lock_id}, not {info.ID}",
                identity=target.identity,
            )

        try:
            await target.coordinator.release(held.handle)

        except LockLost:
            self.held.pop(lock_name, None)
            raise

        self.held.pop(lock_name, None)

    async def force_unlock(self, lock_name: str) -> None:
        target = self._validate_target(lock_name)
        await target.coordinator.force_unlock(target.identity)
        self.held.pop(lock_name, None)

    async def status(self, lock_name: str) -> LockStatus:
        target = self._validate_target(lock_name)
        return await target.coordinator.status(target.identity)
