import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, TypeAlias, runtime_checkable

from pydantic import BaseModel, ConfigDict

LockIdentity: TypeAlias = str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_owner_id(hint: Optional[str] = None) -> str:
    """Build an owner identifier unique to this running process.

    Args:
        hint: human readable prefix - defaults to the hostname.

    Returns:
        `<hint>:<pid>:<nonce>` - the nonce keeps two processes that reuse a pid apart.
    """
    return f"{hint or socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


class MarkerBody(BaseModel):
    """Payload stored inside the marker object / ledger row.

    Attributes:
        owner: The owner that created the marker.
        acquired_at: The time when the marker was created.
    """

    owner: str
    acquired_at: datetime


class LockRecord(BaseModel):
    """The durable lock marker as seen by a client.

    The backend record is the only source of truth - this is a read-only snapshot of it.

    Attributes:
        identity: The identity of the protected resource.
        owner: The owner that created the marker.
        acquired_at: The time when the marker was created.
        token: The backend fencing token of the marker (object precondition token or row version).
    """

    model_config = ConfigDict(frozen=True)

    identity: LockIdentity
    owner: str
    acquired_at: datetime
    token: str

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.acquired_at

    def is_stale(self, ttl: Optional[timedelta], now: Optional[datetime] = None) -> bool:
        if ttl is None:
            return False

        return self.age(now) > ttl


class LockHandle(BaseModel):
    """Client side proof that a lock record was created by this client.

    Attributes:
        identity: The identity of the protected resource.
        owner: The owner that acquired the lock.
        acquired_at: The time when the lock was acquired.
        fencing_token: Token returned by the backend on acquire - presented on release.
        ttl: Age after which other clients may consider the lock stale.
    """

    model_config = ConfigDict(frozen=True)

    identity: LockIdentity
    owner: str
    acquired_at: datetime
    fencing_token: str
    ttl: Optional[timedelta] = None


class LockStatus(BaseModel):
    held: bool
    owner: Optional[str] = None
    acquired_at: Optional[datetime] = None
    age_exceeds_ttl: bool = False

    @classmethod
    def from_record(cls, record: LockRecord, ttl: Optional[timedelta]) -> "LockStatus":
        return cls(
            held=True,
            owner=record.owner,
            acquired_at=record.acquired_at,
            age_exceeds_ttl=record.is_stale(ttl),
        )


class LockError(Exception):
    def __init__(self, msg: str, identity: LockIdentity) -> None:
        super().__init__(msg)
        self.identity = identity


class AlreadyLocked(LockError):
    detail = ""

    def __init__(self, identity: LockIdentity, holder: LockRecord) -> None:
        super().__init__(
            f"Resource {identity} is locked by {holder.owner} since {holder.acquired_at.isoformat()}{self.detail}",
            identity,
        )
        self.holder = holder


class StaleLock(AlreadyLocked):
    """The existing marker is older than the ttl - but reclaiming it is disabled."""

    detail = " - the lock looks stale"


class InvalidIdentity(LockError, ValueError):
    """The identity cannot be mapped to a marker on this backend."""


class TransientLockError(LockError):
    pass


class LockLost(LockError):
    pass


class LockNotFound(LockError):
    pass


class CancellationRequested(LockError):
    pass


FORCE_UNLOCK_HINT = "If the holder is known to be dead, run `lockward force-unlock` to remove the lock."


class BudgetExhausted(LockError):
    def __init__(
        self,
        identity: LockIdentity,
        attempts: int,
        elapsed: float,
        last_error: Optional[LockError],
    ) -> None:
        if isinstance(last_error, AlreadyLocked):
            msg = f"{last_error} (gave up after {attempts} attempts, {elapsed:.1f}s). {FORCE_UNLOCK_HINT}"
        else:
            msg = f"Failed to lock {identity} (gave up after {attempts} attempts, {elapsed:.1f}s): {last_error}"

        super().__init__(msg, identity)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error


@runtime_checkable
class LockStrategyProtocol(Protocol):
    """Protocol for lock strategies.

    A strategy owns the marker layout on its backend and is the only place where
    backend errors are translated into `LockError` subclasses.
    """

    async def acquire(self, identity: LockIdentity, owner: str, ttl: Optional[timedelta]) -> LockHandle:
        """Create the lock marker atomically.

        Args:
            identity: The identity of the protected resource.
            owner: The owner identifier to record in the marker.
            ttl: Age after which an existing marker counts as stale.

        Raises:
            AlreadyLocked: a marker already exists (`StaleLock` if it is older than ttl).
            TransientLockError: the backend failed in a way that may succeed on retry.
        """
        ...

    async def release(self, handle: LockHandle) -> None:
        """Delete the marker - only if it is still the one created for `handle`.

        Raises:
            LockLost: the marker is gone or was replaced by someone else.
        """
        ...

    async def force_release(self, identity: LockIdentity) -> None:
        """Delete the marker unconditionally.

        Raises:
            LockNotFound: no marker exists.
        """
        ...

    async def inspect(self, identity: LockIdentity) -> LockRecord:
        """Read the current marker without changing it.

        Raises:
            LockNotFound: no marker exists.
        """
        ...


@runtime_checkable
class EnumerableLockStrategyProtocol(LockStrategyProtocol, Protocol):
    async def list_locks(self) -> list[LockRecord]: ...
