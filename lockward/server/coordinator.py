import asyncio
import enum
import logging
import random
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from lockward.server.backoff import next_delay
from lockward.server.config import LockOptions
from lockward.server.lock_base import (
    AlreadyLocked,
    BudgetExhausted,
    CancellationRequested,
    EnumerableLockStrategyProtocol,
    LockError,
    LockHandle,
    LockIdentity,
    LockLost,
    LockNotFound,
    LockRecord,
    LockStatus,
    LockStrategyProtocol,
    TransientLockError,
    make_owner_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[LockHandle], Awaitable[T]]


class CoordinatorState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASING = "releasing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Invocation:
    identity: LockIdentity
    owner: str
    state: CoordinatorState = CoordinatorState.IDLE
    attempts: int = 0
    history: list[CoordinatorState] = field(default_factory=lambda: [CoordinatorState.IDLE])

    def transition(self, state: CoordinatorState) -> None:
        logger.debug("Lock %s (%s): %s -> %s", self.identity, self.owner, self.state.value, state.value)
        self.state = state
        self.history.append(state)


@dataclass
class OperationResult(Generic[T]):
    """Outcome of an operation that ran under a lock.

    Attributes:
        value: The value returned by the operation.
        handle: The handle the operation ran with.
        attempts: Number of acquire attempts it took.
        release_warning: Set when releasing failed after the operation completed -
            the operation result is kept, but it may have raced with another holder.
        state: The final state of the invocation.
    """

    value: T
    handle: LockHandle
    attempts: int
    release_warning: Optional[LockError] = None
    state: CoordinatorState = CoordinatorState.DONE


class LockCoordinator:
    def __init__(
        self,
        strategy: LockStrategyProtocol,
        options: Optional[LockOptions] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.strategy = strategy
        self.options = options or LockOptions()
        self.clock = clock
        self.rng = rng

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for `delay` seconds - returns True if cancellation was requested meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)

        except TimeoutError:
            return False

        return True

    async def _acquire(
        self,
        invocation: Invocation,
        options: LockOptions,
        cancel_event: Optional[asyncio.Event],
    ) -> LockHandle:
        started = self.clock()
        last_error: Optional[LockError] = None
        invocation.transition(CoordinatorState.ACQUIRING)

        try:
            policy = options.backoff()
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise CancellationRequested(
                        f"Cancelled while waiting for lock {invocation.identity}",
                        identity=invocation.identity,
                    )

                invocation.attempts += 1
                try:
                    handle = await self.strategy.acquire(invocation.identity, invocation.owner, options.ttl)

                except (AlreadyLocked, TransientLockError) as e:
                    last_error = e

                else:
                    invocation.transition(CoordinatorState.HELD)
                    return handle

                elapsed = self.clock() - started
                delay = next_delay(policy, invocation.attempts, elapsed, self.rng)
                if delay is None:
                    raise BudgetExhausted(
                        invocation.identity,
                        attempts=invocation.attempts,
                        elapsed=elapsed,
                        last_error=last_error,
                    ) from last_error

                logger.info(
                    "Attempt %d to lock %s failed (%s) - retrying in %.2fs",
                    invocation.attempts,
                    invocation.identity,
                    last_error,
                    delay,
                )
                if await self._wait(delay, cancel_event):
                    raise CancellationRequested(
                        f"Cancelled while waiting for lock {invocation.identity}",
                        identity=invocation.identity,
                    )

        except BaseException:
            invocation.transition(CoordinatorState.FAILED)
            raise

    async def _invoke(
        self,
        operation: Operation[T],
        handle: LockHandle,
        cancel_event: Optional[asyncio.Event],
    ) -> T:
        if cancel_event is None:
            return await operation(handle)

        operation_task = asyncio.ensure_future(operation(handle))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({operation_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)

        finally:
            cancel_task.cancel()
            if not operation_task.done():
                operation_task.cancel()
                with suppress(asyncio.CancelledError):
                    await operation_task

        if not operation_task.cancelled():
            return operation_task.result()

        raise CancellationRequested(
            f"Cancelled while holding lock {handle.identity}",
            identity=handle.identity,
        )

    async def _release(self, invocation: Invocation, handle: LockHandle) -> Optional[LockError]:
        invocation.transition(CoordinatorState.RELEASING)
        try:
            await self.strategy.release(handle)

        except (LockLost, TransientLockError) as e:
            logger.warning("Failed to release lock %s: %s", handle.identity, e)
            invocation.transition(CoordinatorState.FAILED)
            return e

        invocation.transition(CoordinatorState.DONE)
        return None

    async def run(
        self,
        identity: LockIdentity,
        owner_hint: Optional[str],
        operation: Operation[T],
        options: Optional[LockOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationResult[T]:
        """Run `operation` while holding the lock on `identity`.

        The lock is released on every exit path - including errors raised by the operation and
        cancellation. Release problems after a successful operation are returned as
        `OperationResult.release_warning` instead of being raised.

        Args:
            identity: The identity of the protected resource.
            owner_hint: Prefix of the owner identifier - defaults to the hostname.
            operation: Coroutine function called exactly once with the acquired handle.
            options: Overrides the coordinator default options.
            cancel_event: Setting it aborts waiting for the lock, or the operation itself.

        Raises:
            BudgetExhausted: the lock could not be acquired - the operation never ran.
            CancellationRequested: `cancel_event` was set.
        """
        options = options or self.options
        invocation = Invocation(identity=identity, owner=make_owner_id(owner_hint))
        handle = await self._acquire(invocation, options, cancel_event)

        try:
            value = await self._invoke(operation, handle, cancel_event)

        except BaseException as e:
            warning = await self._release(invocation, handle)
            if warning is not None:
                e.add_note(f"Releasing lock {identity} failed as well: {warning}")

            raise

        warning = await self._release(invocation, handle)
        return OperationResult(
            value=value,
            handle=handle,
            attempts=invocation.attempts,
            release_warning=warning,
            state=invocation.state,
        )

    async def acquire(
        self,
        identity: LockIdentity,
        owner: str,
        options: Optional[LockOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> LockHandle:
        invocation = Invocation(identity=identity, owner=owner)
        return await self._acquire(invocation, options or self.options, cancel_event)

    async def try_acquire(self, identity: LockIdentity, owner: str, options: Optional[LockOptions] = None) -> LockHandle:
        options = options or self.options
        return await self.strategy.acquire(identity, owner, options.ttl)

    async def release(self, handle: LockHandle) -> None:
        await self.strategy.release(handle)

    async def force_unlock(self, identity: LockIdentity) -> None:
        await self.strategy.force_release(identity)
        logger.warning("Lock %s was force unlocked", identity)

    async def inspect(self, identity: LockIdentity) -> LockRecord:
        return await self.strategy.inspect(identity)

    async def status(self, identity: LockIdentity, options: Optional[LockOptions] = None) -> LockStatus:
        options = options or self.options
        try:
            record = await self.strategy.inspect(identity)

        except LockNotFound:
            return LockStatus(held=False)

        return LockStatus.from_record(record, options.ttl)

    async def list_locks(self) -> list[LockRecord]:
        if not isinstance(self.strategy, EnumerableLockStrategyProtocol):
            raise NotImplementedError("This lock strategy does not support listing locks")

        return await self.strategy.list_locks()


@dataclass
class LockTarget:
    name: str
    identity: LockIdentity
    coordinator: LockCoordinator
