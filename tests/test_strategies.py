import asyncio
from datetime import timedelta

import pytest

from lockward.plugins.memory_store.memory_store import MemoryLedgerStore, MemoryObjectStore
from lockward.server.lock_base import (
    AlreadyLocked,
    LockHandle,
    LockLost,
    LockNotFound,
    StaleLock,
)
from lockward.server.strategies.ledger import LedgerLock
from lockward.server.strategies.object_conditional import ObjectConditionalLock

pytestmark = pytest.mark.anyio

TTL = timedelta(minutes=10)


@pytest.mark.parametrize("contenders", [1, 2, 8, 32])
async def test_only_one_concurrent_acquire_wins(strategy, contenders):
    results = await asyncio.gather(
        *[strategy.acquire("envA", f"host{i}", TTL) for i in range(contenders)],
        return_exceptions=True,
    )

    handles = [result for result in results if isinstance(result, LockHandle)]
    rejected = [result for result in results if isinstance(result, AlreadyLocked)]
    assert len(handles) == 1
    assert len(rejected) == contenders - 1
    assert all(error.holder.owner == handles[0].owner for error in rejected)


async def test_lock_handoff_scenario(strategy):
    first = await strategy.acquire("envA", "hostX", TTL)

    with pytest.raises(AlreadyLocked) as exc_info:
        await strategy.acquire("envA", "hostY", TTL)

    assert exc_info.value.holder.owner == "hostX"
    assert exc_info.value.holder.acquired_at == first.acquired_at
    assert not isinstance(exc_info.value, StaleLock)

    await strategy.release(first)
    second = await strategy.acquire("envA", "hostY", TTL)
    assert second.owner == "hostY"
    assert second.fencing_token != first.fencing_token


async def test_identities_are_independent(strategy):
    await strategy.acquire("envA", "hostX", TTL)
    handle = await strategy.acquire("envA/nested", "hostY", TTL)
    other = await strategy.acquire("envB", "hostY", TTL)

    assert handle.identity == "envA/nested"
    assert other.identity == "envB"


async def test_inspect_matches_acquire(strategy):
    handle = await strategy.acquire("envA", "hostX", TTL)

    record = await strategy.inspect("envA")
    assert record.owner == handle.owner
    assert record.acquired_at == handle.acquired_at
    assert record.token == handle.fencing_token


async def test_inspect_missing_lock(strategy):
    with pytest.raises(LockNotFound):
        await strategy.inspect("envA")


async def test_release_after_force_unlock_is_lost(strategy):
    handle = await strategy.acquire("envA", "hostX", TTL)
    await strategy.force_release("envA")

    with pytest.raises(LockLost):
        await strategy.release(handle)


async def test_release_with_stale_token_keeps_new_owner(strategy):
    original = await strategy.acquire("envA", "hostX", TTL)
    await strategy.force_release("envA")
    replacement = await strategy.acquire("envA", "hostY", TTL)

    with pytest.raises(LockLost):
        await strategy.release(original)

    record = await strategy.inspect("envA")
    assert record.owner == "hostY"
    assert record.token == replacement.fencing_token


async def test_force_release_missing_lock(strategy):
    with pytest.raises(LockNotFound):
        await strategy.force_release("envA")


async def test_stale_lock_is_reported(strategy):
    short_ttl = timedelta(microseconds=1)
    await strategy.acquire("envA", "hostX", short_ttl)
    await asyncio.sleep(0.01)

    with pytest.raises(StaleLock) as exc_info:
        await strategy.acquire("envA", "hostY", short_ttl)

    assert exc_info.value.holder.owner == "hostX"
    assert str(exc_info.value).startswith("Resource envA is locked by hostX since")
    assert str(exc_info.value).endswith("the lock looks stale")
    assert len(exc_info.value.args) == 1


async def test_stale_lock_is_reclaimed(make_strategy):
    strategy = make_strategy(stale_policy="reclaim")
    short_ttl = timedelta(microseconds=1)
    stale = await strategy.acquire("envA", "hostX", short_ttl)
    await asyncio.sleep(0.01)

    handle = await strategy.acquire("envA", "hostY", short_ttl)
    assert handle.owner == "hostY"
    assert (await strategy.inspect("envA")).owner == "hostY"

    # the crashed holder must not be able to remove the new lock
    with pytest.raises(LockLost):
        await strategy.release(stale)


async def test_fresh_lock_is_not_reclaimed(make_strategy):
    strategy = make_strategy(stale_policy="reclaim")
    await strategy.acquire("envA", "hostX", TTL)

    with pytest.raises(AlreadyLocked):
        await strategy.acquire("envA", "hostY", TTL)


async def test_no_ttl_never_stale(make_strategy):
    strategy = make_strategy(stale_policy="reclaim")
    await strategy.acquire("envA", "hostX", None)
    await asyncio.sleep(0.01)

    with pytest.raises(AlreadyLocked) as exc_info:
        await strategy.acquire("envA", "hostY", None)

    assert not isinstance(exc_info.value, StaleLock)


class RacingObjectStore(MemoryObjectStore):
    """Runs `before_delete` once, right before the next conditional delete."""

    before_delete = None

    async def conditional_delete(self, key, token):
        hook, self.before_delete = self.before_delete, None
        if hook is not None:
            await hook()

        await super().conditional_delete(key, token)


class RacingLedgerStore(MemoryLedgerStore):
    before_delete = None

    async def delete_if_version(self, row_key, version):
        hook, self.before_delete = self.before_delete, None
        if hook is not None:
            await hook()

        await super().delete_if_version(row_key, version)


@pytest.mark.parametrize(
    "make_racing_strategy",
    [
        lambda: ObjectConditionalLock(RacingObjectStore(), stale_policy="reclaim"),
        lambda: LedgerLock(RacingLedgerStore(), stale_policy="reclaim"),
    ],
    ids=["object_conditional", "ledger"],
)
async def test_reclaim_lost_to_another_owner(make_racing_strategy):
    strategy = make_racing_strategy()
    short_ttl = timedelta(microseconds=1)
    await strategy.acquire("envA", "hostX", short_ttl)
    await asyncio.sleep(0.01)

    async def reclaim_by_other_owner():
        await strategy.acquire("envA", "hostZ", short_ttl)

    strategy.store.before_delete = reclaim_by_other_owner

    with pytest.raises(AlreadyLocked) as exc_info:
        await strategy.acquire("envA", "hostY", short_ttl)

    assert exc_info.value.holder.owner == "hostZ"
    assert (await strategy.inspect("envA")).owner == "hostZ"
