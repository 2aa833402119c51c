import asyncio
from concurrent.futures import ThreadPoolExecutor

from lockward.plugins.local_object_store.local_object_store import LocalObjectStore
from lockward.server.lock_base import AlreadyLocked, LockHandle
from lockward.server.strategies.object_conditional import ObjectConditionalLock


def test_mutual_exclusion_across_threads(tmp_path):
    (tmp_path / "shared").mkdir()

    def contend(owner: str):
        store = LocalObjectStore(tmp_path / "shared", folder_mode=0o700, file_mode=0o600)
        strategy = ObjectConditionalLock(store)
        try:
            return asyncio.run(strategy.acquire("envA", owner, None))

        except AlreadyLocked as e:
            return e

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(contend, [f"host{i}" for i in range(16)]))

    handles = [result for result in results if isinstance(result, LockHandle)]
    assert len(handles) == 1
    assert all(result.holder.owner == handles[0].owner for result in results if isinstance(result, AlreadyLocked))
