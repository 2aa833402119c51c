from datetime import timedelta

import pytest

from lockward.plugins.local_object_store.local_object_store import LocalObjectStore
from lockward.plugins.memory_store.memory_store import MemoryLedgerStore, MemoryObjectStore
from lockward.plugins.sqlite_ledger_store.sqlite_ledger_store import SqliteLedgerStore
from lockward.server.config import LockOptions
from lockward.server.strategies.ledger import LedgerLock
from lockward.server.strategies.object_conditional import ObjectConditionalLock


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fast_options():
    return LockOptions(
        ttl=timedelta(minutes=10),
        max_attempts=3,
        backoff_base=timedelta(milliseconds=1),
        backoff_cap=timedelta(milliseconds=5),
    )


@pytest.fixture(params=["memory_object", "local_object", "memory_ledger", "sqlite_ledger"])
def store_kind(request):
    return request.param


@pytest.fixture
def make_strategy(store_kind, tmp_path):
    """Builds strategies of the parametrized kind - all sharing one backend."""
    match store_kind:
        case "memory_object":
            store = MemoryObjectStore()
        case "local_object":
            store = LocalObjectStore(tmp_path / "locks", folder_mode=0o700, file_mode=0o600)
        case "memory_ledger":
            store = MemoryLedgerStore()
        case "sqlite_ledger":
            store = SqliteLedgerStore(tmp_path / "ledger.sqlite3")

    def factory(stale_policy="report"):
        if store_kind.endswith("_object"):
            return ObjectConditionalLock(store, stale_policy=stale_policy)

        return LedgerLock(store, stale_policy=stale_policy)

    return factory


@pytest.fixture
def strategy(make_strategy):
    return make_strategy()
