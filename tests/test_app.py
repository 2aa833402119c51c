import pytest
from fastapi.testclient import TestClient

from lockward.plugins.memory_store.memory_store import MemoryLedgerStore, MemoryObjectStore
from lockward.server.app import create_app
from lockward.server.coordinator import LockCoordinator, LockTarget
from lockward.server.strategies.ledger import LedgerLock
from lockward.server.strategies.object_conditional import ObjectConditionalLock

ALICE = {"ID": "a1", "Who": "alice@laptop", "Operation": "OperationTypeApply"}
BOB = {"ID": "b2", "Who": "bob@ci", "Operation": "OperationTypePlan"}


@pytest.fixture
def client(fast_options):
    locks = {
        "main": LockTarget(
            name="main",
            identity="prod/terraform.tfstate",
            coordinator=LockCoordinator(ObjectConditionalLock(MemoryObjectStore()), fast_options),
        ),
        "ledger": LockTarget(
            name="ledger",
            identity="staging/terraform.tfstate",
            coordinator=LockCoordinator(LedgerLock(MemoryLedgerStore()), fast_options),
        ),
    }
    with TestClient(create_app(locks=locks)) as client:
        yield client


def test_ready(client):
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json() == "Ready"


@pytest.mark.parametrize("lock_name", ["main", "ledger"])
def test_lock_conflict_reports_holder(client, lock_name):
    assert client.put(f"/{lock_name}/lock", json=ALICE).status_code == 200

    response = client.put(f"/{lock_name}/lock", json=BOB)

    assert response.status_code == 423
    holder = response.json()
    assert holder["ID"] == "a1"
    assert holder["Who"] == "alice@laptop"


def test_unlock_frees_the_lock(client):
    client.put("/main/lock", json=ALICE)

    response = client.request("DELETE", "/main/lock", json=ALICE)
    assert response.status_code == 200

    assert client.get("/main/lock").json()["held"] is False
    assert client.put("/main/lock", json=BOB).status_code == 200


def test_unlock_with_wrong_id(client):
    client.put("/main/lock", json=ALICE)

    response = client.request("DELETE", "/main/lock", json=BOB)

    assert response.status_code == 409
    assert client.get("/main/lock").json()["held"] is True


def test_unlock_not_held(client):
    assert client.request("DELETE", "/main/lock", json=ALICE).status_code == 409


def test_status(client):
    client.put("/main/lock", json=ALICE)

    status = client.get("/main/lock").json()

    assert status["held"] is True
    assert status["owner"] == "alice@laptop:a1"
    assert status["age_exceeds_ttl"] is False


def test_force_unlock(client):
    assert client.delete("/main/lock/force").status_code == 404

    client.put("/main/lock", json=ALICE)
    assert client.delete("/main/lock/force").status_code == 200
    assert client.get("/main/lock").json()["held"] is False

    # the previous holder notices on unlock
    assert client.request("DELETE", "/main/lock", json=ALICE).status_code == 409


def test_unknown_lock(client):
    assert client.put("/other/lock", json=ALICE).status_code == 404
    assert client.get("/other/lock").status_code == 404
