from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from wallet.exceptions import StoreUnavailable
from wallet.main import create_app
from wallet.stores.base import ConflictError
from wallet.stores.memory import MemoryAccountStore, MemoryAccountTransaction


@pytest.fixture()
def store(test_settings):
    return MemoryAccountStore(lock_timeout=test_settings.lock_timeout)


@pytest.fixture()
def client(store, test_settings):
    app = create_app(store=store, settings=test_settings)
    with TestClient(app) as c:
        yield c


# ---------- helpers ----------

def operate(client: TestClient, wallet_id: str, operation_type: str, amount):
    return client.post(
        "/api/v1/wallet",
        json={"walletId": wallet_id, "operationType": operation_type, "amount": amount}
    )


def balance_of(client: TestClient, wallet_id: str) -> Decimal:
    r = client.get(f"/api/v1/wallets/{wallet_id}")
    assert r.status_code == 200
    return Decimal(str(r.json()["balance"]))


# ---------- basic availability ----------

def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_root_describes_service(client):
    body = client.get("/").json()
    assert body["store"] == "MemoryAccountStore"
    assert body["docs"] == "/docs"


# ---------- happy path ----------

def test_deposit_to_new_wallet(client, wallet_id):
    r = operate(client, wallet_id, "DEPOSIT", "100.00")
    assert r.status_code == 200
    body = r.json()
    assert body["walletId"] == wallet_id
    assert Decimal(str(body["balance"])) == Decimal("100.00")


def test_deposit_and_withdraw_flow(client, wallet_id):
    assert operate(client, wallet_id, "DEPOSIT", 100).status_code == 200
    r = operate(client, wallet_id, "WITHDRAW", 30.5)
    assert r.status_code == 200
    assert Decimal(str(r.json()["balance"])) == Decimal("69.50")
    assert balance_of(client, wallet_id) == Decimal("69.50")


def test_get_balance(client, wallet_id):
    operate(client, wallet_id, "DEPOSIT", "42.10")
    r = client.get(f"/api/v1/wallets/{wallet_id}")
    assert r.status_code == 200
    assert r.json()["walletId"] == wallet_id
    assert Decimal(str(r.json()["balance"])) == Decimal("42.10")


# ---------- failures ----------

def test_withdraw_with_insufficient_funds(client, wallet_id):
    operate(client, wallet_id, "DEPOSIT", "50.00")
    r = operate(client, wallet_id, "WITHDRAW", "150.00")
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Bad Request"
    assert "Insufficient funds" in body["message"]
    assert balance_of(client, wallet_id) == Decimal("50.00")


def test_get_balance_not_found(client, wallet_id):
    r = client.get(f"/api/v1/wallets/{wallet_id}")
    assert r.status_code == 404
    assert r.json()["error"] == "Not Found"
    assert wallet_id in r.json()["message"]


def test_malformed_json(client):
    r = client.post(
        "/api/v1/wallet",
        content="{invalid json}",
        headers={"Content-Type": "application/json"}
    )
    assert r.status_code == 400
    assert r.json()["error"] == "Bad Request"


@pytest.mark.parametrize("payload", [
    {"walletId": "w1", "operationType": "DEPOSIT"},
    {"walletId": "w1", "operationType": "DEPOSIT", "amount": 0},
    {"walletId": "w1", "operationType": "DEPOSIT", "amount": -5},
    {"walletId": "w1", "operationType": "DEPOSIT", "amount": "10.001"},
    {"walletId": "w1", "operationType": "TRANSFER", "amount": 10},
    {"walletId": "", "operationType": "DEPOSIT", "amount": 10},
    {"walletId": "bad id!", "operationType": "DEPOSIT", "amount": 10},
    {"operationType": "DEPOSIT", "amount": 10},
])
def test_validation_failures(client, store, payload):
    r = client.post("/api/v1/wallet", json=payload)
    assert r.status_code == 400
    assert r.json()["error"] == "Validation Failed"
    assert r.json()["message"]
    assert store.count() == 0


def test_invalid_wallet_id_in_path(client):
    r = client.get("/api/v1/wallets/not a valid id")
    assert r.status_code == 400
    assert r.json()["error"] == "Validation Failed"


def test_contention_maps_to_conflict(client, wallet_id, monkeypatch):
    operate(client, wallet_id, "DEPOSIT", "10.00")

    async def always_conflict(self, account):
        raise ConflictError(account.id, account.version)

    monkeypatch.setattr(MemoryAccountTransaction, "save", always_conflict)
    r = operate(client, wallet_id, "DEPOSIT", "10.00")
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"
    monkeypatch.undo()
    assert balance_of(client, wallet_id) == Decimal("10.00")


def test_store_outage_maps_to_service_unavailable(client, wallet_id, monkeypatch):
    async def down(self, account_id):
        raise StoreUnavailable("database unavailable: connection refused")

    monkeypatch.setattr(MemoryAccountStore, "find_by_id", down)
    r = client.get(f"/api/v1/wallets/{wallet_id}")
    assert r.status_code == 503
    assert r.json()["error"] == "Service Unavailable"


# ---------- concurrency through the HTTP layer ----------

def test_parallel_requests_keep_every_deposit(client, wallet_id):
    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(operate, client, wallet_id, "DEPOSIT", "10.00") for _ in range(10)]
        statuses = [f.result().status_code for f in futures]

    assert statuses == [200] * 10
    assert balance_of(client, wallet_id) == Decimal("100.00")


def test_parallel_deposits_and_withdrawals(client, wallet_id):
    operate(client, wallet_id, "DEPOSIT", "1000.00")
    ops = ["DEPOSIT"] * 5 + ["WITHDRAW"] * 5
    with ThreadPoolExecutor(max_workers=5) as executor:
        futures = [executor.submit(operate, client, wallet_id, op, "10.00") for op in ops]
        statuses = [f.result().status_code for f in futures]

    assert statuses == [200] * 10
    assert balance_of(client, wallet_id) == Decimal("1000.00")
