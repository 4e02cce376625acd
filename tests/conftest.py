# tests/conftest.py
import asyncio
import os
import uuid
from contextlib import asynccontextmanager

import pytest

from wallet.config import Settings
from wallet.engine import BalanceEngine
from wallet.stores import MemoryAccountStore, PostgresAccountStore, RedisAccountStore
from wallet.stores.memory import MemoryAccountTransaction

# Postgres / Redis 는 환경 변수가 있을 때만 테스트
STORE_URLS = {
    "postgres": "WALLET_TEST_DATABASE_URL",
    "redis": "WALLET_TEST_REDIS_URL",
}


def make_store(kind: str, lock_timeout: float = 2.0):
    if kind == "memory":
        return MemoryAccountStore(lock_timeout=lock_timeout)
    if kind == "postgres":
        return PostgresAccountStore.from_url(os.environ[STORE_URLS[kind]], lock_timeout=lock_timeout)
    if kind == "redis":
        return RedisAccountStore.from_url(os.environ[STORE_URLS[kind]], lock_timeout=lock_timeout)
    raise ValueError(kind)


@pytest.fixture(params=["memory", "postgres", "redis"])
def store_kind(request):
    env = STORE_URLS.get(request.param)
    if env and not os.getenv(env):
        pytest.skip(f"{env} not set")
    return request.param


@pytest.fixture()
def open_store(store_kind):
    """이벤트 루프 안에서 저장소를 열고 닫는 async context manager 팩토리"""

    @asynccontextmanager
    async def _open(lock_timeout: float = 2.0):
        store = make_store(store_kind, lock_timeout=lock_timeout)
        await store.initialize()
        try:
            yield store
        finally:
            await store.close()

    return _open


@pytest.fixture()
def wallet_id() -> str:
    return f"acct_{uuid.uuid4().hex[:12]}"


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        store="memory",
        lock_timeout=2.0,
        retry_base_delay=0.001,
        log_level="WARNING",
        log_format="console",
    )


@pytest.fixture()
def memory_engine(test_settings):
    store = MemoryAccountStore(lock_timeout=test_settings.lock_timeout)
    return BalanceEngine.from_settings(store, test_settings)


@pytest.fixture()
def interleaved_locks(monkeypatch):
    """lock_for_update 직후 이벤트 루프에 양보해서 동시 요청이 실제로 겹치게 함"""
    original = MemoryAccountTransaction.lock_for_update

    async def lock_then_yield(self, account_id):
        account = await original(self, account_id)
        await asyncio.sleep(0)
        return account

    monkeypatch.setattr(MemoryAccountTransaction, "lock_for_update", lock_then_yield)
