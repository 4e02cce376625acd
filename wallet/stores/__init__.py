from ..config import Settings
from .base import AccountStore, AccountTransaction, ConflictError, DuplicateKey, LockTimeout, StoreError
from .memory import MemoryAccountStore
from .postgres import PostgresAccountStore
from .redis import RedisAccountStore


def build_store(settings: Settings) -> AccountStore:
    """WALLET_STORE 설정에 맞는 저장소 생성"""
    if settings.store == "postgres":
        return PostgresAccountStore.from_url(
            settings.database_url,
            lock_timeout=settings.lock_timeout,
            min_size=settings.db_pool_min,
            max_size=settings.db_pool_max,
        )
    if settings.store == "redis":
        return RedisAccountStore.from_url(
            settings.redis_url,
            lock_timeout=settings.lock_timeout,
            lock_ttl=settings.lock_ttl,
        )
    if settings.store == "memory":
        return MemoryAccountStore(lock_timeout=settings.lock_timeout)
    raise ValueError(f"unknown store: {settings.store}")


__all__ = [
    "AccountStore",
    "AccountTransaction",
    "ConflictError",
    "DuplicateKey",
    "LockTimeout",
    "StoreError",
    "MemoryAccountStore",
    "PostgresAccountStore",
    "RedisAccountStore",
    "build_store",
]
