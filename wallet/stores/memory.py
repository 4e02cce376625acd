import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set

from ..models import Account, utcnow
from .base import AccountStore, AccountTransaction, ConflictError, DuplicateKey, LockTimeout


class MemoryAccountTransaction(AccountTransaction):
    def __init__(self, store: "MemoryAccountStore"):
        self._store = store
        self._held: Set[str] = set()
        # 커밋 전까지 다른 트랜잭션에 보이지 않는 쓰기
        self._pending: Dict[str, Account] = {}

    async def _acquire(self, account_id: str) -> bool:
        if account_id in self._held:
            return False
        lock = self._store._checkout(account_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._store.lock_timeout)
        except asyncio.TimeoutError:
            self._store._checkin(account_id)
            raise LockTimeout(account_id, self._store.lock_timeout)
        self._held.add(account_id)
        return True

    def _release(self, account_id: str):
        self._held.discard(account_id)
        self._store._locks[account_id].release()
        self._store._checkin(account_id)

    def _current(self, account_id: str) -> Optional[Account]:
        if account_id in self._pending:
            return self._pending[account_id]
        return self._store._rows.get(account_id)

    async def lock_for_update(self, account_id: str) -> Optional[Account]:
        acquired = await self._acquire(account_id)
        row = self._current(account_id)
        if row is None:
            # 잠글 행이 없음 (SELECT ... FOR UPDATE 와 동일)
            if acquired:
                self._release(account_id)
            return None
        return row.model_copy()

    async def create(self, account_id: str) -> Account:
        acquired = await self._acquire(account_id)
        if self._current(account_id) is not None:
            if acquired:
                self._release(account_id)
            raise DuplicateKey(account_id)
        account = Account(id=account_id)
        self._pending[account_id] = account
        return account.model_copy()

    async def save(self, account: Account) -> Account:
        stored = self._current(account.id)
        if stored is None or stored.version != account.version:
            raise ConflictError(account.id, account.version)
        saved = account.model_copy(update={"version": account.version + 1, "updated_at": utcnow()})
        self._pending[account.id] = saved
        return saved.model_copy()

    def commit(self):
        self._store._rows.update(self._pending)
        self._pending = {}

    def release_all(self):
        for account_id in list(self._held):
            self._release(account_id)


class MemoryAccountStore(AccountStore):
    """프로세스 내부 저장소. 계좌별 asyncio.Lock 으로 행 락을 흉내냄"""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._rows: Dict[str, Account] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # 락을 잡았거나 기다리는 트랜잭션 수
        self._lock_users: Dict[str, int] = {}

    def _checkout(self, account_id: str) -> asyncio.Lock:
        self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        return self._locks.setdefault(account_id, asyncio.Lock())

    def _checkin(self, account_id: str):
        """아무도 쓰지 않고 행도 없는 계좌의 락은 버림 (롤백된 생성, 없는 계좌 조회)"""
        self._lock_users[account_id] -= 1
        if self._lock_users[account_id] == 0:
            del self._lock_users[account_id]
            if account_id not in self._rows:
                del self._locks[account_id]

    @asynccontextmanager
    async def transaction(self):
        txn = MemoryAccountTransaction(self)
        try:
            yield txn
            txn.commit()
        finally:
            txn.release_all()

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        row = self._rows.get(account_id)
        return row.model_copy() if row else None

    def count(self) -> int:
        return len(self._rows)
