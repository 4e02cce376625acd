import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..database import RedisClient
from ..exceptions import StoreUnavailable
from ..models import Account, utcnow
from .base import AccountStore, AccountTransaction, ConflictError, DuplicateKey, LockTimeout

logger = structlog.get_logger(__name__)

UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

# 토큰이 같을 때만 삭제. GET 과 DEL 을 서버에서 한 번에 실행
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def account_key(account_id: str) -> str:
    return f"wallet:{account_id}"


def lock_key(account_id: str) -> str:
    return f"wallet_lock:{account_id}"


def _encode(account: Account) -> Dict[str, str]:
    return {
        "balance": str(account.balance),
        "version": str(account.version),
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }


def _decode(account_id: str, data: Dict[str, str]) -> Account:
    return Account(
        id=account_id,
        balance=Decimal(data["balance"]),
        version=int(data["version"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


class RedisAccountTransaction(AccountTransaction):
    def __init__(self, client, lock_timeout: float, lock_ttl: float, retry_delay: float):
        self.client = client
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.retry_delay = retry_delay
        self._held: Dict[str, str] = {}
        # 락을 잡은 시점의 version. None 이면 이 트랜잭션이 새로 만든 계좌
        self._read_versions: Dict[str, Optional[int]] = {}
        self._pending: Dict[str, Account] = {}

    async def _acquire(self, account_id: str) -> bool:
        """SET NX PX 로 락 획득. 타임아웃까지 재시도"""
        if account_id in self._held:
            return False
        token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout
        while True:
            acquired = await self.client.set(
                lock_key(account_id),
                token,
                nx=True,
                px=int(self.lock_ttl * 1000)
            )
            if acquired:
                self._held[account_id] = token
                return True
            if loop.time() >= deadline:
                raise LockTimeout(account_id, self.lock_timeout)
            await asyncio.sleep(self.retry_delay)

    async def _release(self, account_id: str):
        token = self._held.pop(account_id)
        key = lock_key(account_id)
        released = await self.client.eval(RELEASE_LOCK_SCRIPT, 1, key, token)
        if released:
            logger.debug("lock released", account_id=account_id)
        else:
            logger.warning("lock expired before release", account_id=account_id)

    async def release_all(self):
        for account_id in list(self._held):
            await self._release(account_id)

    async def lock_for_update(self, account_id: str) -> Optional[Account]:
        acquired = await self._acquire(account_id)
        if account_id in self._pending:
            return self._pending[account_id].model_copy()
        data = await self.client.hgetall(account_key(account_id))
        if not data:
            if acquired:
                await self._release(account_id)
            return None
        account = _decode(account_id, data)
        self._read_versions.setdefault(account_id, account.version)
        return account

    async def create(self, account_id: str) -> Account:
        acquired = await self._acquire(account_id)
        if account_id in self._pending or await self.client.exists(account_key(account_id)):
            if acquired:
                await self._release(account_id)
            raise DuplicateKey(account_id)
        account = Account(id=account_id)
        self._pending[account_id] = account
        self._read_versions[account_id] = None
        return account.model_copy()

    async def save(self, account: Account) -> Account:
        if account.id in self._pending:
            current_version = self._pending[account.id].version
        else:
            stored = await self.client.hget(account_key(account.id), "version")
            current_version = int(stored) if stored is not None else None
            self._read_versions.setdefault(account.id, account.version)
        if current_version != account.version:
            raise ConflictError(account.id, account.version)
        saved = account.model_copy(update={"version": account.version + 1, "updated_at": utcnow()})
        self._pending[account.id] = saved
        return saved.model_copy()

    async def commit(self):
        """커밋 시점에 version 을 다시 확인하고 WATCH/MULTI 로 반영"""
        for account_id, account in self._pending.items():
            key = account_key(account_id)
            expected = self._read_versions.get(account_id)
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    stored = await pipe.hget(key, "version")
                    stored_version = int(stored) if stored is not None else None
                    if stored_version != expected:
                        raise ConflictError(account_id, expected)
                    pipe.multi()
                    pipe.hset(key, mapping=_encode(account))
                    await pipe.execute()
                except WatchError:
                    raise ConflictError(account_id, expected)
        self._pending = {}


class RedisAccountStore(AccountStore):
    """Redis 분산락(SET NX PX) + version 비교"""

    def __init__(
        self,
        redis_client: RedisClient,
        lock_timeout: float = 5.0,
        lock_ttl: float = 10.0,
        retry_delay: float = 0.01,
    ):
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.retry_delay = retry_delay

    @classmethod
    def from_url(cls, redis_url: str, lock_timeout: float = 5.0, lock_ttl: float = 10.0):
        return cls(RedisClient(redis_url), lock_timeout=lock_timeout, lock_ttl=lock_ttl)

    async def initialize(self):
        try:
            client = await self.redis_client.get_client()
            await client.ping()
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"redis unavailable: {e}") from e

    async def close(self):
        await self.redis_client.close_client()

    @asynccontextmanager
    async def transaction(self):
        try:
            client = await self.redis_client.get_client()
            txn = RedisAccountTransaction(client, self.lock_timeout, self.lock_ttl, self.retry_delay)
            try:
                yield txn
                await txn.commit()
            finally:
                await txn.release_all()
        except UNAVAILABLE_ERRORS as e:
            logger.error("redis unavailable", error=str(e))
            raise StoreUnavailable(f"redis unavailable: {e}") from e

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        try:
            client = await self.redis_client.get_client()
            data = await client.hgetall(account_key(account_id))
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"redis unavailable: {e}") from e
        return _decode(account_id, data) if data else None
