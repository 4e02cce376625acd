import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
import structlog

from ..database import Database
from ..exceptions import StoreUnavailable
from ..models import Account
from .base import AccountStore, AccountTransaction, ConflictError, DuplicateKey, LockTimeout

logger = structlog.get_logger(__name__)

COLUMNS = "wallet_id, balance, version, created_at, updated_at"

UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)


def _to_account(row) -> Account:
    return Account(
        id=row['wallet_id'],
        balance=row['balance'],
        version=row['version'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class PostgresAccountTransaction(AccountTransaction):
    def __init__(self, conn: asyncpg.Connection, lock_timeout: float):
        self.conn = conn
        self.lock_timeout = lock_timeout

    async def lock_for_update(self, account_id: str) -> Optional[Account]:
        try:
            row = await self.conn.fetchrow(
                f"SELECT {COLUMNS} FROM wallets WHERE wallet_id = $1 FOR UPDATE",
                account_id
            )
        except asyncpg.exceptions.LockNotAvailableError:
            raise LockTimeout(account_id, self.lock_timeout)
        return _to_account(row) if row else None

    async def create(self, account_id: str) -> Account:
        try:
            # 세이브포인트: 유니크 위반이 나도 바깥 트랜잭션은 계속 쓸 수 있음
            async with self.conn.transaction():
                row = await self.conn.fetchrow(
                    f"INSERT INTO wallets (wallet_id) VALUES ($1) RETURNING {COLUMNS}",
                    account_id
                )
        except asyncpg.exceptions.UniqueViolationError:
            raise DuplicateKey(account_id)
        except asyncpg.exceptions.LockNotAvailableError:
            raise LockTimeout(account_id, self.lock_timeout)
        return _to_account(row)

    async def save(self, account: Account) -> Account:
        # 읽은 version 과 같을 때만 갱신 (UPDATE 0 이면 충돌)
        row = await self.conn.fetchrow(
            f"""UPDATE wallets
                SET balance = $1, version = version + 1, updated_at = CURRENT_TIMESTAMP
                WHERE wallet_id = $2 AND version = $3
                RETURNING {COLUMNS}""",
            account.balance, account.id, account.version
        )
        if row is None:
            raise ConflictError(account.id, account.version)
        return _to_account(row)


class PostgresAccountStore(AccountStore):
    """SELECT FOR UPDATE 행 락 + version 컬럼 검사"""

    def __init__(self, db: Database, lock_timeout: float = 5.0):
        self.db = db
        self.lock_timeout = lock_timeout

    @classmethod
    def from_url(cls, db_url: str, lock_timeout: float = 5.0, min_size: int = 1, max_size: int = 10):
        return cls(Database(db_url, min_size=min_size, max_size=max_size), lock_timeout=lock_timeout)

    async def initialize(self):
        try:
            await self.db.initialize_db()
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"database unavailable: {e}") from e

    async def close(self):
        await self.db.close_pool()

    @asynccontextmanager
    async def transaction(self):
        try:
            async with self.db.get_connection() as conn:
                async with conn.transaction(isolation="read_committed"):
                    await conn.execute(
                        "SELECT set_config('lock_timeout', $1, true)",
                        f"{int(self.lock_timeout * 1000)}ms"
                    )
                    yield PostgresAccountTransaction(conn, self.lock_timeout)
        except UNAVAILABLE_ERRORS as e:
            logger.error("database unavailable", error=str(e))
            raise StoreUnavailable(f"database unavailable: {e}") from e

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {COLUMNS} FROM wallets WHERE wallet_id = $1",
                    account_id
                )
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"database unavailable: {e}") from e
        return _to_account(row) if row else None
