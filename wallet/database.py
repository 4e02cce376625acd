from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
import redis.asyncio as redis

WALLET_SCHEMA = """
    CREATE TABLE IF NOT EXISTS wallets (
        wallet_id VARCHAR(64) PRIMARY KEY,
        balance NUMERIC(19, 2) NOT NULL DEFAULT 0,
        version BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT wallets_balance_non_negative CHECK (balance >= 0)
    )
"""


class Database:
    def __init__(self, db_url: str, min_size: int = 1, max_size: int = 10):
        self.db_url = db_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def init_pool(self):
        """커넥션 풀 초기화"""
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.db_url,
                min_size=self.min_size,
                max_size=self.max_size
            )

    async def close_pool(self):
        """커넥션 풀 종료"""
        if self.pool:
            await self.pool.close()
            self.pool = None
        self._initialized = False

    @asynccontextmanager
    async def get_connection(self):
        """커넥션 가져오기"""
        if not self.pool:
            await self.init_pool()
        async with self.pool.acquire() as conn:
            yield conn

    async def initialize_db(self):
        """테이블 생성. 계좌는 첫 연산 때 만들어지므로 초기 데이터는 넣지 않음"""
        if self._initialized:
            return

        async with self.get_connection() as conn:
            await conn.execute(WALLET_SCHEMA)

        self._initialized = True


class RedisClient:
    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.client: Optional[redis.Redis] = None

    async def init_client(self):
        """Redis 클라이언트 초기화"""
        if self.client is None:
            self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def close_client(self):
        """Redis 클라이언트 종료"""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def get_client(self) -> redis.Redis:
        """Redis 클라이언트 가져오기"""
        if not self.client:
            await self.init_client()
        return self.client
