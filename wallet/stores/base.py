from abc import ABC, abstractmethod
from typing import AsyncContextManager, Optional

from ..models import Account


class StoreError(Exception):
    pass


class DuplicateKey(StoreError):
    """동시에 생성한 다른 트랜잭션이 먼저 커밋함"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"account {account_id} already exists")


class ConflictError(StoreError):
    """읽은 이후 다른 쓰기가 커밋되어 version이 달라짐"""

    def __init__(self, account_id: str, expected_version: Optional[int]):
        self.account_id = account_id
        self.expected_version = expected_version
        super().__init__(f"version conflict on account {account_id} (expected {expected_version})")


class LockTimeout(StoreError):
    def __init__(self, account_id: str, timeout: float):
        self.account_id = account_id
        self.timeout = timeout
        super().__init__(f"lock wait on account {account_id} exceeded {timeout}s")


class AccountTransaction(ABC):
    """트랜잭션 범위 안에서만 유효한 계좌 연산"""

    @abstractmethod
    async def lock_for_update(self, account_id: str) -> Optional[Account]:
        """배타 락을 잡고 현재 상태를 읽음. 행이 없으면 None"""

    @abstractmethod
    async def create(self, account_id: str) -> Account:
        """잔액 0 계좌 생성. 이미 있으면 DuplicateKey"""

    @abstractmethod
    async def save(self, account: Account) -> Account:
        """account.version 이 저장된 값과 같을 때만 반영하고 version + 1"""


class AccountStore(ABC):
    @abstractmethod
    def transaction(self) -> AsyncContextManager[AccountTransaction]:
        """정상 종료 시 커밋, 예외 시 롤백. 어느 쪽이든 락은 해제됨"""

    @abstractmethod
    async def find_by_id(self, account_id: str) -> Optional[Account]:
        """락 없는 조회"""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass
