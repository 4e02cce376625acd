import asyncio
import random
import re
from decimal import Decimal, InvalidOperation

import structlog

from .config import Settings
from .exceptions import Contention, InsufficientFunds, InvalidInput, NotFound
from .models import CENTS, MAX_BALANCE, WALLET_ID_PATTERN, Account, OperationType, WalletResponse
from .stores.base import AccountStore, AccountTransaction, ConflictError, DuplicateKey, LockTimeout

logger = structlog.get_logger(__name__)


def parse_operation_type(kind) -> OperationType:
    if isinstance(kind, OperationType):
        return kind
    if isinstance(kind, str):
        try:
            return OperationType(kind.strip().upper())
        except ValueError:
            pass
    raise InvalidInput(f"Unknown operation type: {kind!r}")


def parse_amount(amount) -> Decimal:
    """양수, 소수점 2자리 이하, 정수부 17자리 이하"""
    if isinstance(amount, (bool, float)):
        raise InvalidInput(f"Amount must be a decimal value, got {type(amount).__name__}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"Amount is not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidInput(f"Amount is not a number: {amount!r}")
    if value <= 0:
        raise InvalidInput("Amount must be greater than 0")
    if value > MAX_BALANCE:
        raise InvalidInput("Amount must have at most 17 integer digits")
    if value.quantize(CENTS) != value:
        raise InvalidInput("Amount must have at most 2 decimal places")
    return value.quantize(CENTS)


def _check_account_id(account_id) -> str:
    """1~64자, 영문/숫자/_/- 만 허용 (wallets.wallet_id VARCHAR(64))"""
    if not isinstance(account_id, str) or not account_id:
        raise InvalidInput("Wallet ID is required")
    if len(account_id) > 64 or not re.fullmatch(WALLET_ID_PATTERN, account_id):
        raise InvalidInput(f"Invalid wallet ID: {account_id!r}")
    return account_id


class BalanceEngine:
    """계좌별 락 -> 읽기 -> 계산 -> 저장(version 확인) 을 한 트랜잭션으로 실행"""

    def __init__(
        self,
        store: AccountStore,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        multiplier: float = 2.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier

    @classmethod
    def from_settings(cls, store: AccountStore, settings: Settings) -> "BalanceEngine":
        return cls(
            store,
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
        )

    def backoff(self, attempt: int) -> float:
        # attempt=1 이면 0.1초 근처, attempt=2 이면 0.2초 근처...
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return delay + random.uniform(0, delay / 2)

    async def apply_operation(self, account_id: str, kind, amount) -> WalletResponse:
        account_id = _check_account_id(account_id)
        operation = parse_operation_type(kind)
        amount = parse_amount(amount)

        logger.debug(
            "Processing operation",
            account_id=account_id,
            operation=operation.value,
            amount=str(amount)
        )

        for attempt in range(1, self.max_attempts + 1):
            try:
                account = await self._attempt(account_id, operation, amount)
            except ConflictError as e:
                if attempt == self.max_attempts:
                    logger.error(
                        "Retry budget exhausted",
                        account_id=account_id,
                        operation=operation.value,
                        attempts=attempt
                    )
                    raise Contention(
                        f"Wallet {account_id} is under concurrent modification, "
                        f"gave up after {attempt} attempts"
                    ) from e
                delay = self.backoff(attempt)
                logger.warning(
                    "Version conflict, retrying",
                    account_id=account_id,
                    attempt=attempt,
                    delay=round(delay, 3)
                )
                await asyncio.sleep(delay)
                continue
            except LockTimeout as e:
                logger.error("Lock wait timed out", account_id=account_id, timeout=e.timeout)
                raise Contention(f"Timed out waiting for lock on wallet {account_id}") from e

            logger.info(
                "Operation completed",
                account_id=account_id,
                operation=operation.value,
                amount=str(amount),
                balance=str(account.balance),
                version=account.version,
                attempt=attempt
            )
            return WalletResponse(wallet_id=account.id, balance=account.balance)

    async def _attempt(self, account_id: str, operation: OperationType, amount: Decimal) -> Account:
        """단일 시도. 예외가 나면 트랜잭션은 롤백됨"""
        async with self.store.transaction() as txn:
            account = await self._lock_or_create(txn, account_id)
            new_balance = self._compute(account, operation, amount)
            saved = await txn.save(account.model_copy(update={"balance": new_balance}))
        return saved

    async def _lock_or_create(self, txn: AccountTransaction, account_id: str) -> Account:
        account = await txn.lock_for_update(account_id)
        if account is not None:
            return account

        try:
            account = await txn.create(account_id)
        except DuplicateKey:
            # 다른 요청이 먼저 생성함 -> 다시 읽기 (생성은 한 번뿐이라 재시도도 한 번)
            logger.info("Wallet created concurrently, re-reading", account_id=account_id)
        else:
            logger.info("Creating new wallet", account_id=account_id)
            return account

        account = await txn.lock_for_update(account_id)
        if account is None:
            raise ConflictError(account_id, None)
        return account

    def _compute(self, account: Account, operation: OperationType, amount: Decimal) -> Decimal:
        current = account.balance
        if operation is OperationType.DEPOSIT:
            new_balance = current + amount
            if new_balance > MAX_BALANCE:
                raise InvalidInput(f"Deposit would exceed the maximum balance of wallet {account.id}")
        else:
            if current < amount:
                logger.warning(
                    "Insufficient funds",
                    account_id=account.id,
                    balance=str(current),
                    amount=str(amount)
                )
                raise InsufficientFunds(account.id, current, amount)
            new_balance = current - amount
        return new_balance.quantize(CENTS)

    async def get_balance(self, account_id: str) -> WalletResponse:
        account_id = _check_account_id(account_id)
        logger.debug("Fetching balance", account_id=account_id)
        account = await self.store.find_by_id(account_id)
        if account is None:
            logger.warning("Wallet not found", account_id=account_id)
            raise NotFound(account_id)
        return WalletResponse(wallet_id=account.id, balance=account.balance.quantize(CENTS))
