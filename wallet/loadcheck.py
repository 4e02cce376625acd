"""동시 입출금 부하 검증

실행 중인 지갑 API 에 입금/출금 요청을 동시에 보내고, 성공한 요청만으로
계산한 기대 잔액과 실제 최종 잔액이 같은지 확인한다.

    python -m wallet.loadcheck --base-url http://localhost:8000 --deposits 50 --withdrawals 50
"""
import argparse
import asyncio
import sys
import time
import uuid
from decimal import Decimal
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from .logging_config import setup_logging
from .models import ZERO, OperationType

logger = structlog.get_logger(__name__)


class OperationResult(BaseModel):
    operation_type: OperationType
    status_code: int
    success: bool
    balance: Optional[Decimal] = None
    error: Optional[str] = None
    duration: float


class LoadCheckResult(BaseModel):
    wallet_id: str
    total_requests: int
    success_count: int
    failed_count: int
    deposits_succeeded: int
    withdrawals_succeeded: int
    initial_balance: Decimal
    expected_balance: Decimal
    final_balance: Decimal
    consistent: bool
    total_execution_time: float


async def operate(client: httpx.AsyncClient, wallet_id: str, operation_type: OperationType, amount: Decimal) -> OperationResult:
    start_time = time.time()
    response = await client.post(
        "/api/v1/wallet",
        json={"walletId": wallet_id, "operationType": operation_type.value, "amount": str(amount)}
    )
    body = response.json()
    success = response.status_code == 200
    return OperationResult(
        operation_type=operation_type,
        status_code=response.status_code,
        success=success,
        balance=Decimal(str(body["balance"])) if success else None,
        error=None if success else body.get("message"),
        duration=time.time() - start_time
    )


async def fetch_balance(client: httpx.AsyncClient, wallet_id: str) -> Decimal:
    response = await client.get(f"/api/v1/wallets/{wallet_id}")
    if response.status_code == 404:
        return ZERO
    response.raise_for_status()
    return Decimal(str(response.json()["balance"]))


async def run_load_check(
    client: httpx.AsyncClient,
    wallet_id: Optional[str] = None,
    deposits: int = 5,
    withdrawals: int = 5,
    amount: Decimal = Decimal("10.00"),
    initial: Decimal = Decimal("1000.00"),
) -> LoadCheckResult:
    wallet_id = wallet_id or f"loadcheck_{uuid.uuid4().hex[:12]}"

    # 1. 초기 잔액 입금
    if initial > 0:
        seeded = await operate(client, wallet_id, OperationType.DEPOSIT, initial)
        if not seeded.success:
            raise RuntimeError(f"initial deposit failed: {seeded.status_code} {seeded.error}")
    initial_balance = await fetch_balance(client, wallet_id)

    # 2. 입금/출금 요청을 동시에 실행
    tasks = [operate(client, wallet_id, OperationType.DEPOSIT, amount) for _ in range(deposits)]
    tasks += [operate(client, wallet_id, OperationType.WITHDRAW, amount) for _ in range(withdrawals)]

    start_time = time.time()
    results = await asyncio.gather(*tasks)
    total_time = time.time() - start_time

    # 3. 최종 잔액 확인
    final_balance = await fetch_balance(client, wallet_id)

    deposits_ok = sum(1 for r in results if r.success and r.operation_type is OperationType.DEPOSIT)
    withdrawals_ok = sum(1 for r in results if r.success and r.operation_type is OperationType.WITHDRAW)
    success_count = deposits_ok + withdrawals_ok
    expected_balance = initial_balance + amount * deposits_ok - amount * withdrawals_ok

    result = LoadCheckResult(
        wallet_id=wallet_id,
        total_requests=len(results),
        success_count=success_count,
        failed_count=len(results) - success_count,
        deposits_succeeded=deposits_ok,
        withdrawals_succeeded=withdrawals_ok,
        initial_balance=initial_balance,
        expected_balance=expected_balance,
        final_balance=final_balance,
        consistent=final_balance == expected_balance,
        total_execution_time=total_time
    )

    if result.consistent:
        logger.info("Load check passed", wallet_id=wallet_id, final_balance=str(final_balance))
    else:
        logger.error(
            "Load check failed: balance mismatch",
            wallet_id=wallet_id,
            expected=str(expected_balance),
            actual=str(final_balance)
        )
    return result


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="지갑 API 동시 입출금 정합성 검증")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--wallet-id", default=None)
    parser.add_argument("--deposits", type=int, default=5)
    parser.add_argument("--withdrawals", type=int, default=5)
    parser.add_argument("--amount", type=Decimal, default=Decimal("10.00"))
    parser.add_argument("--initial", type=Decimal, default=Decimal("1000.00"))
    parser.add_argument("--timeout", type=float, default=30.0)
    return parser.parse_args(argv)


async def _main(args) -> LoadCheckResult:
    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        return await run_load_check(
            client,
            wallet_id=args.wallet_id,
            deposits=args.deposits,
            withdrawals=args.withdrawals,
            amount=args.amount,
            initial=args.initial
        )


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(fmt="console")
    result = asyncio.run(_main(args))
    print(result.model_dump_json(indent=2))
    return 0 if result.consistent else 1


if __name__ == "__main__":
    sys.exit(main())
