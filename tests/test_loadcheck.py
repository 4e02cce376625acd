import asyncio
from decimal import Decimal

import httpx
import pytest

from wallet.loadcheck import parse_args, run_load_check
from wallet.main import create_app
from wallet.stores.memory import MemoryAccountStore


@pytest.fixture()
def app(test_settings):
    return create_app(store=MemoryAccountStore(), settings=test_settings)


def check(app, **kwargs):
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            return await run_load_check(client, **kwargs)

    return asyncio.run(scenario())


def test_balanced_load_keeps_initial_balance(app, wallet_id):
    result = check(app, wallet_id=wallet_id, deposits=5, withdrawals=5)

    assert result.consistent
    assert result.total_requests == 10
    assert result.success_count == 10
    assert result.failed_count == 0
    assert result.initial_balance == Decimal("1000.00")
    assert result.final_balance == Decimal("1000.00")


def test_overdraw_attempts_fail_but_stay_consistent(app):
    result = check(app, deposits=0, withdrawals=4, amount=Decimal("10.00"), initial=Decimal("25.00"))

    assert result.wallet_id.startswith("loadcheck_")
    assert result.withdrawals_succeeded == 2
    assert result.failed_count == 2
    assert result.final_balance == Decimal("5.00")
    assert result.consistent


def test_without_initial_deposit_starts_from_zero(app, wallet_id):
    result = check(app, wallet_id=wallet_id, deposits=3, withdrawals=0, initial=Decimal("0"))

    assert result.initial_balance == Decimal("0.00")
    assert result.final_balance == Decimal("30.00")
    assert result.consistent


def test_parse_args_defaults():
    args = parse_args([])
    assert args.base_url == "http://localhost:8000"
    assert args.deposits == 5
    assert args.amount == Decimal("10.00")

    args = parse_args(["--deposits", "50", "--amount", "2.50"])
    assert args.deposits == 50
    assert args.amount == Decimal("2.50")
