from decimal import Decimal


class WalletError(Exception):
    """지갑 처리 실패의 기본 클래스"""


class InvalidInput(WalletError):
    """잘못된 금액/연산 종류. 재시도하지 않음"""


class InsufficientFunds(WalletError):
    def __init__(self, account_id: str, balance: Decimal, amount: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds in wallet {account_id}. "
            f"Current balance: {balance}, Requested amount: {amount}"
        )


class Contention(WalletError):
    """재시도 한도 초과 또는 락 대기 시간 초과. 호출자가 다시 시도해도 안전함"""


class NotFound(WalletError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Wallet not found: {account_id}")


class StoreUnavailable(WalletError):
    """저장소 연결 실패 등"""
