from .engine import BalanceEngine
from .exceptions import Contention, InsufficientFunds, InvalidInput, NotFound, StoreUnavailable, WalletError
from .models import Account, OperationType, WalletResponse

__version__ = "1.0.0"

__all__ = [
    "Account",
    "BalanceEngine",
    "Contention",
    "InsufficientFunds",
    "InvalidInput",
    "NotFound",
    "OperationType",
    "StoreUnavailable",
    "WalletError",
    "WalletResponse",
]
