from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
# NUMERIC(19, 2)
MAX_BALANCE = Decimal("99999999999999999.99")
WALLET_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class Account(BaseModel):
    id: str
    balance: Decimal = ZERO
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OperationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_id: str = Field(..., alias="walletId", min_length=1, max_length=64, pattern=WALLET_ID_PATTERN)
    operation_type: OperationType = Field(..., alias="operationType")
    amount: Decimal = Field(..., gt=0, max_digits=19, decimal_places=2)


class WalletResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_id: str = Field(..., alias="walletId")
    balance: Decimal


class ErrorResponse(BaseModel):
    error: str
    message: str
