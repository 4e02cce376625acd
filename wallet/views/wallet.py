from fastapi import APIRouter, Depends, Path, Request

from ..engine import BalanceEngine
from ..models import WALLET_ID_PATTERN, ErrorResponse, OperationRequest, WalletResponse

router = APIRouter(
    prefix="/api/v1",
    tags=["Wallet"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }
)


def get_engine(request: Request) -> BalanceEngine:
    return request.app.state.engine


@router.post("/wallet", response_model=WalletResponse)
async def process_wallet_operation(request: OperationRequest, engine: BalanceEngine = Depends(get_engine)):
    """입금(DEPOSIT) / 출금(WITHDRAW). 처음 보는 지갑은 잔액 0으로 생성"""
    return await engine.apply_operation(request.wallet_id, request.operation_type, request.amount)


@router.get("/wallets/{wallet_id}", response_model=WalletResponse)
async def get_wallet_balance(
    wallet_id: str = Path(..., min_length=1, max_length=64, pattern=WALLET_ID_PATTERN),
    engine: BalanceEngine = Depends(get_engine),
):
    """잔액 조회 (락 없음)"""
    return await engine.get_balance(wallet_id)
