import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .engine import BalanceEngine
from .exceptions import Contention, InsufficientFunds, InvalidInput, NotFound, StoreUnavailable, WalletError
from .logging_config import setup_logging
from .stores import AccountStore, build_store
from .views import wallet

logger = structlog.get_logger(__name__)

# 예외 -> (HTTP 상태, error 값)
ERROR_STATUS = [
    (InvalidInput, 400, "Bad Request"),
    (InsufficientFunds, 400, "Bad Request"),
    (NotFound, 404, "Not Found"),
    (Contention, 409, "Conflict"),
    (StoreUnavailable, 503, "Service Unavailable"),
]


def error_response(status: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": error, "message": message})


def status_for(exc: WalletError):
    for exc_type, status, error in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status, error
    return 500, "Internal Server Error"


def create_app(store: Optional[AccountStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    owns_store = store is None
    if store is None:
        store = build_store(settings)
    engine = BalanceEngine.from_settings(store, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()
        logger.info("Wallet service started", store=type(store).__name__)
        try:
            yield
        finally:
            if owns_store:
                await store.close()
            logger.info("Wallet service stopped")

    app = FastAPI(
        title="Wallet Balance Service",
        description="계좌별 행 락 + version 검사로 동시 입출금을 처리하는 지갑 서비스",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.store = store

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=round(time.time() - start_time, 4)
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if any(err.get("type") == "json_invalid" for err in errors):
            logger.warning("Malformed JSON", method=request.method, path=request.url.path)
            return error_response(400, "Bad Request", "Malformed JSON request body")
        message = "; ".join(
            f"{'.'.join(str(x) for x in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in errors
        )
        logger.warning("Validation failed", method=request.method, path=request.url.path, detail=message)
        return error_response(400, "Validation Failed", message)

    @app.exception_handler(WalletError)
    async def wallet_error_handler(request: Request, exc: WalletError):
        status, error = status_for(exc)
        logger.warning(
            "Wallet operation failed",
            method=request.method,
            path=request.url.path,
            status_code=status,
            error=type(exc).__name__,
            detail=str(exc)
        )
        return error_response(status, error, str(exc))

    app.include_router(wallet.router)

    @app.get("/")
    async def root():
        """메인 페이지"""
        return {
            "message": "Wallet Balance Service",
            "version": "1.0.0",
            "store": type(store).__name__,
            "endpoints": [
                "POST /api/v1/wallet - 입금/출금 (DEPOSIT, WITHDRAW)",
                "GET /api/v1/wallets/{walletId} - 잔액 조회",
            ],
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check():
        """헬스체크"""
        return {"status": "healthy"}

    return app


app = create_app()
