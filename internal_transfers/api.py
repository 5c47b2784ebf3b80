"""
FastAPI REST API Module

HTTP endpoints for account creation, balance lookup, transfers and audit
history, plus liveness/readiness probes. Business failures map to 4xx
responses; storage faults and timeouts map to generic 5xx responses that
do not leak internal detail.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional
import asyncio
import time
import uuid

from fastapi import FastAPI, HTTPException, Depends, Request, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
import uvicorn

from .config import TransfersConfig, get_config
from .errors import (
    LedgerError, InvalidInputError, AccountNotFoundError, DuplicateAccountError,
    InsufficientFundsError, OperationTimeoutError
)
from .logging_config import get_logger, log_action, setup_logging
from .migrations import MigrationManager
from .storage import create_storage, decimal_text
from .transfers import TransferEngine, to_decimal


logger = get_logger("transfers.api")


def _parse_decimal(value: Any, field: str) -> Decimal:
    # JSON numbers arrive as floats; their shortest repr is the literal the client sent
    if isinstance(value, float):
        value = repr(value)
    try:
        return to_decimal(value, field)
    except InvalidInputError as e:
        raise ValueError(str(e)) from e


# Pydantic models for API requests/responses
class CreateAccountRequest(BaseModel):
    account_id: int = Field(..., description="Caller-assigned non-zero account id")
    initial_balance: Decimal = Field(..., description="Decimal amount, preferably as a string")

    @field_validator("initial_balance", mode="before")
    @classmethod
    def parse_initial_balance(cls, value):
        return _parse_decimal(value, "initial_balance")

    @model_validator(mode="after")
    def check_values(self):
        if self.account_id == 0:
            raise ValueError("account_id must be non-zero")
        if self.initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        return self


class TransactionRequest(BaseModel):
    source_account_id: int
    destination_account_id: int
    amount: Decimal = Field(..., description="Decimal amount, preferably as a string")

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, value):
        return _parse_decimal(value, "amount")

    @model_validator(mode="after")
    def check_values(self):
        if self.source_account_id == 0 or self.destination_account_id == 0:
            raise ValueError("account_id must be non-zero")
        if self.source_account_id == self.destination_account_id:
            raise ValueError("source and destination must differ")
        if self.amount <= 0:
            raise ValueError("amount must be > 0")
        return self


class AccountResponse(BaseModel):
    account_id: int
    balance: str


class TransactionResponse(BaseModel):
    transaction_id: Optional[int]
    status: str


class RequestLogger:
    """HTTP middleware logging one structured line per request"""

    async def __call__(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = correlation_id
        log_action(
            logger, "info", f"{request.method} {request.url.path} {response.status_code}",
            action="http_request", correlation_id=correlation_id,
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": elapsed_ms
            }
        )
        return response


def _server_fault(exc: LedgerError, what: str) -> HTTPException:
    """Generic 5xx for timeouts and storage faults"""
    if isinstance(exc, OperationTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="request timed out")
    logger.error(f"{what} failed: {type(exc).__name__}: {exc}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")


# Dependency to get the transfer engine
def get_engine(request: Request) -> TransferEngine:
    return request.app.state.engine


def build_engine(config: TransfersConfig) -> TransferEngine:
    """Create storage from configuration, migrate it if enabled, wrap it in an engine"""
    storage = create_storage(
        config.database_url,
        min_connections=config.database_pool_min,
        max_connections=config.database_pool_max,
        busy_timeout=config.request_timeout_seconds
    )
    if config.auto_migrate:
        MigrationManager(storage).migrate_up()
    return TransferEngine(storage, default_timeout=config.request_timeout_seconds)


def create_app(engine: Optional[TransferEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    owns_storage = engine is None
    if engine is None:
        engine = build_engine(get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_storage:
            engine.storage.close()

    app = FastAPI(
        title="Internal Transfers API",
        description="Account balances and atomic transfers between accounts",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.middleware("http")(RequestLogger())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = [
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                            content={"detail": "invalid request", "errors": messages})

    # Health endpoints
    @app.get("/healthz")
    async def health_check():
        """Liveness probe"""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readiness_check(engine: TransferEngine = Depends(get_engine)):
        """Readiness probe: the store must answer"""
        try:
            await asyncio.to_thread(engine.storage.ping)
        except LedgerError as e:
            logger.warning(f"Readiness check failed: {e}")
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                content={"status": "db not ready"})
        return {"status": "ok"}

    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    async def create_account(
        request: CreateAccountRequest,
        engine: TransferEngine = Depends(get_engine)
    ):
        """Create a new account"""
        try:
            await asyncio.to_thread(engine.create_account, request.account_id, request.initial_balance)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DuplicateAccountError:
            raise HTTPException(status_code=409, detail="account already exists")
        except LedgerError as e:
            raise _server_fault(e, "create account")

        return {"account_id": request.account_id, "message": "Account created successfully"}

    @app.get("/accounts/{account_id}", response_model=AccountResponse)
    async def get_account(
        account_id: int,
        engine: TransferEngine = Depends(get_engine)
    ):
        """Get account balance"""
        try:
            balance = await asyncio.to_thread(engine.get_balance, account_id)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountNotFoundError:
            raise HTTPException(status_code=404, detail="account not found")
        except LedgerError as e:
            raise _server_fault(e, "get account")

        return AccountResponse(account_id=account_id, balance=decimal_text(balance))

    @app.get("/accounts/{account_id}/transactions")
    async def get_account_transactions(
        account_id: int,
        limit: int = Query(50, ge=1, le=1000),
        engine: TransferEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        """Audit history of transfer attempts touching an account"""
        try:
            records = await asyncio.to_thread(engine.list_transactions, account_id, limit)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LedgerError as e:
            raise _server_fault(e, "list transactions")

        transactions: List[Dict[str, Any]] = [record.to_dict() for record in records]
        return {"account_id": account_id, "transactions": transactions}

    @app.post("/transactions", response_model=TransactionResponse)
    async def create_transaction(
        request: TransactionRequest,
        engine: TransferEngine = Depends(get_engine)
    ):
        """Transfer money between two accounts"""
        try:
            record = await asyncio.to_thread(
                engine.transfer,
                request.source_account_id, request.destination_account_id, request.amount
            )
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountNotFoundError:
            raise HTTPException(status_code=404, detail="account not found")
        except InsufficientFundsError:
            raise HTTPException(status_code=409, detail="insufficient funds")
        except LedgerError as e:
            raise _server_fault(e, "transfer")

        return TransactionResponse(transaction_id=record.id if record else None, status="succeeded")

    return app


def run_server(config: Optional[TransfersConfig] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = config or get_config()
    setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "internal_transfers.api:create_app",
        factory=True,
        host=config.api_host,
        port=config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
