import logging

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthService
from .config import get_config
from .errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidCredentialsError,
    NotFoundError,
    SelfTransferError,
    StorageIOError,
    StoreBusyError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    AuthResponse, ErrorResponse, LoginRequest, SignupRequest,
    TransactionHistoryResponse, TransferRequest, TransferResult, UserProfile,
)
from .service import LedgerService
from .store import AccountStore

config = get_config()
setup_logging(config.log_level, config.log_format)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mobile Money Wallet API",
    description="Wallet simulator with signup bonuses, referral rewards and account-to-account transfers",
    version="1.0.0",
    responses={500: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = AccountStore(config.data_file or None, lock_timeout=config.lock_timeout_seconds)
ledger_service = LedgerService(store, idempotency_cache_size=config.idempotency_cache_size)
auth_service = AuthService(ledger_service, config)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
    fields = [f for f in fields if f]
    message = f"Invalid or missing fields: {', '.join(fields)}" if fields else "Invalid request body."
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})


@app.exception_handler(StoreBusyError)
async def store_busy_handler(request: Request, exc: StoreBusyError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"message": str(exc)},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(StorageIOError)
async def storage_error_handler(request: Request, exc: StorageIOError):
    logger.error("Storage failure", exc_info=exc, extra={"action": "storage", "resource": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal storage error."},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "wallet"}


@app.post("/api/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def signup(request: SignupRequest) -> AuthResponse:
    try:
        account = auth_service.signup(request.username, request.password, request.referral_code)
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return AuthResponse(message="User created successfully!", user=account.to_profile())


@app.post("/api/login", response_model=AuthResponse, tags=["Auth"])
def login(request: LoginRequest) -> AuthResponse:
    try:
        account = auth_service.login(request.username, request.password)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return AuthResponse(message="Login successful", user=account.to_profile())


@app.get("/api/user/{username}", response_model=UserProfile, tags=["Users"])
def get_user(username: str) -> UserProfile:
    try:
        return ledger_service.get_account(username).to_profile()
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")


@app.get("/api/user/{username}/transactions", response_model=TransactionHistoryResponse, tags=["Users"])
def get_user_transactions(
    username: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> TransactionHistoryResponse:
    try:
        return ledger_service.get_transaction_history(username, limit, offset)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")


@app.post("/api/transfer", response_model=TransferResult, tags=["Transfers"])
def transfer(request: TransferRequest) -> TransferResult:
    try:
        return ledger_service.transfer(
            request.from_username,
            request.to_account_number,
            request.amount,
            idempotency_key=request.idempotency_key,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (InsufficientFundsError, SelfTransferError, ValidationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def main():
    import uvicorn
    uvicorn.run(app, host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
