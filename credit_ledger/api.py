import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .models import (
    CREDIT_PACKAGES,
    Account,
    AccountBalance,
    ApprovalResponse,
    ApprovePaymentRequest,
    CreatePortfolioRequest,
    CreditDrainResponse,
    CreditPackage,
    LedgerHistoryResponse,
    PaymentRequest,
    PaymentStatus,
    PendingCredit,
    Portfolio,
    PublicationResponse,
    RejectPaymentRequest,
    SubmitPaymentRequest,
)
from .payments import PaymentRequestService
from .publishing import PublicationGate
from .reconciliation import CreditQueue
from .retry import RetryConfig
from .service import (
    ConflictError,
    InMemoryStorage,
    InsufficientCreditsError,
    LedgerService,
    LedgerServiceError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UpstreamUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


class RequestContext(BaseModel):
    account_id: str
    is_admin: bool = False


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are answered like any other validation error."""
    messages = [
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "; ".join(messages),
            "code": ValidationError.code,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_payments(request: Request) -> PaymentRequestService:
    return request.app.state.payments


def get_gate(request: Request) -> PublicationGate:
    return request.app.state.gate


def get_pending_credits(request: Request) -> CreditQueue:
    return request.app.state.pending_credits


def get_context(
    request: Request,
    x_account_id: Optional[str] = Header(default=None),
    x_account_role: Optional[str] = Header(default=None),
) -> RequestContext:
    """Identity comes from the upstream identity provider as request headers."""
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthenticated")
    ctx = RequestContext(
        account_id=x_account_id.strip(),
        is_admin=(x_account_role or "").strip().lower() == "admin",
    )
    request.app.state.ledger.open_account(ctx.account_id, request.app.state.settings.initial_credits)
    return ctx


def require_admin(ctx: RequestContext = Depends(get_context)) -> RequestContext:
    if not ctx.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return ctx


def _require_owner(ctx: RequestContext, account_id: str) -> None:
    if not ctx.is_admin and ctx.account_id != account_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your account")


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credit-ledger"}


@router.get("/credit-packages", response_model=list[CreditPackage], tags=["Payments"])
def list_credit_packages() -> list[CreditPackage]:
    return CREDIT_PACKAGES


@router.post("/payment-requests", response_model=PaymentRequest, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def submit_payment_request(
    body: SubmitPaymentRequest,
    ctx: RequestContext = Depends(get_context),
    payments: PaymentRequestService = Depends(get_payments),
) -> PaymentRequest:
    return payments.submit(
        ctx.account_id,
        body.amount_paid,
        body.credits_requested,
        body.payment_method,
        body.transaction_reference,
        body.proof_image_ref,
    )


@router.get("/payment-requests", response_model=list[PaymentRequest], tags=["Payments"])
def list_payment_requests(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    ctx: RequestContext = Depends(get_context),
    payments: PaymentRequestService = Depends(get_payments),
) -> list[PaymentRequest]:
    account_id = None if ctx.is_admin else ctx.account_id
    return payments.list_requests(status=status_filter, account_id=account_id)


@router.get("/payment-requests/{request_id}", response_model=PaymentRequest, tags=["Payments"])
def get_payment_request(
    request_id: UUID,
    ctx: RequestContext = Depends(get_context),
    payments: PaymentRequestService = Depends(get_payments),
) -> PaymentRequest:
    record = payments.get_request(request_id)
    _require_owner(ctx, record.account_id)
    return record


@router.post("/payment-requests/{request_id}/approve", response_model=ApprovalResponse, tags=["Admin"])
def approve_payment_request(
    request_id: UUID,
    body: Optional[ApprovePaymentRequest] = None,
    ctx: RequestContext = Depends(require_admin),
    payments: PaymentRequestService = Depends(get_payments),
) -> ApprovalResponse:
    body = body or ApprovePaymentRequest()
    return payments.approve(request_id, ctx.account_id, body.credits_override, body.note)


@router.post("/payment-requests/{request_id}/reject", response_model=PaymentRequest, tags=["Admin"])
def reject_payment_request(
    request_id: UUID,
    body: RejectPaymentRequest,
    ctx: RequestContext = Depends(require_admin),
    payments: PaymentRequestService = Depends(get_payments),
) -> PaymentRequest:
    return payments.reject(request_id, ctx.account_id, body.reason)


@router.post("/portfolios", response_model=Portfolio, status_code=status.HTTP_201_CREATED, tags=["Portfolios"])
def create_portfolio(
    body: CreatePortfolioRequest,
    ctx: RequestContext = Depends(get_context),
    gate: PublicationGate = Depends(get_gate),
) -> Portfolio:
    return gate.register_portfolio(ctx.account_id, body.username)


@router.get("/portfolios/by-username/{username}", response_model=Portfolio, tags=["Portfolios"])
def get_public_portfolio(username: str, gate: PublicationGate = Depends(get_gate)) -> Portfolio:
    return gate.get_published_by_username(username)


@router.get("/portfolios/{portfolio_id}", response_model=Portfolio, tags=["Portfolios"])
def get_portfolio(
    portfolio_id: UUID,
    ctx: RequestContext = Depends(get_context),
    gate: PublicationGate = Depends(get_gate),
) -> Portfolio:
    portfolio = gate.get_portfolio(portfolio_id)
    _require_owner(ctx, portfolio.account_id)
    return portfolio


@router.post("/portfolios/{portfolio_id}/publish", response_model=PublicationResponse, tags=["Portfolios"])
def publish_portfolio(
    portfolio_id: UUID,
    ctx: RequestContext = Depends(get_context),
    gate: PublicationGate = Depends(get_gate),
) -> PublicationResponse:
    _require_owner(ctx, gate.get_portfolio(portfolio_id).account_id)
    return gate.publish(portfolio_id)


@router.post("/portfolios/{portfolio_id}/unpublish", response_model=PublicationResponse, tags=["Portfolios"])
def unpublish_portfolio(
    portfolio_id: UUID,
    ctx: RequestContext = Depends(get_context),
    gate: PublicationGate = Depends(get_gate),
) -> PublicationResponse:
    _require_owner(ctx, gate.get_portfolio(portfolio_id).account_id)
    return gate.unpublish(portfolio_id)


@router.get("/accounts", response_model=list[Account], tags=["Admin"])
def list_accounts(
    ctx: RequestContext = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger),
) -> list[Account]:
    return ledger.list_accounts()


@router.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_account_balance(
    account_id: str,
    ctx: RequestContext = Depends(get_context),
    ledger: LedgerService = Depends(get_ledger),
) -> AccountBalance:
    _require_owner(ctx, account_id)
    return AccountBalance(account_id=account_id, credits=ledger.balance(account_id))


@router.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_account_ledger(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_context),
    ledger: LedgerService = Depends(get_ledger),
) -> LedgerHistoryResponse:
    _require_owner(ctx, account_id)
    return ledger.get_ledger_history(account_id, limit, offset)


@router.get("/admin/pending-credits", response_model=list[PendingCredit], tags=["Admin"])
def list_pending_credits(
    ctx: RequestContext = Depends(require_admin),
    queue: CreditQueue = Depends(get_pending_credits),
) -> list[PendingCredit]:
    return queue.pending()


@router.post("/admin/pending-credits/drain", response_model=CreditDrainResponse, tags=["Admin"])
def drain_pending_credits(
    ctx: RequestContext = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger),
    queue: CreditQueue = Depends(get_pending_credits),
) -> CreditDrainResponse:
    return queue.drain(ledger)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Portfolio Credit Ledger API",
        description="Credit balances, manually reviewed payment requests and publication gating",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ledger = LedgerService(storage)
    retry_config = RetryConfig.from_settings(settings)
    pending_credits = CreditQueue()
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.pending_credits = pending_credits
    app.state.payments = PaymentRequestService(ledger, settings.max_credit_grant, retry_config, pending_credits)
    app.state.gate = PublicationGate(ledger, retry_config, pending_credits)

    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
