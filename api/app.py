import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import AppConfig, load_config
from core.events import EventBus
from core.identity import IdentityProvider
from core.logging_config import configure_logging
from ledger.errors import InvalidInputError, LedgerServiceError, PermissionDeniedError
from ledger.models import (
    SYSTEM_ACCOUNT,
    AccountBalance,
    AuditReport,
    LedgerHistoryResponse,
    TransactionMetadata,
    TransactionType,
    TransferRequest,
    TransferResult,
)
from ledger.reconciliation import LedgerAuditor
from ledger.storage import InMemoryStorage
from ledger.store import LedgerStore
from ledger.transfers import TransferEngine
from marketplace.listings import ListingService
from marketplace.models import (
    CreateItemRequest,
    Item,
    PurchaseRequest,
    PurchaseResult,
    ReservationResponse,
    ReserveRequest,
    UpdateItemRequest,
)
from marketplace.purchases import PurchaseOrchestrator
from marketplace.reservations import ReservationManager
from rewards.models import RewardProfile, SignupRequest, SignupResult
from rewards.rule_engine import create_default_rules, load_rules
from rewards.service import RewardService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    storage: InMemoryStorage
    events: EventBus
    identity: IdentityProvider
    ledger: LedgerStore
    transfers: TransferEngine
    listings: ListingService
    reservations: ReservationManager
    purchases: PurchaseOrchestrator
    rewards: RewardService
    auditor: LedgerAuditor


def build_services(
    config: Optional[AppConfig] = None,
    storage: Optional[InMemoryStorage] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    config = config or load_config()
    storage = storage or InMemoryStorage()
    events = EventBus()

    transfers = TransferEngine(storage, events, clock=clock)
    rules = load_rules(config.rewards.rules_path) if config.rewards.rules_path else create_default_rules(config.rewards)
    rewards = RewardService(storage, transfers, events, rules=rules, clock=clock)
    rewards.subscribe()

    return Services(
        config=config,
        storage=storage,
        events=events,
        identity=IdentityProvider(
            tokens=config.api.api_tokens,
            allow_header_auth=config.api.allow_header_auth,
            admin_accounts=config.api.admin_accounts,
        ),
        ledger=transfers.ledger,
        transfers=transfers,
        listings=ListingService(storage, transfers, events, listing_fee=config.market.listing_fee, clock=clock),
        reservations=ReservationManager(
            storage, events,
            ttl=timedelta(seconds=config.market.reservation_ttl_sec),
            retry_attempts=config.market.reserve_retry_attempts,
            clock=clock,
        ),
        purchases=PurchaseOrchestrator(storage, transfers, events, fee_rate=config.market.platform_fee_rate, clock=clock),
        rewards=rewards,
        auditor=LedgerAuditor(storage),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_account(
    services: Services = Depends(get_services),
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    return services.identity.resolve(authorization, x_user_id)


def admin_account(
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> str:
    if not services.identity.is_admin(account_id):
        raise PermissionDeniedError("Admin privileges required")
    return account_id


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "campus-coin-ledger"}


@router.post("/purchase", response_model=PurchaseResult, tags=["Marketplace"])
def purchase(
    request: PurchaseRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> PurchaseResult:
    return services.purchases.purchase(account_id, request.item_id, request.idempotency_key)


@router.post("/reserve", response_model=ReservationResponse, tags=["Marketplace"])
def reserve(
    request: ReserveRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> ReservationResponse:
    reserved_until = services.reservations.reserve(request.item_id, account_id)
    return ReservationResponse(item_id=request.item_id, reserved_until=reserved_until)


@router.post("/reserve/cancel", response_model=Item, tags=["Marketplace"])
def cancel_reservation(
    request: ReserveRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> Item:
    return services.reservations.cancel(request.item_id, account_id)


@router.post("/items", response_model=Item, status_code=status.HTTP_201_CREATED, tags=["Marketplace"])
def create_item(
    request: CreateItemRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> Item:
    return services.listings.list_item(
        account_id,
        title=request.title,
        price=request.price,
        campus_id=request.campus_id,
        description=request.description,
        category=request.category,
    )


@router.get("/items", response_model=list[Item], tags=["Marketplace"])
def browse_items(campus_id: Optional[str] = None, services: Services = Depends(get_services)) -> list[Item]:
    return services.listings.browse(campus_id=campus_id)


@router.get("/items/{item_id}", response_model=Item, tags=["Marketplace"])
def get_item(item_id: str, services: Services = Depends(get_services)) -> Item:
    return services.listings.get_item(item_id)


@router.patch("/items/{item_id}", response_model=Item, tags=["Marketplace"])
def update_item(
    item_id: str,
    request: UpdateItemRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> Item:
    updates = {k: v for k, v in request.model_dump(exclude_unset=True).items() if v is not None}
    if not updates:
        raise InvalidInputError("No updates provided")
    return services.listings.update_listing(account_id, item_id, updates)


@router.delete("/items/{item_id}", response_model=Item, tags=["Marketplace"])
def remove_item(
    item_id: str,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> Item:
    return services.listings.remove_listing(account_id, item_id, is_admin=services.identity.is_admin(account_id))


@router.post("/signup-bonus", response_model=SignupResult, tags=["Rewards"])
def signup_bonus(
    request: SignupRequest,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> SignupResult:
    if request.uid != account_id:
        raise PermissionDeniedError("uid does not match the authenticated account")
    return services.rewards.initialize_profile(account_id, request.email, request.referral_code)


@router.get("/rewards/profile", response_model=RewardProfile, tags=["Rewards"])
def reward_profile(
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> RewardProfile:
    return services.rewards.get_profile(account_id)


@router.get("/accounts/me/balance", response_model=AccountBalance, tags=["Accounts"])
def my_balance(
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> AccountBalance:
    return services.ledger.get_account_balance(account_id)


@router.get("/accounts/me/transactions", response_model=LedgerHistoryResponse, tags=["Accounts"])
def my_transactions(
    limit: int = 50,
    offset: int = 0,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
) -> LedgerHistoryResponse:
    return services.ledger.get_history(account_id, limit, offset)


@router.post("/admin/transfers", response_model=TransferResult, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def admin_transfer(
    request: TransferRequest,
    admin_id: str = Depends(admin_account),
    services: Services = Depends(get_services),
) -> TransferResult:
    metadata = TransactionMetadata(description=request.description, extra={"performed_by": admin_id})
    if request.type == TransactionType.ADMIN_CREDIT:
        source, target = SYSTEM_ACCOUNT, request.account_id
    elif request.type == TransactionType.ADMIN_DEBIT:
        source, target = request.account_id, SYSTEM_ACCOUNT
    else:
        raise InvalidInputError("Only ADMIN_CREDIT and ADMIN_DEBIT transfers are allowed")
    key = f"admin:{admin_id}:{request.idempotency_key}" if request.idempotency_key else None
    return services.transfers.transfer(source, target, request.amount, request.type, metadata, key)


@router.post("/admin/audit", response_model=AuditReport, tags=["Admin"])
def admin_audit(
    admin_id: str = Depends(admin_account),
    services: Services = Depends(get_services),
) -> AuditReport:
    return services.auditor.audit()


@router.post("/admin/accounts/{target_id}/unfreeze", tags=["Admin"])
def admin_unfreeze(
    target_id: str,
    admin_id: str = Depends(admin_account),
    services: Services = Depends(get_services),
):
    logger.warning("Admin %s unfreezing %s", admin_id, target_id)
    return {"account_id": target_id, "unfrozen": services.auditor.unfreeze(target_id)}


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "; ".join(messages)})


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"})


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None, root_path: str = "") -> FastAPI:
    config = config or (services.config if services else load_config())
    configure_logging(config.log_level)

    app = FastAPI(
        title="Campus Coin Ledger API",
        description="Coin ledger, escrow settlement and rewards for the campus marketplace",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services or build_services(config)
    app.include_router(router)

    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
