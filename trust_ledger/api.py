from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .adapters import (
    DepositExecutor,
    HttpDepositExecutor,
    MaxFlowTrustScoreClient,
    StoredNotificationEmitter,
    TrustScoreAdapter,
    compute_trust_score,
    validate_identity,
)
from .cache import ExpiringCache
from .config import Settings, get_settings
from .exceptions import (
    ContentionError,
    ExternalUnavailableError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidIdentityError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PartialFailureError,
    SelfReferralError,
    SelfTransferError,
    TooSoonError,
    UnrecoverableError,
)
from .logging import bind_context, clear_context, configure_logging, get_logger
from .models import (
    AutoCheckResult,
    AutoDepositConfig,
    BalanceObservationRequest,
    CanVouchResponse,
    CreditEligibility,
    DepositTrigger,
    EgoScoreResponse,
    InitializationResult,
    InitializeRequest,
    Notification,
    RecordVouchRequest,
    RedeemReferralRequest,
    ReferralCode,
    ReferralRedemption,
    ReferralStatus,
    ReviewResult,
    ReviewVouchRequest,
    TransferRequest,
    TransferResult,
    TrustPointsResponse,
    Vouch,
)
from .monitor import BalanceDeltaMonitor
from .referrals import ReferralIssuer
from .service import TrustLedger
from .storage import InMemoryStorage
from .vouches import VouchWorkflow

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

ERROR_STATUS = [
    (InvalidAmountError, status.HTTP_400_BAD_REQUEST),
    (InsufficientFundsError, status.HTTP_400_BAD_REQUEST),
    (SelfTransferError, status.HTTP_400_BAD_REQUEST),
    (SelfReferralError, status.HTTP_400_BAD_REQUEST),
    (InvalidIdentityError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ContentionError, status.HTTP_409_CONFLICT),
    (TooSoonError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ExternalUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PartialFailureError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (UnrecoverableError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


@dataclass
class Services:
    storage: InMemoryStorage
    ledger: TrustLedger
    vouches: VouchWorkflow
    referrals: ReferralIssuer
    monitor: Optional[BalanceDeltaMonitor]
    trust_scores: TrustScoreAdapter
    settings: Settings


def build_services(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    trust_scores: Optional[TrustScoreAdapter] = None,
    deposit_executor: Optional[DepositExecutor] = None,
    clock=None,
) -> Services:
    settings = settings or get_settings()
    storage = storage or InMemoryStorage(clock=clock)
    if trust_scores is None:
        trust_scores = MaxFlowTrustScoreClient(
            api_url=settings.maxflow_api_url,
            timeout=settings.maxflow_timeout_seconds,
            max_attempts=settings.maxflow_max_attempts,
            cache=ExpiringCache(timedelta(seconds=settings.trust_score_cache_ttl_seconds), clock=clock),
        )
    if deposit_executor is None and settings.deposit_executor_url:
        deposit_executor = HttpDepositExecutor(
            settings.deposit_executor_url, timeout=settings.deposit_timeout_seconds
        )

    ledger = TrustLedger(
        storage,
        max_attempts=settings.cas_max_attempts,
        trust_scores=trust_scores,
        tier_thresholds=settings.score_tiers,
        initialization_grace=timedelta(hours=settings.initialization_grace_hours),
        clock=clock,
    )
    vouches = VouchWorkflow(
        ledger,
        storage,
        trust_scores=trust_scores,
        notifier=StoredNotificationEmitter(storage, clock=clock),
        min_vouch_trust_score=settings.min_vouch_trust_score,
        min_trustworthy_vouches=settings.min_trustworthy_vouches,
        min_credit_balance=settings.min_credit_balance,
        clock=clock,
    )
    referrals = ReferralIssuer(ledger, storage, points_awarded=settings.referral_points, clock=clock)
    monitor = None
    if deposit_executor is not None:
        monitor = BalanceDeltaMonitor(
            storage,
            deposit_executor,
            config=AutoDepositConfig(
                min_deposit_amount=settings.auto_deposit_min_amount,
                fee_buffer=settings.auto_deposit_fee_buffer,
            ),
            max_attempts=settings.deposit_max_attempts,
            retry_delay=settings.deposit_retry_delay_seconds,
            call_timeout=settings.deposit_timeout_seconds,
            lock_timeout=settings.monitor_lock_timeout_seconds,
            clock=clock,
        )
    return Services(storage, ledger, vouches, referrals, monitor, trust_scores, settings)


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    settings = services.settings
    configure_logging(settings.log_level, json_output=settings.json_logs)

    app = FastAPI(
        title="Trust Ledger API",
        description="Trust points, vouching, referrals and auto-deposit monitoring",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        clear_context()
        bind_context(correlation_id=correlation_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(LedgerServiceError)
    async def handle_ledger_error(request: Request, exc: LedgerServiceError) -> JSONResponse:
        status_code = next(
            (code for exc_type, code in ERROR_STATUS if isinstance(exc, exc_type)),
            status.HTTP_400_BAD_REQUEST,
        )
        body = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, TooSoonError):
            body["hours_remaining"] = round(exc.hours_remaining, 2)
        if status_code >= 500:
            logger.error("api.request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "trust-ledger"}

    # -- trust points -----------------------------------------------------

    @app.get("/users/{user_id}/trust-points", response_model=TrustPointsResponse, tags=["Trust Points"])
    def get_trust_points(user_id: str) -> TrustPointsResponse:
        account = services.ledger.get_account(user_id)
        return TrustPointsResponse(
            user_id=user_id,
            balance=account.balance,
            last_daily_credit_at=account.last_daily_credit_at,
        )

    @app.post("/trust-points/transfer", response_model=TransferResult, tags=["Trust Points"])
    def transfer_points(request: TransferRequest) -> TransferResult:
        return services.ledger.transfer(request.from_user_id, request.to_user_id, request.amount)

    @app.post("/users/{user_id}/trust-points/daily", response_model=TrustPointsResponse, tags=["Trust Points"])
    def claim_daily_points(user_id: str) -> TrustPointsResponse:
        account = services.ledger.grant_daily(
            user_id, settings.daily_grant_amount, settings.daily_grant_interval_hours
        )
        return TrustPointsResponse(
            user_id=user_id,
            balance=account.balance,
            last_daily_credit_at=account.last_daily_credit_at,
        )

    @app.post(
        "/users/{user_id}/trust-points/initialize",
        response_model=InitializationResult,
        tags=["Trust Points"],
    )
    def initialize_trust_points(user_id: str, request: InitializeRequest) -> InitializationResult:
        identity = validate_identity(request.identity)
        services.storage.link_identity(user_id, identity)
        return services.ledger.initialize_from_identity(user_id, identity)

    # -- ego scores -------------------------------------------------------

    @app.get("/maxflow/ego/{address}/score", response_model=EgoScoreResponse, tags=["Ego Scores"])
    def get_ego_score(address: str) -> EgoScoreResponse:
        validate_identity(address)
        return EgoScoreResponse(address=address, ego_score=services.trust_scores.get_ego_score(address))

    @app.get("/maxflow/ego/{address}/can-vouch", response_model=CanVouchResponse, tags=["Ego Scores"])
    def can_vouch(address: str, min_trust_score: Optional[Decimal] = None) -> CanVouchResponse:
        validate_identity(address)
        minimum = settings.min_vouch_trust_score if min_trust_score is None else min_trust_score
        ego_score = services.trust_scores.get_ego_score(address)
        try:
            trust_score = compute_trust_score(ego_score)
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ExternalUnavailableError(f"Malformed ego score for {address}", service="maxflow") from exc
        return CanVouchResponse(
            address=address,
            can_vouch=trust_score >= minimum,
            trust_score=trust_score,
            min_trust_score=minimum,
            ego_score=ego_score,
        )

    # -- vouches ----------------------------------------------------------

    @app.post("/vouches", response_model=Vouch, status_code=status.HTTP_201_CREATED, tags=["Vouches"])
    def record_vouch(request: RecordVouchRequest) -> Vouch:
        return services.vouches.record_vouch(
            request.voucher_id, request.vouched_user_id, request.points, request.message
        )

    @app.get("/vouches/pending-review", response_model=list[Vouch], tags=["Vouches"])
    def pending_review() -> list[Vouch]:
        return services.vouches.pending_review()

    @app.get("/vouches/{vouch_id}", response_model=Vouch, tags=["Vouches"])
    def get_vouch(vouch_id: UUID) -> Vouch:
        return services.vouches.get_vouch(vouch_id)

    @app.post("/vouches/{vouch_id}/auto-check", response_model=AutoCheckResult, tags=["Vouches"])
    def auto_check_vouch(vouch_id: UUID) -> AutoCheckResult:
        return services.vouches.auto_check(vouch_id)

    @app.post("/vouches/{vouch_id}/review", response_model=ReviewResult, tags=["Vouches"])
    def review_vouch(vouch_id: UUID, request: ReviewVouchRequest) -> ReviewResult:
        return services.vouches.review(
            vouch_id, request.reviewer_id, request.is_trustworthy, request.review_notes
        )

    @app.get("/users/{user_id}/vouches/received", response_model=list[Vouch], tags=["Vouches"])
    def received_vouches(user_id: str) -> list[Vouch]:
        return services.vouches.received_vouches(user_id)

    @app.get("/users/{user_id}/credit-eligibility", response_model=CreditEligibility, tags=["Vouches"])
    def credit_eligibility(user_id: str) -> CreditEligibility:
        return services.vouches.credit_eligibility(user_id)

    # -- referrals --------------------------------------------------------

    @app.post("/users/{user_id}/referral-code", response_model=ReferralCode, tags=["Referrals"])
    def generate_referral_code(user_id: str) -> ReferralCode:
        return services.referrals.generate_code(user_id)

    @app.get("/users/{user_id}/referrals", response_model=ReferralStatus, tags=["Referrals"])
    def referral_status(user_id: str) -> ReferralStatus:
        return services.referrals.status(user_id)

    @app.post("/referrals/redeem", response_model=ReferralRedemption, tags=["Referrals"])
    def redeem_referral(request: RedeemReferralRequest) -> ReferralRedemption:
        return services.referrals.redeem(request.code, request.redeemer_id)

    # -- wallets ----------------------------------------------------------

    @app.post("/wallets/{wallet_id}/observations", response_model=DepositTrigger, tags=["Wallets"])
    def observe_balance(wallet_id: str, request: BalanceObservationRequest) -> DepositTrigger:
        if services.monitor is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Auto-deposit is not configured",
            )
        overrides = request.model_dump(include={"min_deposit_amount", "fee_buffer"}, exclude_none=True)
        config = AutoDepositConfig(**{**services.monitor.config.model_dump(), **overrides})
        return services.monitor.evaluate(wallet_id, request.observed_balance, config)

    # -- notifications ----------------------------------------------------

    @app.get("/users/{user_id}/notifications", response_model=list[Notification], tags=["Notifications"])
    def list_notifications(user_id: str, unread_only: bool = False) -> list[Notification]:
        return services.storage.list_notifications(user_id, unread_only=unread_only)

    @app.post("/notifications/{notification_id}/read", response_model=Notification, tags=["Notifications"])
    def mark_notification_read(notification_id: UUID, read: bool = True) -> Notification:
        return services.storage.mark_notification_read(notification_id, read)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
