from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class VouchState(str, Enum):
    RECORDED = "RECORDED"
    AUTO_CHECKED = "AUTO_CHECKED"
    REVIEWED = "REVIEWED"


class AutoCheckOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class NotificationKind(str, Enum):
    CREDIT_ELIGIBLE = "credit_eligible"


class SnapshotKind(str, Enum):
    AUTO_DEPOSIT_TRIGGER = "auto_deposit_trigger"
    AUTO_DEPOSIT_FAILED = "auto_deposit_failed"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Account(BaseModel):
    user_id: str
    balance: int = Field(default=0, ge=0)
    last_daily_credit_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Vouch(BaseModel):
    id: UUID
    voucher_id: str
    vouched_user_id: str
    points_transferred: int = Field(..., gt=0)
    message: Optional[str] = None
    created_at: datetime
    is_trustworthy: Optional[bool] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    auto_check: Optional[AutoCheckOutcome] = None
    auto_check_score: Optional[Decimal] = None
    auto_checked_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def state(self) -> VouchState:
        if self.reviewed_by is not None:
            return VouchState.REVIEWED
        if self.auto_check is not None:
            return VouchState.AUTO_CHECKED
        return VouchState.RECORDED

    def can_auto_check(self) -> bool:
        return self.state != VouchState.REVIEWED

    def is_reviewed(self) -> bool:
        return self.state == VouchState.REVIEWED


class ReferralCode(BaseModel):
    code: str
    referrer_id: str
    used: bool = False
    used_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    points_awarded: int = Field(default=1, gt=0)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceWatermark(BaseModel):
    wallet_id: str
    previous_observed_balance: Optional[Decimal] = None
    observed_at: Optional[datetime] = None
    # raw reading that fired the last confirmed deposit
    last_triggered_balance: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)

    def is_initialized(self) -> bool:
        return self.previous_observed_balance is not None


class BalanceSnapshot(BaseModel):
    wallet_id: str
    balance: Decimal
    previous_balance: Optional[Decimal] = None
    deposit_amount: Optional[Decimal] = None
    external_reference: Optional[str] = None
    kind: SnapshotKind
    recorded_at: datetime


class Notification(BaseModel):
    id: UUID
    user_id: str
    kind: NotificationKind
    title: str
    message: str
    payload: dict = Field(default_factory=dict)
    created_at: datetime
    read: bool = False


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class TransferResult(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: int
    sender_balance: int
    receiver_balance: int


class InitializationResult(BaseModel):
    user_id: str
    balance: int
    trust_score: Decimal
    initial_allocation: int
    already_initialized: bool = False
    degraded: bool = False


class AutoCheckResult(BaseModel):
    vouch: Vouch
    outcome: AutoCheckOutcome
    trust_score: Decimal
    degraded: bool = False


class ReviewResult(BaseModel):
    vouch: Vouch
    vouched_user_eligible: bool
    trustworthy_vouches_count: int
    notified: bool = False


class VouchBreakdown(BaseModel):
    trustworthy: int = 0
    pending: int = 0
    untrustworthy: int = 0
    total: int = 0


class CreditEligibility(BaseModel):
    user_id: str
    eligible: bool
    trustworthy_vouches_count: int
    total_trust_points: int
    breakdown: VouchBreakdown
    reason: Optional[str] = None


class ReferralRedemption(BaseModel):
    referral: ReferralCode
    referrer_balance: int


class ReferralStatus(BaseModel):
    referrer_id: str
    referral_code: Optional[str] = None
    total_referrals: int
    total_points_earned: int
    referrals: list[ReferralCode]


class DepositReceipt(BaseModel):
    success: bool
    transaction_reference: Optional[str] = None
    error: Optional[str] = None


class DepositTrigger(BaseModel):
    triggered: bool
    deposit_amount: Optional[Decimal] = None
    external_reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.triggered and self.error is None


class AutoDepositConfig(BaseModel):
    min_deposit_amount: Decimal = Field(default=Decimal("10.0"), gt=0)
    fee_buffer: Decimal = Field(default=Decimal("1.0"), ge=0)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TransferRequest(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: int = Field(..., description="Whole trust points to move")


class InitializeRequest(BaseModel):
    identity: str = Field(..., description="Linked EVM address (0x...)")


class RecordVouchRequest(BaseModel):
    voucher_id: str
    vouched_user_id: str
    points: int
    message: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "voucher_id": "550e8400-e29b-41d4-a716-446655440000",
            "vouched_user_id": "660e8400-e29b-41d4-a716-446655440001",
            "points": 5,
            "message": "Runs the bakery on my street",
        }
    })


class ReviewVouchRequest(BaseModel):
    reviewer_id: str
    is_trustworthy: bool
    review_notes: Optional[str] = None


class RedeemReferralRequest(BaseModel):
    code: str
    redeemer_id: str


class BalanceObservationRequest(BaseModel):
    observed_balance: Decimal = Field(..., ge=0)
    min_deposit_amount: Optional[Decimal] = Field(default=None, gt=0)
    fee_buffer: Optional[Decimal] = Field(default=None, ge=0)


class TrustPointsResponse(BaseModel):
    user_id: str
    balance: int
    last_daily_credit_at: Optional[datetime] = None


class EgoScoreResponse(BaseModel):
    address: str
    ego_score: dict


class CanVouchResponse(BaseModel):
    address: str
    can_vouch: bool
    trust_score: Decimal
    min_trust_score: Decimal
    ego_score: dict
