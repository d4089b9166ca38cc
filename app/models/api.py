"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    FREE = "free"
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


METERED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    SEARCH_USAGE = "search_usage"
    REPORT_GENERATION = "report_generation"
    MONTHLY_RESET = "monthly_reset"
    OVERAGE_PURCHASE = "overage_purchase"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class BillableAction(str, Enum):
    """Metered actions a user can pay for with credits."""

    SEARCH = "search"
    REPORT_GENERATION = "report_generation"


class SearchType(str, Enum):
    """Search scope - determines the credit cost of a search."""

    NATIONAL = "national"
    STATE = "state"
    CITY = "city"


class AdminTier(str, Enum):
    """Statuses an administrator may apply directly."""

    FREE = "free"
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"


# ============================================================================
# Deduction Models
# ============================================================================


class DeductRequest(BaseModel):
    """POST /billing/deduct request body."""

    action: BillableAction
    search_type: SearchType = Field(SearchType.NATIONAL, alias="searchType")
    description: str | None = Field(None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class DeductResponse(BaseModel):
    """POST /billing/deduct response."""

    success: bool
    credits_deducted: int = Field(..., alias="creditsDeducted")
    remaining_credits: int = Field(..., alias="remainingCredits")

    model_config = ConfigDict(populate_by_name=True)


class InsufficientCreditsResponse(BaseModel):
    """402 body for a deduction that the balance cannot cover."""

    detail: str = "Insufficient credits"
    required: int
    available: int


# ============================================================================
# Status / Transaction Models
# ============================================================================


class CreditsView(BaseModel):
    """Credit balances of a user."""

    monthly: int
    bonus: int
    total: int
    reset_at: datetime | None = None


class TransactionItem(BaseModel):
    """Single credit transaction in a history listing."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: int
    type: TransactionType
    description: str | None
    created_at: datetime


class SubscriptionView(BaseModel):
    """Subscription fields visible to the user."""

    status: SubscriptionStatus
    plan: str | None
    current_period_end: datetime | None
    trial_end_date: datetime | None


class BillingStatusResponse(BaseModel):
    """GET /billing/status response."""

    subscription: SubscriptionView
    credits: CreditsView
    recent_transactions: list[TransactionItem]


# ============================================================================
# Credit Purchase / Cancel Models
# ============================================================================


class CreditPurchaseRequest(BaseModel):
    """POST /billing/credits request body."""

    credits: int = Field(..., gt=0)


class SubscriptionCheckoutRequest(BaseModel):
    """POST /billing/checkout request body (optional; defaults to the default tier)."""

    tier: str | None = Field(None, max_length=50)


class CheckoutResponse(BaseModel):
    """Hosted Stripe session URL (checkout or billing portal)."""

    url: str


class CancelResponse(BaseModel):
    """POST /billing/cancel response."""

    success: bool
    cancel_at: datetime | None
    current_period_end: datetime | None


# ============================================================================
# Admin Models
# ============================================================================


class UserTierSnapshot(BaseModel):
    """Current subscription snapshot of a user (admin view)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str | None
    subscription_status: SubscriptionStatus
    subscription_plan: str | None
    monthly_credits: int
    bonus_credits: int
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start_date: datetime | None
    trial_end_date: datetime | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None


class UserTierResponse(BaseModel):
    """GET /admin/user-tier response."""

    user: UserTierSnapshot


class UpdateUserTierRequest(BaseModel):
    """POST /admin/user-tier request body."""

    user_id: UUID | None = Field(None, alias="userId")
    email: str | None = Field(None, min_length=3, max_length=255)
    tier: str
    monthly_credits: int | None = Field(None, ge=0, alias="monthlyCredits")
    bonus_credits: int | None = Field(None, ge=0, alias="bonusCredits")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def require_target(self) -> "UpdateUserTierRequest":
        """Either userId or email must identify the target user."""
        if self.user_id is None and not self.email:
            raise ValueError("userId or email required")
        return self


class UpdateUserTierResponse(BaseModel):
    """POST /admin/user-tier response."""

    success: bool
    user: UserTierSnapshot
    message: str


# ============================================================================
# Verification Models
# ============================================================================


class VerifyTokenResponse(BaseModel):
    """POST /auth/verify response."""

    valid: bool
    external_id: str
    email: str | None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
