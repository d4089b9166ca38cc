"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.models.api import SubscriptionStatus


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity resolved from a bearer token by the external identity provider."""

    external_id: str
    email: str | None = None

    def __post_init__(self) -> None:
        """Validate identity fields."""
        if not self.external_id:
            raise ValueError("external_id cannot be empty")


@dataclass(frozen=True)
class CreditBalance:
    """Immutable balance state at a point in time."""

    monthly_credits: int
    bonus_credits: int
    reset_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.monthly_credits < 0:
            raise ValueError(f"Monthly credits cannot be negative: {self.monthly_credits}")
        if self.bonus_credits < 0:
            raise ValueError(f"Bonus credits cannot be negative: {self.bonus_credits}")

    @property
    def total(self) -> int:
        """Total spendable credits."""
        return self.monthly_credits + self.bonus_credits


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a deduction attempt.

    success=False is the insufficient-balance outcome: nothing was mutated and
    remaining_credits is the balance at the time of the attempt.
    """

    success: bool
    credits_deducted: int
    remaining_credits: int


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a credit grant."""

    applied: bool
    amount: int
    balance: CreditBalance


@dataclass(frozen=True)
class SubscriptionPeriod:
    """Billing period and trial bounds reported by the payment processor."""

    subscription_id: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    plan: str | None = None
    customer_id: str | None = None
    cancel_at: datetime | None = None


@dataclass(frozen=True)
class TierOverride:
    """Requested administrative change to a user's subscription."""

    tier: SubscriptionStatus
    monthly_credits: int | None = None
    bonus_credits: int | None = None

    def __post_init__(self) -> None:
        """Validate override constraints."""
        if self.tier == SubscriptionStatus.PAST_DUE:
            raise ValueError("past_due cannot be applied manually")
        if self.monthly_credits is not None and self.monthly_credits < 0:
            raise ValueError(f"Monthly credits cannot be negative: {self.monthly_credits}")
        if self.bonus_credits is not None and self.bonus_credits < 0:
            raise ValueError(f"Bonus credits cannot be negative: {self.bonus_credits}")


@dataclass(frozen=True)
class AdminPrincipal:
    """An authenticated administrator backed by a user row."""

    user_id: UUID
    email: str
    external_id: str
