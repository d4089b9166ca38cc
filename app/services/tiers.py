"""
Tier Catalog - subscription tiers, credit packs and per-action credit costs.

Single source of truth for prices and allowances; fixed, single-currency (USD).
"""

from dataclasses import dataclass

from app.config import settings
from app.models.api import BillableAction, SearchType, TransactionType


@dataclass(frozen=True)
class Tier:
    """A subscription plan with a fixed monthly price and credit allowance."""

    key: str
    name: str
    monthly_price_minor: int
    monthly_credits: int
    included_seats: int


@dataclass(frozen=True)
class CreditPack:
    """A one-time purchasable bundle of bonus credits."""

    credits: int
    price_minor: int


TIERS: dict[str, Tier] = {
    "pro": Tier(key="pro", name="Pro", monthly_price_minor=9900, monthly_credits=50, included_seats=1),
    "agency": Tier(
        key="agency", name="Agency", monthly_price_minor=24900, monthly_credits=150, included_seats=3
    ),
    "business": Tier(
        key="business",
        name="Business",
        monthly_price_minor=49900,
        monthly_credits=400,
        included_seats=5,
    ),
}

CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack(credits=50, price_minor=2900),
    CreditPack(credits=150, price_minor=6900),
    CreditPack(credits=500, price_minor=19900),
)

SEARCH_COSTS: dict[SearchType, int] = {
    SearchType.NATIONAL: 1,
    SearchType.STATE: 3,
    SearchType.CITY: 5,
}

REPORT_GENERATION_COST = 10


def get_tier(tier_key: str | None) -> Tier | None:
    """Look up a tier by key; unknown or empty keys return None."""
    if not tier_key:
        return None
    return TIERS.get(tier_key)


def monthly_credits_for_tier(tier_key: str | None) -> int:
    """Monthly credit allowance of a tier (0 for unknown tiers)."""
    tier = get_tier(tier_key)
    return tier.monthly_credits if tier else 0


def default_paid_tier() -> str:
    """Tier applied when neither the processor nor the user row names one."""
    return settings.default_paid_tier


def get_credit_pack(credits: int) -> CreditPack | None:
    """Find the credit pack matching an exact credit amount."""
    for pack in CREDIT_PACKS:
        if pack.credits == credits:
            return pack
    return None


def action_cost(action: BillableAction, search_type: SearchType = SearchType.NATIONAL) -> int:
    """Credit cost of a billable action."""
    if action == BillableAction.SEARCH:
        return SEARCH_COSTS[search_type]
    return REPORT_GENERATION_COST


def action_transaction_type(action: BillableAction) -> TransactionType:
    """Ledger transaction type recorded for a billable action."""
    if action == BillableAction.SEARCH:
        return TransactionType.SEARCH_USAGE
    return TransactionType.REPORT_GENERATION


def subscription_price_id(tier_key: str) -> str | None:
    """Recurring Stripe price configured for a tier, if any."""
    prices = {
        "pro": settings.stripe_price_pro,
        "agency": settings.stripe_price_agency,
        "business": settings.stripe_price_business,
    }
    return prices.get(tier_key) or None
