"""
Tests for the tier catalog.
"""

from unittest.mock import patch

import pytest

from app.config import settings
from app.models.api import BillableAction, SearchType, TransactionType
from app.services.tiers import (
    CREDIT_PACKS,
    TIERS,
    action_cost,
    action_transaction_type,
    default_paid_tier,
    get_credit_pack,
    get_tier,
    monthly_credits_for_tier,
    subscription_price_id,
)


class TestTiers:
    """Tests for subscription tiers."""

    @pytest.mark.parametrize("key,credits", [("pro", 50), ("agency", 150), ("business", 400)])
    def test_monthly_allowance(self, key, credits):
        assert monthly_credits_for_tier(key) == credits

    @pytest.mark.parametrize("key", [None, "", "enterprise"])
    def test_unknown_tier(self, key):
        assert get_tier(key) is None
        assert monthly_credits_for_tier(key) == 0

    def test_prices_increase_with_allowance(self):
        tiers = sorted(TIERS.values(), key=lambda t: t.monthly_credits)
        prices = [t.monthly_price_minor for t in tiers]
        assert prices == sorted(prices)

    def test_default_paid_tier_from_settings(self):
        assert default_paid_tier() == "pro"
        with patch.object(settings, "default_paid_tier", "agency"):
            assert default_paid_tier() == "agency"


class TestCreditPacks:
    """Tests for one-time credit packs."""

    def test_pack_sizes(self):
        assert [p.credits for p in CREDIT_PACKS] == [50, 150, 500]

    def test_lookup(self):
        assert get_credit_pack(500).price_minor == 19900
        assert get_credit_pack(100) is None


class TestActionCosts:
    """Tests for per-action credit costs."""

    @pytest.mark.parametrize(
        "search_type,cost",
        [(SearchType.NATIONAL, 1), (SearchType.STATE, 3), (SearchType.CITY, 5)],
    )
    def test_search_costs(self, search_type, cost):
        assert action_cost(BillableAction.SEARCH, search_type) == cost

    def test_report_cost_ignores_search_type(self):
        assert action_cost(BillableAction.REPORT_GENERATION, SearchType.CITY) == 10

    def test_transaction_types(self):
        assert action_transaction_type(BillableAction.SEARCH) == TransactionType.SEARCH_USAGE
        assert (
            action_transaction_type(BillableAction.REPORT_GENERATION)
            == TransactionType.REPORT_GENERATION
        )


class TestSubscriptionPrices:
    """Tests for per-tier recurring price lookup."""

    def test_configured_price(self):
        with patch.object(settings, "stripe_price_agency", "price_agency_monthly"):
            assert subscription_price_id("agency") == "price_agency_monthly"

    def test_unconfigured_price(self):
        with patch.object(settings, "stripe_price_pro", ""):
            assert subscription_price_id("pro") is None

    def test_unknown_tier(self):
        assert subscription_price_id("enterprise") is None
