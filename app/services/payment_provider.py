"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from app.models.domain import SubscriptionPeriod
from app.services.tiers import CreditPack


@dataclass(frozen=True)
class CheckoutCompletion:
    """A completed hosted checkout (subscription sign-up or one-time credit purchase)."""

    session_id: str
    mode: str  # "subscription" or "payment"
    customer_id: str | None
    subscription_id: str | None
    customer_email: str | None
    metadata_user_id: str | None
    metadata_plan: str | None
    metadata_credits: str | None


@dataclass(frozen=True)
class InvoiceNotice:
    """A paid or failed invoice."""

    invoice_id: str
    customer_id: str | None
    subscription_id: str | None  # None for one-time payments
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Exactly one of checkout, subscription or invoice is set for the event
    kinds the ledger handles; all are None for kinds it ignores.
    """

    event_id: str
    event_type: str
    checkout: CheckoutCompletion | None = None
    subscription: SubscriptionPeriod | None = None
    invoice: InvoiceNotice | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The subscription state machine and billing routes only talk to this
    interface, so tests can substitute a mock processor.
    """

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            ConfigurationError: If no webhook secret is configured
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionPeriod:
        """
        Fetch a subscription's current status and period bounds.

        Raises:
            PaymentProviderError: If the provider rejects the call
            TransientError: If the call times out
        """
        ...

    async def list_latest_subscription(self, customer_id: str) -> SubscriptionPeriod | None:
        """Most recent subscription of a customer, if any."""
        ...

    async def create_customer(self, email: str, user_id: str) -> str:
        """Create a customer and return its id."""
        ...

    async def create_credit_checkout(
        self, customer_id: str, user_id: str, pack: CreditPack
    ) -> str:
        """Create a one-time checkout for a credit pack and return its URL."""
        ...

    async def create_subscription_checkout(
        self, customer_id: str, user_id: str, tier_key: str, price_id: str, trial_days: int
    ) -> str:
        """Create a recurring checkout for a tier and return its URL."""
        ...

    async def create_portal_session(self, customer_id: str) -> str:
        """Open a self-service billing portal session and return its URL."""
        ...

    async def cancel_at_period_end(self, subscription_id: str) -> SubscriptionPeriod:
        """Schedule a subscription to end with its current period."""
        ...
