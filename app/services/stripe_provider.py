"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data leaving this module uses strongly typed models.

The Stripe SDK is synchronous; every network call runs in a worker thread
under asyncio.wait_for so that a slow processor surfaces as TransientError
instead of blocking the event loop.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from app.config import settings
from app.exceptions import (
    ConfigurationError,
    PaymentProviderError,
    TransientError,
    WebhookVerificationError,
)
from app.models.domain import SubscriptionPeriod
from app.services.payment_provider import CheckoutCompletion, InvoiceNotice, WebhookEvent
from app.services.tiers import CreditPack

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


# ============================================================================
# Payload helpers
# ============================================================================


def _field(obj: Any, *path: str) -> Any:
    """Walk a Stripe object (or plain mapping) by keys; missing keys yield None."""
    current = obj
    for key in path:
        if current is None:
            return None
        try:
            current = current[key]
        except (KeyError, TypeError, IndexError):
            return None
    return current


def _first_item(obj: Any, *path: str) -> Any:
    """First element of a Stripe list object (``{"data": [...]}``)."""
    items = _field(obj, *path, "data")
    if not items:
        return None
    return items[0]


def _timestamp(value: Any) -> datetime | None:
    """Convert a Unix epoch (seconds) to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _customer_id(obj: Any) -> str | None:
    """Customer reference, whether expanded or not."""
    customer = _field(obj, "customer")
    if customer is None or isinstance(customer, str):
        return customer
    return _field(customer, "id")


def parse_subscription(subscription: Any) -> SubscriptionPeriod:
    """
    Map a Stripe subscription to a SubscriptionPeriod.

    Newer API versions report period bounds on the subscription items rather
    than on the subscription itself; both shapes are accepted.
    """
    item = _first_item(subscription, "items")
    period_start = _field(subscription, "current_period_start")
    period_end = _field(subscription, "current_period_end")
    if period_start is None:
        period_start = _field(item, "current_period_start")
    if period_end is None:
        period_end = _field(item, "current_period_end")

    return SubscriptionPeriod(
        subscription_id=_field(subscription, "id"),
        status=_field(subscription, "status") or "",
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        trial_start=_timestamp(_field(subscription, "trial_start")),
        trial_end=_timestamp(_field(subscription, "trial_end")),
        plan=_field(subscription, "metadata", "plan"),
        customer_id=_customer_id(subscription),
        cancel_at=_timestamp(_field(subscription, "cancel_at")),
    )


def parse_checkout(session: Any) -> CheckoutCompletion:
    """Map a Stripe checkout session to a CheckoutCompletion."""
    subscription = _field(session, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = _field(subscription, "id")

    return CheckoutCompletion(
        session_id=_field(session, "id"),
        mode=_field(session, "mode") or "",
        customer_id=_customer_id(session),
        subscription_id=subscription,
        customer_email=_field(session, "customer_details", "email")
        or _field(session, "customer_email"),
        metadata_user_id=_field(session, "metadata", "userId"),
        metadata_plan=_field(session, "metadata", "plan"),
        metadata_credits=_field(session, "metadata", "credits"),
    )


def parse_invoice(invoice: Any) -> InvoiceNotice:
    """
    Map a Stripe invoice to an InvoiceNotice.

    The subscription reference moved under parent.subscription_details in
    newer API versions; both shapes are accepted.
    """
    subscription_id = _field(invoice, "subscription") or _field(
        invoice, "parent", "subscription_details", "subscription"
    )
    if subscription_id is not None and not isinstance(subscription_id, str):
        subscription_id = _field(subscription_id, "id")

    line = _first_item(invoice, "lines")
    return InvoiceNotice(
        invoice_id=_field(invoice, "id"),
        customer_id=_customer_id(invoice),
        subscription_id=subscription_id,
        period_start=_timestamp(_field(line, "period", "start")),
        period_end=_timestamp(_field(line, "period", "end")),
    )


def parse_event(event: Any) -> WebhookEvent:
    """Map a verified Stripe event to a provider-agnostic WebhookEvent."""
    event_type = _field(event, "type") or ""
    data_object = _field(event, "data", "object")

    checkout = None
    subscription = None
    invoice = None
    if event_type == CHECKOUT_COMPLETED:
        checkout = parse_checkout(data_object)
    elif event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        subscription = parse_subscription(data_object)
    elif event_type in (INVOICE_PAID, INVOICE_PAYMENT_FAILED):
        invoice = parse_invoice(data_object)

    return WebhookEvent(
        event_id=_field(event, "id") or "",
        event_type=event_type,
        checkout=checkout,
        subscription=subscription,
        invoice=invoice,
    )


# ============================================================================
# Provider
# ============================================================================


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        app_base_url: str = "http://localhost:3000",
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for every Stripe API call
            app_base_url: Base URL for checkout success/cancel redirects
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.app_base_url = app_base_url.rstrip("/")
        stripe.api_key = api_key
        # Redelivery is the retry mechanism; the SDK must not retry on its own
        stripe.max_network_retries = 0

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed webhook event

        Raises:
            ConfigurationError: If the webhook secret is not configured
            WebhookVerificationError: If signature verification fails
        """
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_missing")
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.warning("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        webhook_event = parse_event(event)
        logger.info(
            "stripe_webhook_verified",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
        )
        return webhook_event

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionPeriod:
        """Fetch a subscription's current status and period bounds."""
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return parse_subscription(subscription)

    async def list_latest_subscription(self, customer_id: str) -> SubscriptionPeriod | None:
        """Most recent subscription of a customer (any status), if any."""
        subscriptions = await self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=1,
        )
        latest = _first_item(subscriptions)
        if latest is None:
            logger.info("stripe_no_subscriptions", customer_id=customer_id)
            return None
        return parse_subscription(latest)

    async def create_customer(self, email: str, user_id: str) -> str:
        """Create a Stripe customer tagged with the local user id."""
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            metadata={"userId": user_id},
        )
        customer_id: str = _field(customer, "id")
        logger.info("stripe_customer_created", customer_id=customer_id, user_id=user_id)
        return customer_id

    async def create_credit_checkout(
        self, customer_id: str, user_id: str, pack: CreditPack
    ) -> str:
        """
        Create a one-time payment checkout for a credit pack.

        The session metadata carries userId and credits; the
        checkout.session.completed webhook grants the credits.
        """
        session = await self._call(
            "create_credit_checkout",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{pack.credits} Credits",
                            "description": f"Add {pack.credits} credits to your account",
                        },
                        "unit_amount": pack.price_minor,
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{self.app_base_url}/search?credits=purchased",
            cancel_url=f"{self.app_base_url}/search?credits=canceled",
            metadata={"userId": user_id, "credits": str(pack.credits)},
        )
        url: str = _field(session, "url")
        logger.info(
            "stripe_credit_checkout_created",
            session_id=_field(session, "id"),
            user_id=user_id,
            credits=pack.credits,
        )
        return url

    async def create_subscription_checkout(
        self, customer_id: str, user_id: str, tier_key: str, price_id: str, trial_days: int
    ) -> str:
        """
        Create a subscription checkout for a tier, with an optional free trial.

        userId and plan ride on both the session and the subscription, so the
        checkout.session.completed and customer.subscription.* webhooks can
        resolve the user and tier.
        """
        metadata = {"userId": user_id, "plan": tier_key}
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        session = await self._call(
            "create_subscription_checkout",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            subscription_data=subscription_data,
            success_url=f"{self.app_base_url}/search?subscription=success",
            cancel_url=f"{self.app_base_url}/search?subscription=canceled",
            metadata=metadata,
        )
        url: str = _field(session, "url")
        logger.info(
            "stripe_subscription_checkout_created",
            session_id=_field(session, "id"),
            user_id=user_id,
            plan=tier_key,
            trial_days=trial_days,
        )
        return url

    async def create_portal_session(self, customer_id: str) -> str:
        """Open a billing portal session that returns the customer to the app."""
        session = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{self.app_base_url}/search",
        )
        url: str = _field(session, "url")
        logger.info("stripe_portal_session_created", customer_id=customer_id)
        return url

    async def cancel_at_period_end(self, subscription_id: str) -> SubscriptionPeriod:
        """Schedule a subscription to end with its current period."""
        subscription = await self._call(
            "cancel_subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        logger.info("stripe_subscription_cancel_scheduled", subscription_id=subscription_id)
        return parse_subscription(subscription)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop with a deadline."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error("stripe_call_timeout", operation=operation, timeout=self.timeout_seconds)
            raise TransientError(f"stripe.{operation}", "timed out") from exc
        except stripe.APIConnectionError as exc:
            logger.error("stripe_connection_failed", operation=operation, error=str(exc))
            raise TransientError(f"stripe.{operation}", str(exc)) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe {operation} failed: {exc}") from exc


def get_payment_provider() -> StripeProvider:
    """FastAPI dependency: Stripe provider built from settings."""
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
        app_base_url=settings.app_base_url,
    )
