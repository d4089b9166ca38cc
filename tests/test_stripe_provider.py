"""
Tests for the Stripe payment provider.

Stripe API calls are patched; webhook signatures are computed locally with
the test signing secret and checked by the real SDK.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
import stripe

from app.exceptions import (
    ConfigurationError,
    PaymentProviderError,
    TransientError,
    WebhookVerificationError,
)
from app.services.stripe_provider import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    SUBSCRIPTION_UPDATED,
    StripeProvider,
    parse_checkout,
    parse_event,
    parse_invoice,
    parse_subscription,
)
from app.services.tiers import get_credit_pack

SECRET = "whsec_test_fake_secret"
PERIOD_START = 1790812800  # 2026-10-01T00:00:00Z
PERIOD_END = 1793491200  # 2026-11-01T00:00:00Z


def sign(payload: bytes, secret: str = SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_fake_key", webhook_secret=SECRET, timeout_seconds=1.0)


class TestParseSubscription:
    """Tests for subscription payload mapping."""

    def test_top_level_period(self):
        period = parse_subscription(
            {
                "id": "sub_1",
                "status": "active",
                "customer": "cus_1",
                "current_period_start": PERIOD_START,
                "current_period_end": PERIOD_END,
                "metadata": {"plan": "agency"},
            }
        )

        assert period.subscription_id == "sub_1"
        assert period.status == "active"
        assert period.customer_id == "cus_1"
        assert period.plan == "agency"
        assert period.current_period_start == datetime(2026, 10, 1, tzinfo=UTC)
        assert period.current_period_end == datetime(2026, 11, 1, tzinfo=UTC)
        assert period.trial_end is None

    def test_item_level_period(self):
        """Newer API versions carry the period on the subscription item."""
        period = parse_subscription(
            {
                "id": "sub_1",
                "status": "trialing",
                "customer": {"id": "cus_9", "object": "customer"},
                "items": {
                    "data": [
                        {"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}
                    ]
                },
                "trial_end": PERIOD_END,
            }
        )

        assert period.customer_id == "cus_9"
        assert period.current_period_start == datetime(2026, 10, 1, tzinfo=UTC)
        assert period.trial_end == datetime(2026, 11, 1, tzinfo=UTC)
        assert period.plan is None

    def test_missing_fields(self):
        period = parse_subscription({"id": "sub_1"})

        assert period.status == ""
        assert period.current_period_start is None
        assert period.customer_id is None


class TestParseCheckout:
    """Tests for checkout session mapping."""

    def test_subscription_checkout(self):
        checkout = parse_checkout(
            {
                "id": "cs_1",
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": "sub_1",
                "customer_details": {"email": "buyer@example.com"},
                "metadata": {"userId": "abc", "plan": "pro"},
            }
        )

        assert checkout.session_id == "cs_1"
        assert checkout.mode == "subscription"
        assert checkout.subscription_id == "sub_1"
        assert checkout.customer_email == "buyer@example.com"
        assert checkout.metadata_user_id == "abc"
        assert checkout.metadata_plan == "pro"
        assert checkout.metadata_credits is None

    def test_payment_checkout_with_expanded_subscription_and_fallback_email(self):
        checkout = parse_checkout(
            {
                "id": "cs_2",
                "mode": "payment",
                "subscription": {"id": "sub_2"},
                "customer_email": "fallback@example.com",
                "metadata": {"credits": "150"},
            }
        )

        assert checkout.subscription_id == "sub_2"
        assert checkout.customer_email == "fallback@example.com"
        assert checkout.metadata_credits == "150"


class TestParseInvoice:
    """Tests for invoice mapping."""

    def test_classic_shape(self):
        invoice = parse_invoice(
            {
                "id": "in_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "lines": {"data": [{"period": {"start": PERIOD_START, "end": PERIOD_END}}]},
            }
        )

        assert invoice.subscription_id == "sub_1"
        assert invoice.period_start == datetime(2026, 10, 1, tzinfo=UTC)
        assert invoice.period_end == datetime(2026, 11, 1, tzinfo=UTC)

    def test_parent_subscription_details(self):
        """Newer API versions nest the subscription under parent."""
        invoice = parse_invoice(
            {
                "id": "in_2",
                "customer": "cus_1",
                "parent": {"subscription_details": {"subscription": "sub_7"}},
            }
        )

        assert invoice.subscription_id == "sub_7"
        assert invoice.period_start is None

    def test_one_time_invoice(self):
        assert parse_invoice({"id": "in_3", "customer": "cus_1"}).subscription_id is None


class TestParseEvent:
    """Tests for event dispatch into typed payloads."""

    def test_checkout_event(self):
        event = parse_event(
            {"id": "evt_1", "type": CHECKOUT_COMPLETED, "data": {"object": {"id": "cs_1"}}}
        )

        assert event.event_id == "evt_1"
        assert event.checkout is not None
        assert event.subscription is None
        assert event.invoice is None

    def test_subscription_event(self):
        event = parse_event(
            {"id": "evt_2", "type": SUBSCRIPTION_UPDATED, "data": {"object": {"id": "sub_1"}}}
        )
        assert event.subscription.subscription_id == "sub_1"

    def test_invoice_event(self):
        event = parse_event(
            {"id": "evt_3", "type": INVOICE_PAID, "data": {"object": {"id": "in_1"}}}
        )
        assert event.invoice.invoice_id == "in_1"

    def test_unhandled_event(self):
        event = parse_event({"id": "evt_4", "type": "customer.created", "data": {"object": {}}})

        assert event.event_type == "customer.created"
        assert (event.checkout, event.subscription, event.invoice) == (None, None, None)


class TestVerifyWebhook:
    """Tests for webhook signature verification."""

    def test_valid_signature(self, provider):
        payload = json.dumps(
            {
                "id": "evt_1",
                "object": "event",
                "type": SUBSCRIPTION_UPDATED,
                "data": {"object": {"id": "sub_1", "status": "active"}},
            }
        ).encode()

        event = provider.verify_webhook(payload, sign(payload))

        assert event.event_id == "evt_1"
        assert event.subscription.status == "active"

    def test_wrong_secret(self, provider):
        payload = json.dumps({"id": "evt_1", "object": "event", "type": "x"}).encode()

        with pytest.raises(WebhookVerificationError):
            provider.verify_webhook(payload, sign(payload, secret="whsec_other"))

    def test_invalid_json(self, provider):
        payload = b"not json"

        with pytest.raises(WebhookVerificationError):
            provider.verify_webhook(payload, sign(payload))

    def test_missing_secret(self):
        provider = StripeProvider(api_key="sk_test_fake_key", webhook_secret="")
        payload = b"{}"

        with pytest.raises(ConfigurationError) as exc_info:
            provider.verify_webhook(payload, sign(payload))

        assert exc_info.value.setting == "STRIPE_WEBHOOK_SECRET"


class TestApiCalls:
    """Tests for Stripe API call wrapping."""

    @pytest.mark.asyncio
    async def test_retrieve_subscription(self, provider):
        with patch.object(stripe.Subscription, "retrieve") as mock_retrieve:
            mock_retrieve.return_value = {"id": "sub_1", "status": "past_due"}
            period = await provider.retrieve_subscription("sub_1")

        mock_retrieve.assert_called_once_with("sub_1")
        assert period.status == "past_due"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        provider = StripeProvider(
            api_key="sk_test_fake_key", webhook_secret=SECRET, timeout_seconds=0.05
        )

        def slow_retrieve(subscription_id):
            time.sleep(0.5)
            return {"id": subscription_id}

        with patch.object(stripe.Subscription, "retrieve", side_effect=slow_retrieve):
            with pytest.raises(TransientError) as exc_info:
                await provider.retrieve_subscription("sub_1")

        assert exc_info.value.operation == "stripe.retrieve_subscription"

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, provider):
        with patch.object(
            stripe.Subscription, "retrieve", side_effect=stripe.APIConnectionError("reset")
        ):
            with pytest.raises(TransientError):
                await provider.retrieve_subscription("sub_1")

    @pytest.mark.asyncio
    async def test_api_error_is_provider_error(self, provider):
        with patch.object(
            stripe.Subscription,
            "retrieve",
            side_effect=stripe.InvalidRequestError("No such subscription", "id"),
        ):
            with pytest.raises(PaymentProviderError):
                await provider.retrieve_subscription("sub_missing")

    @pytest.mark.asyncio
    async def test_list_latest_subscription_empty(self, provider):
        with patch.object(stripe.Subscription, "list", return_value={"data": []}) as mock_list:
            assert await provider.list_latest_subscription("cus_1") is None

        mock_list.assert_called_once_with(customer="cus_1", status="all", limit=1)

    @pytest.mark.asyncio
    async def test_create_customer(self, provider):
        with patch.object(stripe.Customer, "create", return_value={"id": "cus_new"}) as mock_create:
            customer_id = await provider.create_customer("u@example.com", "user-1")

        assert customer_id == "cus_new"
        mock_create.assert_called_once_with(email="u@example.com", metadata={"userId": "user-1"})

    @pytest.mark.asyncio
    async def test_create_credit_checkout(self, provider):
        pack = get_credit_pack(150)

        with patch.object(
            stripe.checkout.Session,
            "create",
            return_value={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"},
        ) as mock_create:
            url = await provider.create_credit_checkout("cus_1", "user-1", pack)

        assert url == "https://checkout.stripe.test/cs_1"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["customer"] == "cus_1"
        assert kwargs["mode"] == "payment"
        assert kwargs["metadata"] == {"userId": "user-1", "credits": "150"}
        [line_item] = kwargs["line_items"]
        assert line_item["price_data"]["unit_amount"] == pack.price_minor
        assert line_item["quantity"] == 1

    @pytest.mark.asyncio
    async def test_create_subscription_checkout_with_trial(self, provider):
        with patch.object(
            stripe.checkout.Session,
            "create",
            return_value={"id": "cs_2", "url": "https://checkout.stripe.test/cs_2"},
        ) as mock_create:
            url = await provider.create_subscription_checkout(
                "cus_1", "user-1", "agency", "price_agency", trial_days=3
            )

        assert url == "https://checkout.stripe.test/cs_2"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_agency", "quantity": 1}]
        assert kwargs["metadata"] == {"userId": "user-1", "plan": "agency"}
        assert kwargs["subscription_data"] == {
            "metadata": {"userId": "user-1", "plan": "agency"},
            "trial_period_days": 3,
        }
        assert kwargs["success_url"] == "http://localhost:3000/search?subscription=success"

    @pytest.mark.asyncio
    async def test_create_subscription_checkout_without_trial(self, provider):
        with patch.object(
            stripe.checkout.Session, "create", return_value={"id": "cs_3", "url": "u"}
        ) as mock_create:
            await provider.create_subscription_checkout(
                "cus_1", "user-1", "pro", "price_pro", trial_days=0
            )

        assert "trial_period_days" not in mock_create.call_args.kwargs["subscription_data"]

    @pytest.mark.asyncio
    async def test_create_portal_session(self, provider):
        with patch.object(
            stripe.billing_portal.Session,
            "create",
            return_value={"id": "bps_1", "url": "https://billing.stripe.test/p"},
        ) as mock_create:
            url = await provider.create_portal_session("cus_1")

        assert url == "https://billing.stripe.test/p"
        mock_create.assert_called_once_with(
            customer="cus_1", return_url="http://localhost:3000/search"
        )

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, provider):
        with patch.object(
            stripe.Subscription,
            "modify",
            return_value={"id": "sub_1", "status": "active", "cancel_at": PERIOD_END},
        ) as mock_modify:
            period = await provider.cancel_at_period_end("sub_1")

        mock_modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
        assert period.cancel_at == datetime(2026, 11, 1, tzinfo=UTC)
