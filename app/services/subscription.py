"""
Subscription State Machine - applies payment processor events to user rows.

NO DICTIONARIES - Events arrive as typed WebhookEvent models.

Each event is handled in one unit of work: subscription field changes,
ledger mutations and the processed-event marker commit together or not at
all. A redelivered event finds its marker and is skipped.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import ProcessedWebhookEvent, User, utc_now
from app.exceptions import TransientError
from app.models.api import SubscriptionStatus, TransactionType
from app.models.domain import SubscriptionPeriod
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.ledger import BalanceKind, CreditLedger
from app.services.payment_provider import CheckoutCompletion, PaymentProvider, WebhookEvent
from app.services.stripe_provider import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
)
from app.services.tiers import default_paid_tier
from app.services.users import UserService

logger = get_logger(__name__)


class EventOutcome(str, Enum):
    """Result of handling one webhook event. All outcomes are acknowledged."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    USER_NOT_FOUND = "user_not_found"


_PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


def remap_status(processor_status: str | None) -> SubscriptionStatus:
    """Map a processor subscription status onto the local state machine."""
    if not processor_status:
        return SubscriptionStatus.FREE
    return _PROCESSOR_STATUS_MAP.get(processor_status, SubscriptionStatus.FREE)


def _parse_user_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _parse_credits(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        credits = int(value.strip())
    except ValueError:
        return None
    return credits if credits > 0 else None


class SubscriptionStateMachine:
    """
    Drives user subscription state from payment processor events.

    Usage:
        machine = SubscriptionStateMachine(session, provider)
        outcome = await machine.handle_event(event)
    """

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize state machine with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.ledger = CreditLedger(session)
        self.users = UserService(session)
        self._handlers: dict[str, Callable[[WebhookEvent], Awaitable[EventOutcome]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            INVOICE_PAID: self._on_invoice_paid,
            INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
        }

    async def handle_event(self, event: WebhookEvent) -> EventOutcome:
        """
        Apply one verified event.

        Raises:
            TransientError: Datastore or processor failure; nothing was
                committed and the event should be redelivered
            PaymentProviderError: Processor rejected a follow-up call
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.event_type)
            metrics.record_webhook_event(event.event_type, EventOutcome.IGNORED.value)
            return EventOutcome.IGNORED

        with trace_operation(
            "subscription.handle_event", event_id=event.event_id, event_type=event.event_type
        ):
            try:
                if await self._already_processed(event.event_id):
                    outcome = EventOutcome.DUPLICATE
                else:
                    outcome = await handler(event)
                    self.session.add(
                        ProcessedWebhookEvent(event_id=event.event_id, event_type=event.event_type)
                    )
                    await self.session.commit()
            except IntegrityError:
                # A concurrent delivery of the same event committed first
                await self.session.rollback()
                outcome = EventOutcome.DUPLICATE
            except DBAPIError as exc:
                await self.session.rollback()
                metrics.record_webhook_event(event.event_type, "failed")
                raise TransientError("webhook.handle_event", str(exc)) from exc
            except Exception:
                await self.session.rollback()
                metrics.record_webhook_event(event.event_type, "failed")
                raise

        metrics.record_webhook_event(event.event_type, outcome.value)
        logger.info(
            "webhook_event_handled",
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome.value,
        )
        return outcome

    async def sync_from_processor(self, user: User) -> bool:
        """
        Re-sync a user whose row says free but who has processor ids.

        Covers the window where checkout finished but its webhook has not
        been delivered yet. Returns True when the row changed.
        """
        if user.subscription_status != SubscriptionStatus.FREE.value:
            return False

        if user.stripe_subscription_id:
            period = await self.provider.retrieve_subscription(user.stripe_subscription_id)
        elif user.stripe_customer_id:
            period = await self.provider.list_latest_subscription(user.stripe_customer_id)
            if period is None or remap_status(period.status) not in (
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.TRIALING,
            ):
                return False
        else:
            return False

        status = remap_status(period.status)
        if status == SubscriptionStatus.FREE:
            return False

        plan = period.plan or user.subscription_plan or default_paid_tier()
        user.stripe_subscription_id = period.subscription_id
        self._apply_period(user, status, plan, period)

        try:
            if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                await self.ledger.reset_monthly(user.id, utc_now(), plan, commit=False)
            await self.session.commit()
        except DBAPIError as exc:
            await self.session.rollback()
            raise TransientError("subscription.sync", str(exc)) from exc
        await self.session.refresh(user)

        logger.info("subscription_synced_from_processor", user_id=str(user.id), status=status.value)
        return True

    # ========================================================================
    # Event handlers (run inside handle_event's unit of work; never commit)
    # ========================================================================

    async def _on_checkout_completed(self, event: WebhookEvent) -> EventOutcome:
        checkout = event.checkout
        if checkout is None:
            return EventOutcome.SKIPPED
        if checkout.mode == "payment":
            return await self._on_credit_purchase(event, checkout)
        if checkout.mode != "subscription":
            return EventOutcome.SKIPPED

        if not checkout.customer_id or not checkout.subscription_id:
            logger.error(
                "checkout_missing_identifiers",
                event_id=event.event_id,
                session_id=checkout.session_id,
            )
            return EventOutcome.SKIPPED

        user = await self.users.find_by_customer_id(checkout.customer_id)
        if user is None:
            user_id = _parse_user_id(checkout.metadata_user_id)
            if user_id is not None:
                user = await self.users.find_by_id(user_id)
        if user is None and checkout.customer_email:
            user = await self.users.find_by_email(checkout.customer_email)
        if user is None:
            return self._user_not_found(event, checkout.customer_id)

        period = await self.provider.retrieve_subscription(checkout.subscription_id)
        plan = checkout.metadata_plan or period.plan or default_paid_tier()
        status = (
            SubscriptionStatus.TRIALING
            if period.status == "trialing"
            else SubscriptionStatus.ACTIVE
        )

        user.stripe_customer_id = checkout.customer_id
        user.stripe_subscription_id = checkout.subscription_id
        self._apply_period(user, status, plan, period)

        await self.ledger.reset_monthly(user.id, utc_now(), plan, commit=False)
        logger.info(
            "subscription_activated",
            user_id=str(user.id),
            plan=plan,
            status=status.value,
        )
        return EventOutcome.PROCESSED

    async def _on_credit_purchase(
        self, event: WebhookEvent, checkout: CheckoutCompletion
    ) -> EventOutcome:
        credits = _parse_credits(checkout.metadata_credits)
        if credits is None:
            logger.warning(
                "credit_purchase_invalid_metadata",
                event_id=event.event_id,
                credits=checkout.metadata_credits,
            )
            return EventOutcome.SKIPPED

        user = None
        if checkout.customer_id:
            user = await self.users.find_by_customer_id(checkout.customer_id)
        if user is None:
            user_id = _parse_user_id(checkout.metadata_user_id)
            if user_id is not None:
                user = await self.users.find_by_id(user_id)
        if user is None:
            return self._user_not_found(event, checkout.customer_id)

        result = await self.ledger.grant(
            user.id,
            credits,
            TransactionType.OVERAGE_PURCHASE,
            f"Purchased {credits} credits",
            balance=BalanceKind.BONUS,
            external_reference=checkout.session_id,
            commit=False,
        )
        if not result.applied:
            return EventOutcome.DUPLICATE
        return EventOutcome.PROCESSED

    async def _on_subscription_updated(self, event: WebhookEvent) -> EventOutcome:
        period = event.subscription
        if period is None or not period.customer_id:
            return EventOutcome.SKIPPED

        user = await self.users.find_by_customer_id(period.customer_id)
        if user is None:
            return self._user_not_found(event, period.customer_id)

        previous = user.subscription_status
        user.subscription_status = remap_status(period.status).value
        user.current_period_start = period.current_period_start
        user.current_period_end = period.current_period_end
        user.trial_end_date = period.trial_end

        logger.info(
            "subscription_updated",
            user_id=str(user.id),
            previous_status=previous,
            status=user.subscription_status,
        )
        return EventOutcome.PROCESSED

    async def _on_subscription_deleted(self, event: WebhookEvent) -> EventOutcome:
        period = event.subscription
        if period is None or not period.customer_id:
            return EventOutcome.SKIPPED

        user = await self.users.find_by_customer_id(period.customer_id)
        if user is None:
            return self._user_not_found(event, period.customer_id)

        user.subscription_status = SubscriptionStatus.FREE.value
        user.subscription_plan = None
        user.stripe_subscription_id = None
        user.current_period_start = None
        user.current_period_end = None
        user.monthly_credits = 0

        logger.info("subscription_ended", user_id=str(user.id))
        return EventOutcome.PROCESSED

    async def _on_invoice_paid(self, event: WebhookEvent) -> EventOutcome:
        invoice = event.invoice
        if invoice is None:
            return EventOutcome.SKIPPED
        if not invoice.subscription_id:
            # One-time payment; credit purchases arrive as checkout.session.completed
            return EventOutcome.SKIPPED
        if not invoice.customer_id:
            return EventOutcome.SKIPPED

        user = await self.users.find_by_customer_id(invoice.customer_id)
        if user is None:
            return self._user_not_found(event, invoice.customer_id)

        if invoice.period_start is not None and invoice.period_end is not None:
            period_start: datetime = invoice.period_start
            period_end: datetime | None = invoice.period_end
            subscription_plan = None
        else:
            period = await self.provider.retrieve_subscription(invoice.subscription_id)
            period_start = period.current_period_start or utc_now()
            period_end = period.current_period_end
            subscription_plan = period.plan

        plan = subscription_plan or user.subscription_plan or default_paid_tier()
        user.subscription_status = SubscriptionStatus.ACTIVE.value
        user.subscription_plan = plan
        user.current_period_start = period_start
        user.current_period_end = period_end

        await self.ledger.reset_monthly(user.id, period_start, plan, commit=False)
        return EventOutcome.PROCESSED

    async def _on_invoice_payment_failed(self, event: WebhookEvent) -> EventOutcome:
        invoice = event.invoice
        if invoice is None or not invoice.customer_id:
            return EventOutcome.SKIPPED

        user = await self.users.find_by_customer_id(invoice.customer_id)
        if user is None:
            return self._user_not_found(event, invoice.customer_id)

        user.subscription_status = SubscriptionStatus.PAST_DUE.value
        logger.warning("subscription_payment_failed", user_id=str(user.id))
        return EventOutcome.PROCESSED

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _apply_period(
        user: User, status: SubscriptionStatus, plan: str, period: SubscriptionPeriod
    ) -> None:
        user.subscription_status = status.value
        user.subscription_plan = plan
        user.current_period_start = period.current_period_start
        user.current_period_end = period.current_period_end
        user.trial_start_date = period.trial_start
        user.trial_end_date = period.trial_end

    async def _already_processed(self, event_id: str) -> bool:
        stmt = select(ProcessedWebhookEvent.event_id).where(
            ProcessedWebhookEvent.event_id == event_id
        )
        return (await self.session.execute(stmt)).first() is not None

    @staticmethod
    def _user_not_found(event: WebhookEvent, customer_id: str | None) -> EventOutcome:
        logger.warning(
            "webhook_user_not_found",
            event_id=event.event_id,
            event_type=event.event_type,
            customer_id=customer_id,
        )
        return EventOutcome.USER_NOT_FOUND
