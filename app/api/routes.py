"""
API Routes - FastAPI endpoints for billing operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    enforce_rate_limit,
    get_current_user,
    get_verified_identity,
    rate_limit_by_ip,
)
from app.config import settings
from app.db.models import User
from app.db.session import get_db
from app.exceptions import (
    ConfigurationError,
    InvalidInputError,
    PaymentProviderError,
    TransientError,
    UserNotFoundError,
    WebhookVerificationError,
)
from app.models.api import (
    BillingStatusResponse,
    CancelResponse,
    CheckoutResponse,
    CreditPurchaseRequest,
    CreditsView,
    DeductRequest,
    DeductResponse,
    HealthResponse,
    InsufficientCreditsResponse,
    SubscriptionCheckoutRequest,
    SubscriptionStatus,
    SubscriptionView,
    TransactionItem,
    VerifyTokenResponse,
)
from app.models.domain import VerifiedIdentity
from app.services.ledger import CreditLedger, is_metered
from app.services.rate_limiter import CREDIT_RULE, VERIFY_RULE
from app.services.stripe_provider import StripeProvider, get_payment_provider
from app.services.subscription import SubscriptionStateMachine
from app.services.tiers import (
    CREDIT_PACKS,
    TIERS,
    action_cost,
    action_transaction_type,
    default_paid_tier,
    get_credit_pack,
    get_tier,
    subscription_price_id,
)

logger = get_logger(__name__)

router = APIRouter()

RECENT_TRANSACTIONS_LIMIT = 10


# =============================================================================
# Credit Endpoints
# =============================================================================


@router.post(
    "/billing/deduct",
    response_model=DeductResponse,
    responses={status.HTTP_402_PAYMENT_REQUIRED: {"model": InsufficientCreditsResponse}},
)
async def deduct_credits(
    request: DeductRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> DeductResponse | JSONResponse:
    """
    Charge the authenticated user for a billable action.

    Returns 402 with required/available when the balance cannot cover the
    cost; nothing is deducted in that case.
    """
    enforce_rate_limit(f"{CREDIT_RULE.name}:{user.id}", CREDIT_RULE)

    cost = action_cost(request.action, request.search_type)
    transaction_type = action_transaction_type(request.action)

    try:
        result = await CreditLedger(db).charge_for_action(
            user, cost, transaction_type, request.description
        )
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable",
        ) from exc

    if not result.success:
        body = InsufficientCreditsResponse(required=cost, available=result.remaining_credits)
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=body.model_dump(),
        )

    return DeductResponse(
        success=True,
        credits_deducted=result.credits_deducted,
        remaining_credits=result.remaining_credits,
    )


@router.get("/billing/status", response_model=BillingStatusResponse)
async def billing_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> BillingStatusResponse:
    """
    Subscription snapshot, balances and recent transactions.

    A free row that already carries processor ids is re-synced first, in
    case the checkout webhook has not arrived yet.
    """
    if user.subscription_status == SubscriptionStatus.FREE.value and (
        user.stripe_subscription_id or user.stripe_customer_id
    ):
        try:
            await SubscriptionStateMachine(db, provider).sync_from_processor(user)
        except (TransientError, PaymentProviderError) as exc:
            # Serve the stored state; the webhook will catch up
            logger.warning("subscription_sync_failed", user_id=str(user.id), error=str(exc))

    ledger = CreditLedger(db)
    try:
        balance = await ledger.get_balance(user.id)
        transactions = await ledger.list_transactions(user.id, limit=RECENT_TRANSACTIONS_LIMIT)
    except DBAPIError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable",
        ) from exc

    return BillingStatusResponse(
        subscription=SubscriptionView(
            status=SubscriptionStatus(user.subscription_status),
            plan=user.subscription_plan,
            current_period_end=user.current_period_end,
            trial_end_date=user.trial_end_date,
        ),
        credits=CreditsView(
            monthly=balance.monthly_credits,
            bonus=balance.bonus_credits,
            total=balance.total,
            reset_at=balance.reset_at,
        ),
        recent_transactions=[TransactionItem.model_validate(t) for t in transactions],
    )


async def _ensure_customer(user: User, db: AsyncSession, provider: StripeProvider) -> str:
    """Stripe customer of a user, created and stored on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = await provider.create_customer(user.email, str(user.id))
    user.stripe_customer_id = customer_id
    await db.commit()
    return customer_id


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def start_subscription_checkout(
    request: SubscriptionCheckoutRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """
    Start a hosted subscription checkout with the configured free trial.

    Users who are already active or trialing are refused. The subscription
    is applied by the checkout.session.completed webhook, not here.
    """
    if is_metered(user.subscription_status):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already has an active subscription",
        )

    tier_key = (request.tier if request else None) or default_paid_tier()
    if get_tier(tier_key) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid tier. Valid tiers: {', '.join(TIERS)}",
        )

    price_id = subscription_price_id(tier_key)
    if price_id is None:
        logger.error("subscription_price_missing", tier=tier_key)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe price not configured",
        )

    try:
        customer_id = await _ensure_customer(user, db, provider)
        url = await provider.create_subscription_checkout(
            customer_id, str(user.id), tier_key, price_id, settings.subscription_trial_days
        )
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout session",
        ) from exc

    logger.info("subscription_checkout_started", user_id=str(user.id), plan=tier_key)
    return CheckoutResponse(url=url)


@router.post("/billing/portal", response_model=CheckoutResponse)
async def open_billing_portal(
    user: User = Depends(get_current_user),
    provider: StripeProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """Open the Stripe billing portal for a user who already has a customer."""
    if not user.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing account found. Please subscribe first.",
        )

    try:
        url = await provider.create_portal_session(user.stripe_customer_id)
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create portal session",
        ) from exc

    return CheckoutResponse(url=url)


@router.post("/billing/credits", response_model=CheckoutResponse)
async def purchase_credits(
    request: CreditPurchaseRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """
    Start a hosted checkout for a one-time credit pack.

    Only subscribers may buy packs. The credits are granted by the
    checkout.session.completed webhook, not here.
    """
    if not is_metered(user.subscription_status):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Active subscription required to purchase credits",
        )

    pack = get_credit_pack(request.credits)
    if pack is None:
        valid = ", ".join(str(p.credits) for p in CREDIT_PACKS)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid credit amount. Valid packs: {valid}",
        )

    try:
        customer_id = await _ensure_customer(user, db, provider)
        url = await provider.create_credit_checkout(customer_id, str(user.id), pack)
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create credit purchase session",
        ) from exc

    logger.info("credit_checkout_started", user_id=str(user.id), credits=pack.credits)
    return CheckoutResponse(url=url)


@router.post("/billing/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> CancelResponse:
    """Cancel the subscription at the end of the current period."""
    if not user.stripe_subscription_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active subscription found",
        )
    if user.subscription_status == SubscriptionStatus.CANCELED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Subscription is already canceled",
        )

    try:
        period = await provider.cancel_at_period_end(user.stripe_subscription_id)
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to cancel subscription",
        ) from exc

    user.subscription_status = SubscriptionStatus.CANCELED.value
    await db.commit()

    logger.info("subscription_cancel_requested", user_id=str(user.id))
    return CancelResponse(
        success=True,
        cancel_at=period.cancel_at,
        current_period_end=period.current_period_end,
    )


# =============================================================================
# Authentication Endpoints
# =============================================================================


@router.post("/auth/verify", response_model=VerifyTokenResponse)
async def verify_token(
    client_ip: str = Depends(rate_limit_by_ip(VERIFY_RULE)),
    identity: VerifiedIdentity = Depends(get_verified_identity),
) -> VerifyTokenResponse:
    """
    Verify a bearer token with the identity provider.

    Rate limited per client address before the provider is contacted.
    """
    return VerifyTokenResponse(valid=True, external_id=identity.external_id, email=identity.email)


# =============================================================================
# Webhook Endpoints
# =============================================================================


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Any 5xx response makes Stripe redeliver; handlers are idempotent.
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("stripe_webhook_missing_signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    payload = await request.body()

    try:
        event = provider.verify_webhook(payload, signature)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        ) from exc
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    machine = SubscriptionStateMachine(db, provider)
    try:
        outcome = await machine.handle_event(event)
    except (TransientError, PaymentProviderError, InvalidInputError) as exc:
        logger.error(
            "stripe_webhook_processing_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return {"status": outcome.value, "event_id": event.event_id}


# =============================================================================
# Health Endpoints
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except DBAPIError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
