"""
Admin Override - manual subscription tier and balance changes.

Every override runs against a locked user row, records the net balance change
as an admin_adjustment transaction in the same database transaction, and
emits an admin_tier_override audit event.
"""

import calendar
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import CreditTransaction, User, utc_now
from app.exceptions import (
    InvalidInputError,
    SelfProtectionError,
    TransientError,
    UserNotFoundError,
)
from app.models.api import AdminTier, SubscriptionStatus, TransactionType
from app.models.domain import AdminPrincipal, TierOverride
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.admin_auth import AdminPrincipalResolver
from app.services.tiers import default_paid_tier, monthly_credits_for_tier
from app.services.users import UserService

logger = get_logger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """Same day-of-month N months later, clamped to the month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def build_override(
    tier: str, monthly_credits: int | None = None, bonus_credits: int | None = None
) -> TierOverride:
    """Validate raw override input into a TierOverride."""
    try:
        admin_tier = AdminTier(tier)
    except ValueError as e:
        allowed = ", ".join(t.value for t in AdminTier)
        raise InvalidInputError(f"Invalid tier {tier!r}. Must be one of: {allowed}") from e
    try:
        return TierOverride(
            tier=SubscriptionStatus(admin_tier.value),
            monthly_credits=monthly_credits,
            bonus_credits=bonus_credits,
        )
    except ValueError as e:
        raise InvalidInputError(str(e)) from e


class AdminOverrideService:
    """Applies administrative tier overrides."""

    def __init__(self, session: AsyncSession, resolver: AdminPrincipalResolver) -> None:
        """Initialize override service with database session and admin resolver."""
        self.session = session
        self.resolver = resolver
        self.users = UserService(session)

    async def get_snapshot(self, user_id: UUID | None = None, email: str | None = None) -> User:
        """Look up the target user for GET /admin/user-tier."""
        return await self._find_target(user_id, email, lock=False)

    async def apply_override(
        self,
        actor: AdminPrincipal,
        override: TierOverride,
        user_id: UUID | None = None,
        email: str | None = None,
        origin: str = "unknown",
    ) -> User:
        """
        Apply a tier override to the target user.

        Raises:
            InvalidInputError: If no target is given
            UserNotFoundError: If the target doesn't exist
            SelfProtectionError: If the target is another administrator
            TransientError: If the datastore fails
        """
        with trace_operation("admin.apply_override", actor_id=actor.user_id, tier=override.tier.value):
            try:
                target = await self._find_target(user_id, email, lock=True)

                if self.resolver.is_admin_email(target.email) and target.id != actor.user_id:
                    await self.session.rollback()
                    metrics.record_admin_override("denied")
                    logger.warning(
                        "admin_override_denied",
                        actor_id=str(actor.user_id),
                        actor_email=actor.email,
                        target_id=str(target.id),
                        target_email=target.email,
                        origin=origin,
                    )
                    raise SelfProtectionError(actor.user_id, target.id)

                before_status = target.subscription_status
                before_monthly = target.monthly_credits
                before_bonus = target.bonus_credits

                self._apply(target, override)

                delta = (target.monthly_credits + target.bonus_credits) - (
                    before_monthly + before_bonus
                )
                if delta != 0:
                    self.session.add(
                        CreditTransaction(
                            user_id=target.id,
                            amount=delta,
                            type=TransactionType.ADMIN_ADJUSTMENT.value,
                            description=f"Admin override by {actor.email}: tier {override.tier.value}",
                        )
                    )

                await self.session.flush()
                await self.session.commit()
            except DBAPIError as exc:
                await self.session.rollback()
                metrics.record_error(type(exc).__name__, "admin.apply_override")
                raise TransientError("admin.apply_override", str(exc)) from exc

        metrics.record_admin_override("applied")
        logger.warning(
            "admin_tier_override",
            actor_id=str(actor.user_id),
            actor_email=actor.email,
            target_id=str(target.id),
            target_email=target.email,
            origin=origin,
            before_status=before_status,
            after_status=target.subscription_status,
            before_monthly_credits=before_monthly,
            after_monthly_credits=target.monthly_credits,
            before_bonus_credits=before_bonus,
            after_bonus_credits=target.bonus_credits,
            timestamp=utc_now().isoformat(),
        )
        return target

    @staticmethod
    def _apply(user: User, override: TierOverride) -> None:
        """Derive the new row state; explicit credit values win over derived ones."""
        now = utc_now()
        tier = override.tier

        if tier in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            plan = default_paid_tier()
            if user.subscription_status == SubscriptionStatus.FREE.value:
                user.monthly_credits = monthly_credits_for_tier(plan)
            user.subscription_plan = plan
            if user.current_period_start is None:
                user.current_period_start = now
                user.current_period_end = add_months(now, 1)
                user.credits_reset_at = now
            if tier == SubscriptionStatus.TRIALING and user.trial_start_date is None:
                user.trial_start_date = now
                user.trial_end_date = now + timedelta(days=settings.admin_trial_days)
        else:
            user.subscription_plan = None
            if tier == SubscriptionStatus.FREE:
                user.monthly_credits = 0

        user.subscription_status = tier.value

        if override.monthly_credits is not None:
            user.monthly_credits = override.monthly_credits
        if override.bonus_credits is not None:
            user.bonus_credits = override.bonus_credits

    async def _find_target(self, user_id: UUID | None, email: str | None, lock: bool) -> User:
        if user_id is None and not email:
            raise InvalidInputError("userId or email required")

        user = (
            await self.users.find_by_email(email)
            if email
            else await self.users.find_by_id(user_id)  # type: ignore[arg-type]
        )
        if user is None:
            raise UserNotFoundError(email or str(user_id))

        if lock:
            locked = await self.users.lock_for_update(user.id)
            if locked is None:
                raise UserNotFoundError(email or str(user_id))
            return locked
        return user
