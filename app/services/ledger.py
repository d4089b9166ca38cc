"""
Credit Ledger - atomic balance mutations with an append-only transaction log.

NO DICTIONARIES - All results are strongly typed domain models.

Every balance change is a single guarded UPDATE against the user row followed
by the matching CreditTransaction insert in the same database transaction.
There is no read-then-write path, so concurrent deductions serialize on the
row lock and can never drive a balance below zero.
"""

import time
from datetime import datetime
from enum import Enum
from typing import NoReturn
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import CreditTransaction, User, utc_now
from app.exceptions import InvalidInputError, TransientError, UserNotFoundError
from app.models.api import METERED_STATUSES, SubscriptionStatus, TransactionType
from app.models.domain import CreditBalance, DeductionResult, GrantResult
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.tiers import monthly_credits_for_tier

logger = get_logger(__name__)


class BalanceKind(str, Enum):
    """Which balance a grant credits."""

    MONTHLY = "monthly"
    BONUS = "bonus"


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidInputError(f"Amount must be a positive integer: {amount!r}")


def is_metered(status: str) -> bool:
    """Only paying (active/trialing) users are charged for actions."""
    try:
        return SubscriptionStatus(status) in METERED_STATUSES
    except ValueError:
        return False


class CreditLedger:
    """
    Credit ledger over the users and credit_transactions tables.

    All mutating methods commit by default. Pass commit=False to compose the
    mutation into a caller-owned unit of work (the caller then commits or
    rolls back).
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    # ========================================================================
    # Mutations
    # ========================================================================

    async def deduct(
        self,
        user_id: UUID,
        amount: int,
        transaction_type: TransactionType,
        description: str | None = None,
        *,
        commit: bool = True,
    ) -> DeductionResult:
        """
        Deduct credits, drawing monthly credits first and bonus for the rest.

        Insufficient balance is a normal outcome: success=False with the
        current total, nothing mutated.
        """
        _require_positive(amount)
        started = time.perf_counter()

        monthly_covers = User.monthly_credits >= amount
        stmt = (
            update(User)
            .where(User.id == user_id)
            .where((User.monthly_credits + User.bonus_credits) >= amount)
            .values(
                monthly_credits=case((monthly_covers, User.monthly_credits - amount), else_=0),
                bonus_credits=case(
                    (monthly_covers, User.bonus_credits),
                    else_=User.bonus_credits - (amount - User.monthly_credits),
                ),
                updated_at=utc_now(),
            )
            .returning(User.monthly_credits, User.bonus_credits)
            .execution_options(synchronize_session=False)
        )

        with trace_operation(
            "ledger.deduct", user_id=user_id, amount=amount, type=transaction_type.value
        ) as span:
            try:
                row = (await self.session.execute(stmt)).one_or_none()

                if row is None:
                    balance = await self._read_balance(user_id)
                    if commit:
                        await self.session.rollback()
                    span.set_attribute("outcome", "insufficient")
                    metrics.record_deduction(
                        transaction_type.value, False, 0, time.perf_counter() - started
                    )
                    logger.info(
                        "credit_deduction_insufficient",
                        user_id=str(user_id),
                        required=amount,
                        available=balance.total,
                    )
                    return DeductionResult(
                        success=False, credits_deducted=0, remaining_credits=balance.total
                    )

                self.session.add(
                    CreditTransaction(
                        user_id=user_id,
                        amount=-amount,
                        type=transaction_type.value,
                        description=description or f"{transaction_type.value} - {amount} credits",
                    )
                )
                await self.session.flush()
                if commit:
                    await self.session.commit()
            except DBAPIError as exc:
                await self._fail("deduct", exc)

        remaining = row.monthly_credits + row.bonus_credits
        metrics.record_deduction(transaction_type.value, True, amount, time.perf_counter() - started)
        logger.info(
            "credit_deducted",
            user_id=str(user_id),
            amount=amount,
            transaction_type=transaction_type.value,
            monthly_credits=row.monthly_credits,
            bonus_credits=row.bonus_credits,
        )
        return DeductionResult(success=True, credits_deducted=amount, remaining_credits=remaining)

    async def grant(
        self,
        user_id: UUID,
        amount: int,
        transaction_type: TransactionType,
        description: str | None = None,
        *,
        balance: BalanceKind = BalanceKind.BONUS,
        external_reference: str | None = None,
        commit: bool = True,
    ) -> GrantResult:
        """
        Atomically add credits to one balance and record the transaction.

        When external_reference is already recorded the grant is skipped and
        applied=False is returned with the current balance.
        """
        _require_positive(amount)

        if balance == BalanceKind.MONTHLY:
            values = {"monthly_credits": User.monthly_credits + amount}
        else:
            values = {"bonus_credits": User.bonus_credits + amount}

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(**values, updated_at=utc_now())
            .returning(User.monthly_credits, User.bonus_credits, User.credits_reset_at)
            .execution_options(synchronize_session=False)
        )

        with trace_operation(
            "ledger.grant", user_id=user_id, amount=amount, type=transaction_type.value
        ):
            try:
                if external_reference is not None and await self._reference_exists(
                    external_reference
                ):
                    current = await self._read_balance(user_id)
                    metrics.record_grant(transaction_type.value, False)
                    logger.info(
                        "credit_grant_duplicate",
                        user_id=str(user_id),
                        external_reference=external_reference,
                    )
                    return GrantResult(applied=False, amount=0, balance=current)

                row = (await self.session.execute(stmt)).one_or_none()
                if row is None:
                    raise UserNotFoundError(str(user_id))

                self.session.add(
                    CreditTransaction(
                        user_id=user_id,
                        amount=amount,
                        type=transaction_type.value,
                        description=description or f"{transaction_type.value} + {amount} credits",
                        external_reference=external_reference,
                    )
                )
                await self.session.flush()
                if commit:
                    await self.session.commit()
            except IntegrityError:
                # Unique external_reference lost a race with a concurrent grant
                if not commit:
                    raise
                await self.session.rollback()
                metrics.record_grant(transaction_type.value, False)
                logger.warning(
                    "credit_grant_race_duplicate",
                    user_id=str(user_id),
                    external_reference=external_reference,
                )
                return GrantResult(
                    applied=False, amount=0, balance=await self._read_balance(user_id)
                )
            except DBAPIError as exc:
                await self._fail("grant", exc)

        metrics.record_grant(transaction_type.value, True)
        logger.info(
            "credit_granted",
            user_id=str(user_id),
            amount=amount,
            balance=balance.value,
            transaction_type=transaction_type.value,
        )
        return GrantResult(
            applied=True,
            amount=amount,
            balance=CreditBalance(
                monthly_credits=row.monthly_credits,
                bonus_credits=row.bonus_credits,
                reset_at=row.credits_reset_at,
            ),
        )

    async def reset_monthly(
        self,
        user_id: UUID,
        period_start: datetime,
        plan: str | None = None,
        *,
        commit: bool = True,
    ) -> int:
        """
        Refill monthly credits to the tier allowance for a new billing period.

        This is a full refill, not a delta, so re-applying it for the same
        period leaves the balance unchanged. Bonus credits are untouched.
        Returns the new monthly allowance.
        """
        if plan is None:
            current_plan = await self.session.execute(
                select(User.subscription_plan).where(User.id == user_id)
            )
            plan = current_plan.scalar_one_or_none()
        allowance = monthly_credits_for_tier(plan)

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(monthly_credits=allowance, credits_reset_at=period_start, updated_at=utc_now())
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )

        with trace_operation("ledger.reset_monthly", user_id=user_id, plan=plan):
            try:
                if (await self.session.execute(stmt)).one_or_none() is None:
                    raise UserNotFoundError(str(user_id))

                if allowance > 0:
                    self.session.add(
                        CreditTransaction(
                            user_id=user_id,
                            amount=allowance,
                            type=TransactionType.MONTHLY_RESET.value,
                            description=f"Monthly reset - {allowance} credits ({plan})",
                        )
                    )
                await self.session.flush()
                if commit:
                    await self.session.commit()
            except DBAPIError as exc:
                await self._fail("reset_monthly", exc)

        metrics.record_grant(TransactionType.MONTHLY_RESET.value, allowance > 0)
        logger.info(
            "monthly_credits_reset",
            user_id=str(user_id),
            plan=plan,
            monthly_credits=allowance,
            period_start=period_start.isoformat(),
        )
        return allowance

    async def charge_for_action(
        self,
        user: User,
        cost: int,
        transaction_type: TransactionType,
        description: str | None = None,
    ) -> DeductionResult:
        """
        Charge a user for a billable action.

        Users outside active/trialing are not metered: the call succeeds with
        nothing deducted and the ledger is not touched.
        """
        if not is_metered(user.subscription_status):
            logger.debug(
                "credit_charge_unmetered",
                user_id=str(user.id),
                subscription_status=user.subscription_status,
            )
            return DeductionResult(
                success=True,
                credits_deducted=0,
                remaining_credits=user.monthly_credits + user.bonus_credits,
            )

        return await self.deduct(user.id, cost, transaction_type, description)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_balance(self, user_id: UUID) -> CreditBalance:
        """Current balances of a user."""
        return await self._read_balance(user_id)

    async def list_transactions(self, user_id: UUID, limit: int = 20) -> list[CreditTransaction]:
        """Most recent transactions first."""
        if limit < 1:
            raise InvalidInputError(f"Limit must be positive: {limit}")
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _read_balance(self, user_id: UUID) -> CreditBalance:
        stmt = select(User.monthly_credits, User.bonus_credits, User.credits_reset_at).where(
            User.id == user_id
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            raise UserNotFoundError(str(user_id))
        return CreditBalance(
            monthly_credits=row.monthly_credits,
            bonus_credits=row.bonus_credits,
            reset_at=row.credits_reset_at,
        )

    async def _reference_exists(self, external_reference: str) -> bool:
        stmt = select(CreditTransaction.id).where(
            CreditTransaction.external_reference == external_reference
        )
        return (await self.session.execute(stmt)).first() is not None

    async def _fail(self, operation: str, exc: DBAPIError) -> NoReturn:
        """Roll back and surface a datastore failure as transient."""
        await self.session.rollback()
        metrics.record_error(type(exc).__name__, f"ledger.{operation}")
        logger.error("ledger_datastore_error", operation=operation, error=str(exc))
        raise TransientError(f"ledger.{operation}", str(exc)) from exc
