"""
CreditLedger against a real (SQLite) database.

Covers the properties that only hold with real row updates: no overspend
under concurrency, monthly-before-bonus ordering and idempotent grants.
"""

import asyncio
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from app.exceptions import UserNotFoundError
from app.models.api import SubscriptionStatus, TransactionType
from app.services.ledger import BalanceKind, CreditLedger


class TestConcurrentDeductions:
    """Concurrent deductions serialize on the row and never overspend."""

    @pytest.mark.asyncio
    async def test_parallel_deductions_never_overspend(
        self, session_factory, seed_user, fetch_user, fetch_transactions
    ):
        user_id = await seed_user(monthly_credits=5, bonus_credits=5)

        async def deduct_one():
            async with session_factory() as session:
                return await CreditLedger(session).deduct(
                    user_id, 1, TransactionType.SEARCH_USAGE
                )

        results = await asyncio.gather(*(deduct_one() for _ in range(20)))

        assert sum(result.success for result in results) == 10
        assert all(result.remaining_credits >= 0 for result in results)

        user = await fetch_user(user_id)
        assert user.monthly_credits == 0
        assert user.bonus_credits == 0

        transactions = await fetch_transactions(user_id)
        assert len(transactions) == 10
        assert sum(t.amount for t in transactions) == -10

    @pytest.mark.asyncio
    async def test_parallel_large_deductions(self, session_factory, seed_user, fetch_user):
        """Three 5-credit deductions against 12 credits: exactly two succeed."""
        user_id = await seed_user(monthly_credits=10, bonus_credits=2)

        async def deduct_five():
            async with session_factory() as session:
                return await CreditLedger(session).deduct(
                    user_id, 5, TransactionType.SEARCH_USAGE
                )

        results = await asyncio.gather(*(deduct_five() for _ in range(3)))

        assert sorted(result.success for result in results) == [False, True, True]
        user = await fetch_user(user_id)
        assert user.monthly_credits + user.bonus_credits == 2

    @pytest.mark.asyncio
    async def test_reset_racing_deductions_is_serializable(
        self, session_factory, seed_user, fetch_user, fetch_transactions
    ):
        """
        A renewal refill racing six 4-credit searches lands at one point
        in a serial order: at most two searches run on the old 10 credits,
        the rest on the refilled 50.
        """
        user_id = await seed_user(monthly_credits=10, plan="pro")

        async def deduct_four():
            async with session_factory() as session:
                return await CreditLedger(session).deduct(
                    user_id, 4, TransactionType.SEARCH_USAGE
                )

        async def renew():
            async with session_factory() as session:
                return await CreditLedger(session).reset_monthly(
                    user_id, datetime(2026, 11, 1, tzinfo=UTC), "pro"
                )

        deductions = [deduct_four() for _ in range(3)]
        results = await asyncio.gather(*deductions, renew(), *(deduct_four() for _ in range(3)))
        allowance, deduct_results = results[3], results[:3] + results[4:]

        assert allowance == 50
        successes = [r for r in deduct_results if r.success]
        failures = [r for r in deduct_results if not r.success]
        assert all(r.remaining_credits >= 0 for r in deduct_results)

        user = await fetch_user(user_id)
        assert user.monthly_credits >= 0
        spent_after_reset = 50 - user.monthly_credits
        assert spent_after_reset % 4 == 0
        before_reset = len(successes) - spent_after_reset // 4
        assert before_reset in (0, 1, 2)
        # The refill covers every later search, so only pre-reset attempts can fail
        if failures:
            assert before_reset == 2
            assert all(r.remaining_credits == 2 for r in failures)

        expected_remaining = sorted(
            [10 - 4 * i for i in range(1, before_reset + 1)]
            + [50 - 4 * i for i in range(1, spent_after_reset // 4 + 1)]
        )
        assert sorted(r.remaining_credits for r in successes) == expected_remaining

        transactions = await fetch_transactions(user_id)
        resets = [t for t in transactions if t.type == TransactionType.MONTHLY_RESET.value]
        searches = [t for t in transactions if t.type == TransactionType.SEARCH_USAGE.value]
        assert [t.amount for t in resets] == [50]
        assert [t.amount for t in searches] == [-4] * len(successes)


class TestDeductionOrdering:
    """Monthly credits are consumed before bonus credits."""

    @pytest.mark.asyncio
    async def test_monthly_covers_whole_amount(self, session_factory, seed_user, fetch_user):
        user_id = await seed_user(monthly_credits=10, bonus_credits=2)

        async with session_factory() as session:
            result = await CreditLedger(session).deduct(user_id, 4, TransactionType.SEARCH_USAGE)

        assert result.remaining_credits == 8
        user = await fetch_user(user_id)
        assert (user.monthly_credits, user.bonus_credits) == (6, 2)

    @pytest.mark.asyncio
    async def test_bonus_covers_remainder(self, session_factory, seed_user, fetch_user):
        user_id = await seed_user(monthly_credits=3, bonus_credits=10)

        async with session_factory() as session:
            result = await CreditLedger(session).deduct(user_id, 5, TransactionType.SEARCH_USAGE)

        assert result.success is True
        assert result.remaining_credits == 8
        user = await fetch_user(user_id)
        assert (user.monthly_credits, user.bonus_credits) == (0, 8)

    @pytest.mark.asyncio
    async def test_insufficient_leaves_row_untouched(
        self, session_factory, seed_user, fetch_user, fetch_transactions
    ):
        user_id = await seed_user(monthly_credits=3, bonus_credits=1)

        async with session_factory() as session:
            result = await CreditLedger(session).deduct(user_id, 5, TransactionType.SEARCH_USAGE)

        assert result.success is False
        assert result.remaining_credits == 4
        user = await fetch_user(user_id)
        assert (user.monthly_credits, user.bonus_credits) == (3, 1)
        assert await fetch_transactions(user_id) == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(UserNotFoundError):
                await CreditLedger(session).deduct(uuid4(), 1, TransactionType.SEARCH_USAGE)


class TestAllowanceScenarios:
    """End-to-end balance scenarios."""

    @pytest.mark.asyncio
    async def test_report_then_search_with_ten_credits(self, session_factory, seed_user):
        """A 10-credit report empties the balance; the next search is refused."""
        user_id = await seed_user(monthly_credits=10)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            report = await ledger.deduct(user_id, 10, TransactionType.REPORT_GENERATION)
            search = await ledger.deduct(user_id, 1, TransactionType.SEARCH_USAGE)

        assert report.success is True
        assert report.remaining_credits == 0
        assert search.success is False
        assert search.remaining_credits == 0

    @pytest.mark.asyncio
    async def test_reset_then_spend_full_allowance(
        self, session_factory, seed_user, fetch_transactions
    ):
        user_id = await seed_user(plan="pro", monthly_credits=3)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            allowance = await ledger.reset_monthly(user_id, datetime.now(UTC))
            spent = await ledger.deduct(user_id, allowance, TransactionType.SEARCH_USAGE)
            refused = await ledger.deduct(user_id, 1, TransactionType.SEARCH_USAGE)

        assert allowance == 50
        assert spent.remaining_credits == 0
        assert refused.success is False

        transactions = await fetch_transactions(user_id)
        assert [t.amount for t in transactions] == [50, -50]
        assert transactions[0].type == TransactionType.MONTHLY_RESET.value

    @pytest.mark.asyncio
    async def test_reset_is_a_refill_not_a_delta(self, session_factory, seed_user, fetch_user):
        user_id = await seed_user(plan="agency", monthly_credits=20, bonus_credits=7)
        period_start = datetime.now(UTC)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            await ledger.reset_monthly(user_id, period_start)
            await ledger.reset_monthly(user_id, period_start)

        user = await fetch_user(user_id)
        assert user.monthly_credits == 150
        assert user.bonus_credits == 7
        assert user.credits_reset_at is not None


class TestGrants:
    """Grant idempotency and balance targeting."""

    @pytest.mark.asyncio
    async def test_same_reference_grants_once(
        self, session_factory, seed_user, fetch_user, fetch_transactions
    ):
        user_id = await seed_user(monthly_credits=50)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            first = await ledger.grant(
                user_id, 150, TransactionType.OVERAGE_PURCHASE, external_reference="cs_test_1"
            )
            second = await ledger.grant(
                user_id, 150, TransactionType.OVERAGE_PURCHASE, external_reference="cs_test_1"
            )

        assert first.applied is True
        assert second.applied is False
        assert second.balance.bonus_credits == 150

        user = await fetch_user(user_id)
        assert (user.monthly_credits, user.bonus_credits) == (50, 150)
        transactions = await fetch_transactions(user_id)
        assert len(transactions) == 1
        assert transactions[0].external_reference == "cs_test_1"

    @pytest.mark.asyncio
    async def test_monthly_grant(self, session_factory, seed_user, fetch_user):
        user_id = await seed_user(monthly_credits=5, bonus_credits=1)

        async with session_factory() as session:
            result = await CreditLedger(session).grant(
                user_id, 10, TransactionType.ADMIN_ADJUSTMENT, balance=BalanceKind.MONTHLY
            )

        assert result.balance.monthly_credits == 15
        user = await fetch_user(user_id)
        assert (user.monthly_credits, user.bonus_credits) == (15, 1)


class TestReads:
    """Balance and history reads."""

    @pytest.mark.asyncio
    async def test_history_is_limited_and_newest_first(self, session_factory, seed_user):
        user_id = await seed_user(monthly_credits=100)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            for _ in range(12):
                await ledger.deduct(user_id, 1, TransactionType.SEARCH_USAGE)
            transactions = await ledger.list_transactions(user_id, limit=10)
            balance = await ledger.get_balance(user_id)

        assert len(transactions) == 10
        assert all(t.amount == -1 for t in transactions)
        created = [t.created_at for t in transactions]
        assert created == sorted(created, reverse=True)
        assert balance.total == 88

    @pytest.mark.asyncio
    async def test_free_user_charge_is_not_metered(self, session_factory, seed_user, fetch_user):
        user_id = await seed_user(status=SubscriptionStatus.FREE, plan=None)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            user = await fetch_user(user_id)
            result = await ledger.charge_for_action(user, 10, TransactionType.REPORT_GENERATION)

        assert result.success is True
        assert result.credits_deducted == 0
        assert result.remaining_credits == 0
