"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Stores identity, subscription state and both credit balances.
    """

    __tablename__ = "users"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity fields
    identity_provider_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription
    subscription_status: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscription_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Balances
    monthly_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bonus_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credits_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payment processor correlation
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("monthly_credits >= 0", name="ck_monthly_credits_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_bonus_credits_non_negative"),
        CheckConstraint(
            "subscription_status IN ('free', 'trialing', 'active', 'canceled', 'past_due')",
            name="ck_subscription_status",
        ),
        Index("idx_users_subscription_status", "subscription_status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, email={self.email}, status={self.subscription_status}, "
            f"monthly={self.monthly_credits}, bonus={self.bonus_credits})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Immutable ledger of every balance change. Negative amounts are consumption.
    """

    __tablename__ = "credit_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign Key to User
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Processor reference (checkout session id) - idempotency key for purchase grants
    external_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_transaction_amount_non_zero"),
        CheckConstraint(
            "type IN ('search_usage', 'report_generation', 'monthly_reset', "
            "'overage_purchase', 'admin_adjustment')",
            name="ck_transaction_type",
        ),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.type})>"
        )


class ProcessedWebhookEvent(Base):
    """
    ORM model for processed_webhook_events table.

    Marker written in the same transaction as an event's effects so that
    redelivered events are recognized and skipped.
    """

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedWebhookEvent(event_id={self.event_id}, type={self.event_type})>"
