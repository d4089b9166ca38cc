"""
User Service - lookup and auto-provisioning of user rows.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import User
from app.exceptions import DataIntegrityError
from app.models.api import SubscriptionStatus
from app.models.domain import VerifiedIdentity

logger = get_logger(__name__)


class UserService:
    """Resolves users by the identifiers the ledger receives from callers and events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize user service with database session."""
        self.session = session

    async def get_or_create(self, identity: VerifiedIdentity, name: str | None = None) -> User:
        """
        Get the user for a verified identity, provisioning it on first contact.

        New users start free with zero credits. A concurrent first contact
        that wins the insert race is picked up by re-reading.
        """
        user = await self.find_by_identity_provider_id(identity.external_id)
        if user is not None:
            return user

        # A row may already exist for this email (created by checkout before first login)
        if identity.email:
            user = await self.find_by_email(identity.email)
            if user is not None and user.identity_provider_id != identity.external_id:
                logger.info(
                    "user_identity_linked",
                    user_id=str(user.id),
                    identity_provider_id=identity.external_id,
                )
                user.identity_provider_id = identity.external_id
                await self.session.commit()
                return user

        new_user = User(
            identity_provider_id=identity.external_id,
            email=identity.email or f"{identity.external_id}@unknown.invalid",
            name=name,
            subscription_status=SubscriptionStatus.FREE.value,
            monthly_credits=0,
            bonus_credits=0,
        )
        self.session.add(new_user)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            logger.warning(
                "user_creation_integrity_error",
                error=str(e),
                identity_provider_id=identity.external_id,
            )
            await self.session.rollback()
            user = await self.find_by_identity_provider_id(identity.external_id)
            if user is None:
                raise DataIntegrityError(
                    f"cannot provision user for {identity.external_id}: {e.orig}"
                ) from e
            return user

        logger.info("user_provisioned", user_id=str(new_user.id), email=new_user.email)
        return new_user

    async def find_by_id(self, user_id: UUID) -> User | None:
        """Find user by primary key."""
        stmt = select(User).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> User | None:
        """Find user by email (case-insensitive)."""
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_identity_provider_id(self, external_id: str) -> User | None:
        """Find user by identity provider id."""
        stmt = select(User).where(User.identity_provider_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_customer_id(self, customer_id: str) -> User | None:
        """Find user by payment processor customer id."""
        stmt = select(User).where(User.stripe_customer_id == customer_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
