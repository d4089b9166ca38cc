"""
Admin authorization - resolves verified identities to administrator principals.

Administrators are configured by email (ADMIN_EMAILS) and must also have a
user row; the row id is what self-protection compares against.
"""

from typing import Protocol

from structlog import get_logger

from app.config import get_settings
from app.db.models import User
from app.exceptions import AuthorizationError, ConfigurationError
from app.models.domain import AdminPrincipal, VerifiedIdentity
from app.services.users import UserService

logger = get_logger(__name__)


class AdminPrincipalResolver(Protocol):
    """Decides who is an administrator."""

    def is_admin_email(self, email: str | None) -> bool:
        """Whether an email belongs to an administrator."""
        ...

    async def resolve(self, identity: VerifiedIdentity, users: UserService) -> AdminPrincipal:
        """
        Resolve a verified identity to an administrator.

        Raises:
            ConfigurationError: If no administrators are configured
            AuthorizationError: If the identity is not an administrator
        """
        ...


class AllowListAdminResolver:
    """Administrator allow-list sourced from configuration."""

    def __init__(self, admin_emails: list[str]):
        self.admin_emails = frozenset(email.strip().lower() for email in admin_emails if email)

    def is_admin_email(self, email: str | None) -> bool:
        """Whether an email is on the allow-list (case-insensitive)."""
        if not email:
            return False
        return email.strip().lower() in self.admin_emails

    def is_admin_user(self, user: User) -> bool:
        """Whether a user row belongs to an administrator."""
        return self.is_admin_email(user.email)

    async def resolve(self, identity: VerifiedIdentity, users: UserService) -> AdminPrincipal:
        """Resolve a verified identity to an administrator backed by a user row."""
        if not self.admin_emails:
            logger.error("admin_allow_list_empty")
            raise ConfigurationError("ADMIN_EMAILS")

        if not self.is_admin_email(identity.email):
            logger.warning(
                "admin_access_denied",
                external_id=identity.external_id,
                email=identity.email,
            )
            raise AuthorizationError("admin")

        user = await users.find_by_identity_provider_id(identity.external_id)
        if user is None and identity.email:
            user = await users.find_by_email(identity.email)
        if user is None:
            logger.warning("admin_without_user_row", email=identity.email)
            raise AuthorizationError("admin")

        return AdminPrincipal(
            user_id=user.id,
            email=user.email,
            external_id=identity.external_id,
        )


def get_admin_resolver() -> AllowListAdminResolver:
    """FastAPI dependency: allow-list resolver from settings."""
    return AllowListAdminResolver(get_settings().admin_email_list)
