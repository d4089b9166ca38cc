"""
Admin authorization dependencies for protecting admin routes.

Administrators authenticate with the same bearer tokens as users; the
allow-list decides who may use the admin surface.
"""

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_verified_identity, rate_limit_by_ip
from app.db.session import get_db
from app.exceptions import AuthorizationError, ConfigurationError
from app.models.domain import AdminPrincipal, VerifiedIdentity
from app.services.admin_auth import AllowListAdminResolver, get_admin_resolver
from app.services.rate_limiter import ADMIN_RULE
from app.services.users import UserService

logger = get_logger(__name__)

# Rate limit admin traffic per client address before any token verification
admin_rate_limit = rate_limit_by_ip(ADMIN_RULE)


async def require_admin(
    client_ip: str = Depends(admin_rate_limit),
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: AsyncSession = Depends(get_db),
    resolver: AllowListAdminResolver = Depends(get_admin_resolver),
) -> AdminPrincipal:
    """
    Require an allow-listed administrator with a user row.

    Raises:
        HTTPException(401): If no valid bearer token was presented
        HTTPException(403): If the caller is not an administrator
        HTTPException(500): If no administrators are configured
    """
    try:
        principal = await resolver.resolve(identity, UserService(db))
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: no administrators configured",
        ) from exc
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        ) from exc

    logger.debug("admin_auth_success", user_id=str(principal.user_id), client_ip=client_ip)
    return principal
