"""
FastAPI Dependencies - Authentication, user provisioning and rate limiting.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import User
from app.db.session import get_db
from app.exceptions import ConfigurationError, RateLimitedError, TransientError
from app.models.domain import VerifiedIdentity
from app.observability.metrics import metrics
from app.services.identity import IdentityVerifier, get_identity_verifier
from app.services.rate_limiter import RateLimitRule, rate_limiter
from app.services.users import UserService

logger = get_logger(__name__)

# Bearer token scheme; missing credentials are reported as 401 by get_verified_identity
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Client address
# ============================================================================


def get_client_ip(request: Request) -> str:
    """
    Best-effort client address behind proxies.

    Order: first X-Forwarded-For entry, CF-Connecting-IP, X-Real-IP, socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# ============================================================================
# Rate limiting
# ============================================================================


def enforce_rate_limit(identifier: str, rule: RateLimitRule) -> None:
    """
    Count a request against a rule.

    Raises:
        RateLimitedError: If the window is exhausted (rendered as 429 + Retry-After)
    """
    result = rate_limiter.check(identifier, rule)
    if not result.allowed:
        metrics.record_rate_limited(rule.name)
        raise RateLimitedError(identifier, result.retry_after_seconds(rate_limiter.now()))


def rate_limit_by_ip(rule: RateLimitRule) -> Callable[[Request], Awaitable[str]]:
    """
    Build a dependency that rate limits by client address under `<rule>:<ip>`.

    Usage:
        @router.post("/auth/verify")
        async def verify(client_ip: str = Depends(rate_limit_by_ip(VERIFY_RULE))):
            ...
    """

    async def dependency(request: Request) -> str:
        client_ip = get_client_ip(request)
        enforce_rate_limit(f"{rule.name}:{client_ip}", rule)
        return client_ip

    return dependency


# ============================================================================
# Identity
# ============================================================================


async def get_verified_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> VerifiedIdentity:
    """
    Resolve the bearer token through the identity provider.

    Raises:
        HTTPException 401: No token, or the provider rejected it
        HTTPException 500: Identity provider not configured
        HTTPException 503: Identity provider unreachable or timed out
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        identity = await verifier.verify(credentials.credentials)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: identity provider not configured",
        ) from exc
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider unavailable",
        ) from exc

    if identity is None:
        logger.info("authentication_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


async def get_current_user(
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Authenticated user row, provisioned (free, zero credits) on first contact."""
    return await UserService(db).get_or_create(identity)
