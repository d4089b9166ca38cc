"""
Admin API Routes - manual subscription tier management.

All routes require an allow-listed administrator and are rate limited per
client address.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.admin_dependencies import require_admin
from app.api.dependencies import get_client_ip
from app.db.session import get_db
from app.exceptions import (
    InvalidInputError,
    SelfProtectionError,
    TransientError,
    UserNotFoundError,
)
from app.models.api import (
    UpdateUserTierRequest,
    UpdateUserTierResponse,
    UserTierResponse,
    UserTierSnapshot,
)
from app.models.domain import AdminPrincipal
from app.services.admin_auth import AllowListAdminResolver, get_admin_resolver
from app.services.admin_override import AdminOverrideService, build_override

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/user-tier", response_model=UserTierResponse)
async def get_user_tier(
    email: str | None = Query(None),
    user_id: UUID | None = Query(None, alias="userId"),
    admin: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    resolver: AllowListAdminResolver = Depends(get_admin_resolver),
) -> UserTierResponse:
    """Get a user's current subscription tier by email or userId."""
    service = AdminOverrideService(db, resolver)
    try:
        user = await service.get_snapshot(user_id=user_id, email=email)
    except InvalidInputError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="email or userId query parameter required",
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    logger.info("admin_user_tier_viewed", actor_id=str(admin.user_id), target_id=str(user.id))
    return UserTierResponse(user=UserTierSnapshot.model_validate(user))


@router.post("/user-tier", response_model=UpdateUserTierResponse)
async def update_user_tier(
    body: UpdateUserTierRequest,
    request: Request,
    admin: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    resolver: AllowListAdminResolver = Depends(get_admin_resolver),
) -> UpdateUserTierResponse:
    """
    Override a user's subscription tier and, optionally, balances.

    Administrators may change their own account but not another
    administrator's.
    """
    service = AdminOverrideService(db, resolver)
    try:
        override = build_override(body.tier, body.monthly_credits, body.bonus_credits)
        user = await service.apply_override(
            admin,
            override,
            user_id=body.user_id,
            email=body.email,
            origin=get_client_ip(request),
        )
    except InvalidInputError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    except SelfProtectionError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrators cannot modify another administrator's account",
        ) from exc
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable",
        ) from exc

    return UpdateUserTierResponse(
        success=True,
        user=UserTierSnapshot.model_validate(user),
        message=f"User tier updated to {override.tier.value}",
    )
