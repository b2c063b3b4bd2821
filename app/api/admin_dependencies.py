"""
Admin authorization dependencies for protecting admin routes.
"""

from fastapi import Depends, HTTPException, status
from structlog import get_logger

from app.api.dependencies import get_request_context
from app.models.api import Role
from app.models.domain import RequestContext

logger = get_logger(__name__)


async def require_admin(
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """
    Require role admin or superadmin.

    Raises:
        HTTPException(403): If the caller is a regular user
    """
    if not ctx.is_admin:
        logger.warning(
            "admin_role_insufficient",
            account_id=str(ctx.account_id),
            role=ctx.role.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return ctx


async def require_superadmin(
    ctx: RequestContext = Depends(require_admin),
) -> RequestContext:
    """Require role superadmin (role management)."""
    if ctx.role != Role.SUPERADMIN:
        logger.warning(
            "admin_role_insufficient",
            account_id=str(ctx.account_id),
            role=ctx.role.value,
            required=Role.SUPERADMIN.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Superadmin role required",
        )
    return ctx
