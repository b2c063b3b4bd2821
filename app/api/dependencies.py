"""
FastAPI Dependencies - Authentication and request context.

NO DICTIONARIES - All dependencies return typed objects.
"""

import jwt
from asgi_correlation_id import correlation_id
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import get_settings
from app.db.session import get_write_db
from app.exceptions import MisconfiguredIntegrationError
from app.models.domain import Principal, RequestContext
from app.services.entitlements import EntitlementService
from app.services.payment_provider import PaymentProvider
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """
    Verify the caller's bearer JWT and return the principal it names.

    Accepts: Authorization: Bearer {jwt}
    Verifies: HS256 signature with AUTH_JWT_SECRET, expiry, and audience
    when AUTH_JWT_AUDIENCE is set
    Extracts: `sub` as the external identity, `email` when present

    Raises:
        HTTPException 401 if no token or invalid token
        MisconfiguredIntegrationError if no signing secret is configured
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")

    settings = get_settings()
    if not settings.auth_jwt_secret:
        raise MisconfiguredIntegrationError("auth", "AUTH_JWT_SECRET")

    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("auth_token_expired")
        raise _unauthorized("Token expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise _unauthorized("Invalid token") from e

    subject = claims.get("sub")
    if not subject:
        logger.warning("auth_token_missing_subject")
        raise _unauthorized("Invalid token: missing subject")

    email = claims.get("email")
    return Principal(external_id=str(subject), email=str(email) if email else None)


async def get_request_context(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_write_db),
) -> RequestContext:
    """Resolve the principal to its account (created on first contact)."""
    account = await EntitlementService(db).upsert_account(principal)
    return RequestContext(
        principal=principal,
        account_id=account.account_id,
        role=account.role,
        correlation_id=correlation_id.get(),
    )


def get_payment_provider() -> PaymentProvider:
    """Billing provider adapter. Overridden in tests."""
    return StripeProvider(get_settings())
