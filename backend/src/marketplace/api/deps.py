"""FastAPI dependencies for database sessions, Stripe and authentication."""
from typing import Any, Optional
import structlog

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from marketplace.adapters.stripe_adapter import StripeAdapter
from marketplace.config import settings
from marketplace.database import get_db

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)

__all__ = ["get_db", "get_current_user", "get_stripe_adapter"]


async def get_stripe_adapter() -> StripeAdapter:
    """Get Stripe adapter instance."""
    return StripeAdapter()


def decode_access_token(token: str) -> dict[str, Any]:
    """
    Verify an access token issued by the auth provider.

    Raises:
        jwt.InvalidTokenError: Bad signature, wrong audience, expired, or no subject
    """
    payload = jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options={"require": ["sub", "exp"]},
    )
    return payload


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict[str, Any]:
    """
    Get current authenticated user from JWT token.

    Args:
        request: Incoming request; the user ID is left on its state for request logging
        credentials: HTTP Bearer token from request header

    Returns:
        dict: Decoded claims (``sub`` is the user ID, ``email`` when present)

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.user_id = payload["sub"]
    structlog.contextvars.bind_contextvars(user_id=payload["sub"])
    return payload
