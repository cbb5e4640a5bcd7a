"""
FastAPI Dependencies - Authentication and service wiring.
"""

import secrets
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from psychic_metering.config import settings
from psychic_metering.exceptions import AuthenticationError
from psychic_metering.services.identity import verify_access_token
from psychic_metering.services.reply_generator import OpenAIReplyGenerator, ReplyGenerator

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UUID:
    """
    FastAPI dependency resolving the caller's user id from a bearer token.

    Accepts: Authorization: Bearer {access_token}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return verify_access_token(credentials.credentials)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Payment Service Authentication
# ============================================================================


async def require_payment_service(
    x_api_key: str = Header(..., description="Payment service API key"),
) -> None:
    """
    FastAPI dependency guarding wallet top-ups.

    Only the payment service, after it confirmed a payment, may credit wallets.

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    expected = settings.payment_service_api_key
    if not expected or not secrets.compare_digest(x_api_key, expected):
        logger.warning("payment_service_auth_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


# ============================================================================
# Reply Generation
# ============================================================================

_reply_generator: OpenAIReplyGenerator | None = None


def get_reply_generator() -> ReplyGenerator:
    """Get the shared completion API client."""
    global _reply_generator
    if _reply_generator is None:
        _reply_generator = OpenAIReplyGenerator(
            api_url=settings.reply_api_url,
            api_key=settings.reply_api_key,
            model=settings.reply_model,
            timeout_seconds=settings.reply_timeout_seconds,
        )
    return _reply_generator


async def close_reply_generator() -> None:
    """Close the shared completion API client (for graceful shutdown)."""
    global _reply_generator
    if _reply_generator is not None:
        await _reply_generator.close()
        _reply_generator = None
