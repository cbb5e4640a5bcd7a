"""
Identity - verification of bearer tokens issued by the identity service.

Tokens are HS256 JWTs signed with ACCESS_TOKEN_SECRET. The user id is read
from the `id` claim, falling back to the standard `sub` claim.
"""

from uuid import UUID

import jwt

from psychic_metering.config import settings
from psychic_metering.exceptions import AuthenticationError
from psychic_metering.observability.logging import get_logger

logger = get_logger(__name__)


def verify_access_token(token: str, secret: str | None = None) -> UUID:
    """
    Verify a bearer token and return the user id it was issued for.

    Raises:
        AuthenticationError: token missing, expired, badly signed, or without a user id
    """
    if not token:
        raise AuthenticationError("missing token")

    try:
        payload = jwt.decode(
            token, secret or settings.access_token_secret, algorithms=["HS256"]
        )
    except jwt.ExpiredSignatureError as exc:
        logger.warning("access_token_expired")
        raise AuthenticationError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("access_token_invalid", error=str(exc))
        raise AuthenticationError("invalid token") from exc

    raw_user_id = payload.get("id") or payload.get("sub")
    if not raw_user_id:
        raise AuthenticationError("token has no user id")

    try:
        return UUID(str(raw_user_id))
    except ValueError as exc:
        raise AuthenticationError("token user id is not a UUID") from exc
