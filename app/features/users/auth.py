"""
Access token utilities (HS256 JWT).

Tokens are issued by the login service; this module verifies them and can
mint tokens for seeding and tests.
"""
import time
from typing import Any, Dict, Optional
import jwt

from app.core import config
from app.core.errors import ExpiredToken, InvalidToken

ACCESS_TOKEN_TYPE = "access"


def create_access_token(
    user_id: str,
    two_factor_verified: bool = False,
    expire_seconds: Optional[int] = None,
    secret: Optional[str] = None,
) -> str:
    """
    Mint an access token for ``user_id``.

    Args:
        user_id: Local user ID
        two_factor_verified: Whether the login completed a second factor
        expire_seconds: Lifetime, defaults to ACCESS_TOKEN_EXPIRE_SECONDS

    Returns:
        Encoded JWT
    """
    now = int(time.time())
    lifetime = config.ACCESS_TOKEN_EXPIRE_SECONDS if expire_seconds is None else expire_seconds
    payload = {
        "user_id": user_id,
        "type": ACCESS_TOKEN_TYPE,
        "two_factor_verified": two_factor_verified,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, secret or config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_access_token(token: str) -> Dict[str, Any]:
    """
    Verify signature, expiry and token type and return the payload.

    Raises:
        ExpiredToken: If the token is past its ``exp``
        InvalidToken: If the token is malformed, badly signed or not an access token
    """
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["exp", "user_id"]},
        )
    except jwt.ExpiredSignatureError:
        raise ExpiredToken()
    except jwt.InvalidTokenError as e:
        raise InvalidToken(f"Invalid token: {e}")

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise InvalidToken("Invalid token type")
    if not isinstance(payload.get("user_id"), str):
        raise InvalidToken("Invalid token payload")
    return payload
