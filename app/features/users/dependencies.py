"""
FastAPI dependencies for authentication.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.errors import InactiveUser, InvalidToken, TwoFactorRequired
from app.features.permissions.store import PermissionStore
from app.features.users.auth import verify_access_token
from app.utils import get_logger


log = get_logger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """The authenticated caller of the current request."""
    user_id: str
    username: str
    issued_at: Optional[datetime] = None


def get_store(request: Request) -> PermissionStore:
    return request.app.state.store


async def authenticate(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    store: Annotated[PermissionStore, Depends(get_store)],
) -> AuthContext:
    """
    Authenticate the caller from the ``Authorization: Bearer`` header.

    This dependency:
    1. Verifies the access token (signature, expiry, type)
    2. Loads the user and rejects missing or inactive accounts
    3. Rejects two-factor accounts whose token skipped the second factor

    Usage:
        @router.get("/me")
        async def get_me(auth: AuthContext = Depends(authenticate)):
            return auth
    """
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise InvalidToken("Access token required")

    payload = verify_access_token(credentials.credentials)
    user = await store.get_user(payload["user_id"])
    if user is None or not user.is_active:
        log.info("Rejected token for missing or inactive user %s", payload["user_id"])
        raise InactiveUser()

    if user.two_factor_enabled and not payload.get("two_factor_verified"):
        raise TwoFactorRequired()

    issued_at = payload.get("iat")
    request.state.user_id = user.id
    return AuthContext(
        user_id=user.id,
        username=user.username,
        issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc) if issued_at else None,
    )


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
