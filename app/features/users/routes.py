"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends

from app.core.errors import InactiveUser, UserNotFound
from app.features.permissions.dependencies import expose_access_headers, require_permission
from app.features.permissions.resolver import EffectivePermissionSet
from app.features.permissions.store import PermissionStore
from app.features.users.dependencies import AuthContext, authenticate, get_store
from app.features.users.schemas import CurrentUserResponse, UserResponse


router = APIRouter(tags=["users"])


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user_profile(
    auth: Annotated[AuthContext, Depends(authenticate)],
    permissions: Annotated[EffectivePermissionSet, Depends(expose_access_headers)],
    store: Annotated[PermissionStore, Depends(get_store)],
):
    """Get current authenticated user's identity, roles and permissions."""
    user = await store.get_user(auth.user_id)
    if user is None:
        raise InactiveUser()
    return CurrentUserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        roles=permissions.role_names,
        max_level=permissions.max_level,
        is_super_admin=permissions.is_super_admin,
        permissions=permissions.permission_keys(),
    )


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    store: Annotated[PermissionStore, Depends(get_store)],
    _auth: Annotated[AuthContext, Depends(require_permission("users.read"))],
):
    """Get a user record by ID."""
    user = await store.get_user(user_id)
    if user is None:
        raise UserNotFound()
    return user
