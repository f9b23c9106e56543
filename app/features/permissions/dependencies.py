"""
Permission checking dependencies for route protection.

Every stage is read-only and composable. A stage that cannot decide (store
failure, missing data) raises, so the request is denied rather than allowed.

Usage:
    @router.delete("/{campaign_id}")
    async def delete_campaign(
        campaign_id: str,
        auth: AuthContext = Depends(require_permission("campaigns.delete")),
    ):
        ...
"""
import json
from typing import Annotated, Any, Dict, Optional
from fastapi import Depends, Request, Response

from app.core.errors import (
    AuthorizationError,
    InactiveUser,
    InsufficientRoleLevel,
    MissingPermission,
    ModuleAccessDenied,
    UserNotFound,
    ValidationError,
)
from app.features.permissions.audit import AuditContext, AuditRecorder
from app.features.permissions.hierarchy import RoleHierarchyGuard
from app.features.permissions.policy import action_for_method, permission_key_for
from app.features.permissions.resolver import EffectivePermissionSet, PermissionResolver
from app.features.users.dependencies import AuthContext, authenticate
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Services (built in the app lifespan)
# ============================================================================

def get_resolver(request: Request) -> PermissionResolver:
    return request.app.state.resolver


def get_guard(request: Request) -> RoleHierarchyGuard:
    return request.app.state.guard


def get_audit(request: Request) -> AuditRecorder:
    return request.app.state.audit


def get_audit_context(
    request: Request,
    auth: Annotated[AuthContext, Depends(authenticate)],
) -> AuditContext:
    return AuditContext.from_request(request, auth.user_id)


async def get_effective_permissions(
    auth: Annotated[AuthContext, Depends(authenticate)],
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
) -> EffectivePermissionSet:
    """Resolve the caller's permissions once per request."""
    try:
        return await resolver.resolve(auth.user_id)
    except UserNotFound:
        # Deleted between authentication and resolution
        raise InactiveUser()


def _denial_details(
    permissions: EffectivePermissionSet,
    required: str,
    module: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "userRole": permissions.primary_role_name,
        "requiredPermission": required,
        "availableActions": permissions.available_actions(module) if module else [],
    }


def _check_permission(permissions: EffectivePermissionSet, permission_key: str) -> None:
    if permissions.allows(permission_key):
        return
    module = permission_key.rsplit(".", 1)[0] if "." in permission_key else None
    log.info("Denied %s to user %s", permission_key, permissions.user_id)
    raise MissingPermission(permission_key, _denial_details(permissions, permission_key, module))


# ============================================================================
# Route guards
# ============================================================================

def require_permission(permission_key: str):
    """
    Require a single permission key.

    Returns:
        Dependency function that returns the caller's AuthContext
    """
    async def permission_dependency(
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        _check_permission(permissions, permission_key)
        return auth

    return permission_dependency


def require_any_permission(*permission_keys: str):
    """
    Require at least one of the given keys.

    The denial only lists available actions when every key belongs to the
    same module.
    """
    required = list(permission_keys)
    modules = {key.rsplit(".", 1)[0] for key in required if "." in key}
    module = next(iter(modules)) if len(modules) == 1 else None

    async def any_permission_dependency(
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        if any(permissions.allows(key) for key in required):
            return auth
        wanted = " or ".join(required)
        log.info("Denied any of %s to user %s", wanted, permissions.user_id)
        raise MissingPermission(wanted, _denial_details(permissions, wanted, module))

    return any_permission_dependency


def require_all_permissions(*permission_keys: str):
    """Require every one of the given keys. The first missing key is reported."""
    required = list(permission_keys)

    async def all_permissions_dependency(
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        for key in required:
            _check_permission(permissions, key)
        return auth

    return all_permissions_dependency


def require_policy(module: str, action: Optional[str] = None):
    """
    Require the key the policy table assigns to (module, action).

    When ``action`` is omitted it is derived from the HTTP method
    (GET -> read, POST -> create, PUT/PATCH -> update, DELETE -> delete).
    """
    async def policy_dependency(
        request: Request,
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        resolved_action = action or action_for_method(request.method)
        if resolved_action is None:
            raise AuthorizationError(f"Access denied. No policy for {request.method} on {module}")
        _check_permission(permissions, permission_key_for(module, resolved_action))
        return auth

    return policy_dependency


def require_role(*role_names: str):
    """
    Require one of the named roles. SuperAdmins always pass.

    Prefer permission checks; this is for explicit allow-lists only.
    """
    allowed = set(role_names)

    async def role_dependency(
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        if permissions.is_super_admin or allowed.intersection(permissions.role_names):
            return auth
        raise AuthorizationError(
            f"Access denied. Required role: one of {', '.join(sorted(allowed))}",
            {"userRole": permissions.primary_role_name, "requiredRoles": sorted(allowed)},
        )

    return role_dependency


def require_module_access(module_name: str):
    """Require at least one active permission in ``module_name``."""
    async def module_dependency(
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
    ) -> AuthContext:
        if permissions.can_access_module(module_name):
            return auth
        raise ModuleAccessDenied(module_name, _denial_details(permissions, f"{module_name}.*"))

    return module_dependency


def require_user_management(target_param: str = "user_id"):
    """
    Require that the caller outranks the user named by a path or query parameter.
    """
    async def management_dependency(
        request: Request,
        auth: Annotated[AuthContext, Depends(authenticate)],
        permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
        guard: Annotated[RoleHierarchyGuard, Depends(get_guard)],
    ) -> AuthContext:
        target_user_id = request.path_params.get(target_param) or request.query_params.get(target_param)
        if not target_user_id:
            raise ValidationError(f"Missing target user parameter: {target_param}")

        if not await guard.can_manage(auth.user_id, target_user_id):
            log.info("User %s may not manage user %s", auth.user_id, target_user_id)
            raise InsufficientRoleLevel(
                "Access denied. You can only manage users with a lower role level",
                {"userRole": permissions.primary_role_name, "targetUserId": target_user_id},
            )
        return auth

    return management_dependency


async def expose_access_headers(
    response: Response,
    permissions: Annotated[EffectivePermissionSet, Depends(get_effective_permissions)],
) -> EffectivePermissionSet:
    """Publish the caller's permission keys and role names as response headers."""
    response.headers["X-User-Permissions"] = json.dumps(permissions.permission_keys())
    response.headers["X-User-Roles"] = json.dumps(permissions.role_names)
    return permissions
