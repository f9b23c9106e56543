"""
Permission management API routes.

Provides endpoints for the permission catalog, roles, role grants, user role
assignments, effective permissions and the audit log.
"""
from typing import List
from fastapi import APIRouter, Depends, Query, Response, status

from app.core.errors import InsufficientRoleLevel, MissingPermission
from app.features.permissions.audit import AuditContext, AuditRecorder
from app.features.permissions.dependencies import (
    expose_access_headers,
    get_audit,
    get_audit_context,
    get_effective_permissions,
    get_resolver,
    require_permission,
    require_user_management,
)
from app.features.permissions.models import Role
from app.features.permissions.resolver import EffectivePermissionSet, PermissionResolver
from app.features.permissions.schemas import (
    AssignPermissionToRole,
    AssignRoleToUser,
    AuditLogFilter,
    AuditLogListResponse,
    AuditLogResponse,
    CleanupResult,
    ModuleCreate,
    ModuleResponse,
    ModuleUpdate,
    MutationResult,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionFilter,
    PermissionResponse,
    PermissionUpdate,
    RoleCreate,
    RoleFilter,
    RoleResponse,
    RoleUpdate,
    RoleWithPermissions,
    SetPrimaryRole,
    SetRolePermissions,
    UserPermissionsResponse,
    UserRoleAssignmentResponse,
    UserRolesResponse,
)
from app.features.permissions.store import PermissionStore
from app.features.users.dependencies import AuthContext, authenticate, get_store
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _ensure_can_administer_role(permissions: EffectivePermissionSet, role_level: int, is_system_role: bool) -> None:
    """
    Only SuperAdmins touch system roles or roles at or above their own level.
    """
    if permissions.is_super_admin:
        return
    if is_system_role:
        raise InsufficientRoleLevel(
            "Access denied. Only super admins can modify system roles",
            {"userRole": permissions.primary_role_name},
        )
    if permissions.max_level is None or role_level >= permissions.max_level:
        raise InsufficientRoleLevel(
            "Access denied. Role level must be below your own",
            {"userRole": permissions.primary_role_name, "roleLevel": role_level},
        )


def _ensure_can_administer(permissions: EffectivePermissionSet, role: Role) -> None:
    _ensure_can_administer_role(permissions, role.level, role.is_system_role)


def _ensure_self_or_reader(auth: AuthContext, permissions: EffectivePermissionSet, user_id: str) -> None:
    """Users may always read their own roles and permissions; others need users.read."""
    if user_id == auth.user_id or permissions.allows("users.read"):
        return
    raise MissingPermission("users.read", {
        "userRole": permissions.primary_role_name,
        "requiredPermission": "users.read",
        "availableActions": permissions.available_actions("users"),
    })


# ============================================================================
# Module Routes
# ============================================================================

@router.get("/modules", response_model=List[ModuleResponse])
async def list_modules(
    include_inactive: bool = False,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.read")),
):
    """List permission modules in display order."""
    return await store.list_modules(include_inactive=include_inactive)


@router.post("/modules", response_model=ModuleResponse, status_code=status.HTTP_201_CREATED)
async def create_module(
    module: ModuleCreate,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.create")),
):
    """Create a new module."""
    return await store.create_module(module)


@router.put("/modules/{module_id}", response_model=ModuleResponse)
async def update_module(
    module_id: str,
    module: ModuleUpdate,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.update")),
):
    """Update a module. Deactivating it hides all of its permissions."""
    return await store.update_module(module_id, module)


# ============================================================================
# Permission Routes
# ============================================================================

@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    filters: PermissionFilter = Depends(),
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.read")),
):
    """List permissions with optional filtering."""
    return await store.list_permissions(filters)


@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.create")),
):
    """Create a new permission keyed ``<module>.<action>``."""
    return await store.create_permission(permission)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission: PermissionUpdate,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("permissions.update")),
):
    """Update a permission."""
    return await store.update_permission(permission_id, permission)


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    filters: RoleFilter = Depends(),
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("roles.read")),
):
    """List roles, highest level first."""
    return await store.list_roles(filters)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("roles.read")),
):
    """Get a role with its granted permissions."""
    return await store.get_role(role_id)


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("roles.create")),
):
    """Create a new role."""
    _ensure_can_administer_role(permissions, role.level, role.is_system_role)
    return await store.create_role(role, context)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("roles.update")),
):
    """Update a role."""
    role = await store.get_role(role_id)
    _ensure_can_administer(permissions, role)
    if role_update.level is not None or role_update.is_system_role is not None:
        _ensure_can_administer_role(
            permissions,
            role_update.level if role_update.level is not None else role.level,
            bool(role_update.is_system_role),
        )
    return await store.update_role(role_id, role_update, context)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    hard: bool = Query(False, description="Remove the row instead of deactivating it"),
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("roles.delete")),
):
    """Delete a role. System roles and roles still assigned to active users are refused."""
    role = await store.get_role(role_id)
    # System roles fail with SystemRoleProtected regardless of caller level
    if not role.is_system_role:
        _ensure_can_administer(permissions, role)
    await store.delete_role(role_id, hard=hard, context=context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Role Permission Routes
# ============================================================================

@router.get("/roles/{role_id}/permissions", response_model=List[PermissionResponse])
async def get_role_permissions(
    role_id: str,
    store: PermissionStore = Depends(get_store),
    _auth: AuthContext = Depends(require_permission("roles.read")),
):
    """List the permissions granted to a role."""
    return await store.get_role_permissions(role_id)


@router.post("/roles/{role_id}/permissions", response_model=MutationResult)
async def grant_permission_to_role(
    role_id: str,
    assignment: AssignPermissionToRole,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("permissions.assign")),
):
    """Grant a permission to a role. Granting twice is not an error."""
    _ensure_can_administer(permissions, await store.get_role(role_id))
    changed = await store.grant_permission(role_id, assignment.permission_id, context)
    return MutationResult(
        changed=changed,
        message="Permission granted to role" if changed else "Permission already granted to role",
    )


@router.put("/roles/{role_id}/permissions", response_model=MutationResult)
async def set_role_permissions(
    role_id: str,
    payload: SetRolePermissions,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("permissions.assign")),
):
    """Replace a role's permissions. Either every change applies or none does."""
    _ensure_can_administer(permissions, await store.get_role(role_id))
    changes = await store.set_role_permissions(role_id, payload.permission_ids, context)
    return MutationResult(
        changed=changes.changed,
        message=f"Granted {len(changes.granted)}, revoked {len(changes.revoked)} permission(s)",
    )


@router.delete("/roles/{role_id}/permissions/{permission_id}", response_model=MutationResult)
async def revoke_permission_from_role(
    role_id: str,
    permission_id: str,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("permissions.assign")),
):
    """Revoke a permission from a role. Revoking a missing grant is not an error."""
    _ensure_can_administer(permissions, await store.get_role(role_id))
    changed = await store.revoke_permission(role_id, permission_id, context)
    return MutationResult(
        changed=changed,
        message="Permission revoked from role" if changed else "Permission was not granted to role",
    )


# ============================================================================
# User Role Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=UserRolesResponse)
async def get_user_roles(
    user_id: str,
    store: PermissionStore = Depends(get_store),
    auth: AuthContext = Depends(authenticate),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
):
    """Primary role and secondary assignments of a user."""
    _ensure_self_or_reader(auth, permissions, user_id)
    assignments = await store.get_user_role_assignments(user_id)
    return UserRolesResponse(
        user_id=assignments.user_id,
        primary_role=RoleResponse.model_validate(assignments.primary_role) if assignments.primary_role else None,
        assignments=[UserRoleAssignmentResponse.model_validate(a) for a in assignments.assignments],
    )


@router.post("/users/{user_id}/roles", response_model=MutationResult)
async def assign_role_to_user(
    user_id: str,
    assignment: AssignRoleToUser,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    auth: AuthContext = Depends(require_permission("users.manage_roles")),
    _managed: AuthContext = Depends(require_user_management("user_id")),
):
    """Assign a secondary role to a user the caller outranks."""
    _ensure_can_administer(permissions, await store.get_role(assignment.role_id))
    changed = await store.assign_user_role(
        user_id, assignment.role_id, auth.user_id, assignment.expires_at, context
    )
    return MutationResult(
        changed=changed,
        message="Role assigned to user" if changed else "User already has this role",
    )


@router.delete("/users/{user_id}/roles/{role_id}", response_model=MutationResult)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("users.manage_roles")),
    _managed: AuthContext = Depends(require_user_management("user_id")),
):
    """Remove a secondary role from a user the caller outranks."""
    _ensure_can_administer(permissions, await store.get_role(role_id))
    changed = await store.remove_user_role(user_id, role_id, context)
    return MutationResult(
        changed=changed,
        message="Role removed from user" if changed else "User did not have this role",
    )


@router.put("/users/{user_id}/primary-role", response_model=MutationResult)
async def set_primary_role(
    user_id: str,
    payload: SetPrimaryRole,
    store: PermissionStore = Depends(get_store),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("users.manage_roles")),
    _managed: AuthContext = Depends(require_user_management("user_id")),
):
    """Change (or clear) a user's primary role."""
    if payload.role_id is not None:
        _ensure_can_administer(permissions, await store.get_role(payload.role_id))
    changed = await store.set_primary_role(user_id, payload.role_id, context)
    return MutationResult(
        changed=changed,
        message="Primary role updated" if changed else "Primary role unchanged",
    )


@router.post("/assignments/cleanup-expired", response_model=CleanupResult)
async def cleanup_expired_assignments(
    store: PermissionStore = Depends(get_store),
    context: AuditContext = Depends(get_audit_context),
    _auth: AuthContext = Depends(require_permission("users.manage_roles")),
):
    """Deactivate assignments whose expiry has passed."""
    return CleanupResult(deactivated=await store.deactivate_expired_assignments(context))


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    permissions: EffectivePermissionSet = Depends(expose_access_headers),
):
    """Check if the current user has a specific permission."""
    has_perm = permissions.allows(check_request.permission_key)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied",
    )


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    auth: AuthContext = Depends(authenticate),
    permissions: EffectivePermissionSet = Depends(get_effective_permissions),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Effective permissions of a user. Users may always view their own."""
    _ensure_self_or_reader(auth, permissions, user_id)
    target = permissions if user_id == auth.user_id else await resolver.resolve(user_id)
    return UserPermissionsResponse(
        user_id=user_id,
        roles=target.role_names,
        max_level=target.max_level,
        is_super_admin=target.is_super_admin,
        permissions=target.permission_keys(),
        modules=target.modules(),
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    filters: AuditLogFilter = Depends(),
    audit: AuditRecorder = Depends(get_audit),
    _auth: AuthContext = Depends(require_permission("audit.read")),
):
    """List audit logs with optional filtering, newest first."""
    entries, total = await audit.list_entries(filters)
    limit = filters.limit
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in entries],
        total=total,
        page=(filters.skip // limit) + 1,
        page_size=limit,
        pages=(total + limit - 1) // limit,
    )
