"""
Pydantic schemas for permission management.

Request and response models for modules, permissions, roles, assignments
and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.core import config


def _validate_identifier(v: str, allowed: str, label: str) -> str:
    v = v.strip()
    stripped = v
    for ch in allowed:
        stripped = stripped.replace(ch, "")
    if not stripped.isalnum():
        raise ValueError(f"{label} must contain only alphanumeric characters and {allowed!r}")
    return v


# ============================================================================
# Module Schemas
# ============================================================================

class ModuleCreate(BaseModel):
    """Schema for creating a module."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique module name (e.g. 'campaigns')")
    display_name: str = Field(..., min_length=1, max_length=150)
    order_index: int = Field(0, ge=0)

    @field_validator('name')
    @classmethod
    def name_format(cls, v: str) -> str:
        return _validate_identifier(v, "_", "Module name").lower()


class ModuleUpdate(BaseModel):
    """Schema for updating a module."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=150)
    order_index: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class ModuleResponse(BaseModel):
    id: str
    name: str
    display_name: str
    order_index: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(BaseModel):
    """Schema for creating a permission under an existing module."""
    module_id: str = Field(..., description="Owning module ID")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g. 'read', 'delete')")
    display_name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator('action')
    @classmethod
    def action_format(cls, v: str) -> str:
        """Ensure action is a lowercase identifier."""
        return _validate_identifier(v, "_", "Action").lower()


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    key: str
    module_id: str
    module_name: str
    action: str
    display_name: str
    description: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PermissionFilter(BaseModel):
    """Query filters for listing permissions."""
    module: Optional[str] = Field(None, description="Module name")
    include_inactive: bool = False
    search: Optional[str] = Field(None, max_length=100)
    skip: int = Field(0, ge=0)
    limit: int = Field(200, ge=1, le=1000)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    level: int = Field(1, ge=1, le=config.MAX_ROLE_LEVEL, description="Privilege level, higher outranks lower")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    is_system_role: bool = False

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        return _validate_identifier(v, "_-", "Role name")


class RoleUpdate(BaseModel):
    """Schema for updating a role. Omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    level: Optional[int] = Field(None, ge=1, le=config.MAX_ROLE_LEVEL)
    is_system_role: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _validate_identifier(v, "_-", "Role name")


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_system_role: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class RoleFilter(BaseModel):
    """Query filters for listing roles."""
    include_inactive: bool = False
    is_system_role: Optional[bool] = None
    search: Optional[str] = Field(None, max_length=100)
    skip: int = Field(0, ge=0)
    limit: int = Field(100, ge=1, le=500)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignPermissionToRole(BaseModel):
    """Schema for granting a permission to a role."""
    permission_id: str = Field(..., description="Permission ID")


class SetRolePermissions(BaseModel):
    """Schema for replacing a role's permission set in one transaction."""
    permission_ids: List[str] = Field(default_factory=list)


class AssignRoleToUser(BaseModel):
    """Schema for assigning a secondary role to a user."""
    role_id: str = Field(..., description="Role ID")
    expires_at: Optional[datetime] = Field(None, description="Assignment stops counting after this instant")


class SetPrimaryRole(BaseModel):
    """Schema for changing a user's primary role (null clears it)."""
    role_id: Optional[str] = None


class UserRoleAssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    role_name: str
    is_active: bool
    assigned_by: Optional[str] = None
    assigned_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserRolesResponse(BaseModel):
    """Primary role plus secondary assignments for one user."""
    user_id: str
    primary_role: Optional[RoleResponse] = None
    assignments: List[UserRoleAssignmentResponse] = []


class MutationResult(BaseModel):
    """Outcome of an idempotent administrative write."""
    success: bool = True
    changed: bool
    message: str


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking whether the caller holds a permission."""
    permission_key: str = Field(..., min_length=1, max_length=150)


class PermissionCheckResponse(BaseModel):
    has_permission: bool
    reason: Optional[str] = None


class UserPermissionsResponse(BaseModel):
    """Effective permissions of a user."""
    user_id: str
    roles: List[str] = []
    max_level: Optional[int] = None
    is_super_admin: bool
    permissions: List[str] = []
    modules: Dict[str, List[str]] = {}


class CleanupResult(BaseModel):
    deactivated: int


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogFilter(BaseModel):
    """Query filters for the audit log."""
    actor_user_id: Optional[str] = None
    target_user_id: Optional[str] = None
    role_id: Optional[str] = None
    action: Optional[str] = None
    skip: int = Field(0, ge=0)
    limit: int = Field(50, ge=1, le=500)


class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    actor_user_id: Optional[str]
    action: str
    target_user_id: Optional[str]
    role_id: Optional[str]
    permission_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
