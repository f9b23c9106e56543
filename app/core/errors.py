"""
Error taxonomy for the authorization engine.

Every error carries the HTTP status it maps to and a stable machine code.
The exception handler in app.main renders them as:

    {"success": false, "message": "...", "code": "...", "details": {...}}

StoreUnavailable maps to 500 but every authorization check consuming it
denies the request.
"""
from typing import Any, Dict, Optional

from fastapi import status


class AccessControlError(Exception):
    """Base exception for the access control engine."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "ACCESS_CONTROL_ERROR"
    default_message: str = "An error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class StoreUnavailable(AccessControlError):
    """The permission store could not be reached or timed out."""
    code = "STORE_UNAVAILABLE"
    default_message = "Permission store unavailable"


# ============================================================================
# Authentication (401)
# ============================================================================

class AuthenticationError(AccessControlError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_FAILED"
    default_message = "Authentication required"


class InvalidToken(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid or malformed access token"


class ExpiredToken(AuthenticationError):
    code = "TOKEN_EXPIRED"
    default_message = "Access token expired. Please refresh your token."


class InactiveUser(AuthenticationError):
    code = "INACTIVE_USER"
    default_message = "User not found or inactive"


class TwoFactorRequired(AuthenticationError):
    code = "TWO_FACTOR_REQUIRED"
    default_message = "Two-factor verification required"


# ============================================================================
# Authorization (403)
# ============================================================================

class AuthorizationError(AccessControlError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"
    default_message = "Access denied"


class MissingPermission(AuthorizationError):
    code = "INSUFFICIENT_PERMISSIONS"

    def __init__(self, permission_key: str, details: Optional[Dict[str, Any]] = None):
        self.permission_key = permission_key
        super().__init__(f"Access denied. Required permission: {permission_key}", details)


class InsufficientRoleLevel(AuthorizationError):
    code = "INSUFFICIENT_ROLE_LEVEL"
    default_message = "Access denied. Your role level does not allow this action"


class ModuleAccessDenied(AuthorizationError):
    code = "MODULE_ACCESS_DENIED"

    def __init__(self, module_name: str, details: Optional[Dict[str, Any]] = None):
        self.module_name = module_name
        super().__init__(f"Access denied. No permissions for module: {module_name}", details)


# ============================================================================
# Validation (400 / 409)
# ============================================================================

class ValidationError(AccessControlError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class DuplicateName(ValidationError):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_NAME"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"'{name}' already exists")


class SystemRoleProtected(ValidationError):
    code = "SYSTEM_ROLE_PROTECTED"
    default_message = "Cannot delete system roles"


class RoleInUse(ValidationError):
    status_code = status.HTTP_409_CONFLICT
    code = "ROLE_IN_USE"

    def __init__(self, user_count: int):
        self.user_count = user_count
        super().__init__(
            f"Cannot delete role. It is assigned to {user_count} user(s)",
            {"suggestion": "Remove this role from all users before deleting it."},
        )


# ============================================================================
# Not found (404)
# ============================================================================

class NotFoundError(AccessControlError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class RoleNotFound(NotFoundError):
    code = "ROLE_NOT_FOUND"
    default_message = "Role not found"


class PermissionNotFound(NotFoundError):
    code = "PERMISSION_NOT_FOUND"
    default_message = "Permission not found"


class ModuleNotFound(NotFoundError):
    code = "MODULE_NOT_FOUND"
    default_message = "Module not found"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"
    default_message = "User not found"
