"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    role_id: str | None = None
    is_active: bool
    two_factor_enabled: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CurrentUserResponse(BaseModel):
    """The caller's identity with resolved roles and permission keys."""
    id: str
    username: str
    email: str
    roles: list[str] = []
    max_level: int | None = None
    is_super_admin: bool
    permissions: list[str] = []
