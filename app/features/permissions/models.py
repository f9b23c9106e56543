"""
Module, Permission, Role and assignment models for RBAC.

Tables:
- modules / permissions: the permission catalog, grouped for display
- roles: named permission bundles with a privilege level
- role_permissions: grants (role <-> permission)
- user_roles: secondary role assignments (user <-> role)
- audit_logs: append-only record of administrative actions
"""
import enum
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Table, Text, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, CreatedAtMixin, TimestampMixin, generate_ulid


# ============================================================================
# Association Tables
# ============================================================================

# Role-Permission grants
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Catalog
# ============================================================================

class Module(Base, TimestampMixin):
    """
    A named grouping of related permissions (e.g. "campaigns").

    Inactive modules hide every permission they own from effective sets.
    """
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(150), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Module(id={self.id}, name={self.name!r})>"


class Permission(Base, TimestampMixin):
    """
    An atomic capability keyed ``<module>.<action>`` (e.g. ``campaigns.delete``).
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    key: Mapped[str] = mapped_column(String(150), unique=True, nullable=False, index=True)
    module_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    display_name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    module: Mapped["Module"] = relationship("Module", lazy="selectin")

    @property
    def module_name(self) -> str:
        return self.module.name

    @property
    def action(self) -> str:
        return self.key.rsplit(".", 1)[-1]

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, key={self.key!r})>"


class Role(Base, TimestampMixin):
    """
    Role model bundling permissions under a privilege level.

    Examples: super_admin (10), admin (8), manager (5), viewer (1)
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, index=True)
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        lazy="selectin",
        order_by="Permission.key",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, level={self.level})>"


class UserRole(Base):
    """
    Secondary role assignment. Removal flips ``is_active`` instead of deleting
    the row so re-assignment reactivates it.
    """
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    @property
    def role_name(self) -> str:
        return self.role.name

    def __repr__(self) -> str:
        return f"<UserRole(user_id={self.user_id}, role_id={self.role_id}, active={self.is_active})>"


# ============================================================================
# Audit
# ============================================================================

class AuditAction(str, enum.Enum):
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    USER_ROLE_ASSIGNED = "user_role_assigned"
    USER_ROLE_REMOVED = "user_role_removed"


class AuditLog(Base, CreatedAtMixin):
    """
    Audit log for permission-affecting administrative actions.

    Append-only: rows are never updated or deleted by the engine. No foreign
    keys; entries outlive the roles and users they describe.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    actor_user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    target_user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    role_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    permission_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor={self.actor_user_id}, action={self.action})>"
