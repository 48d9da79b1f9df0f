"""
Permission, Role and override models for the authorization engine.

This module implements:
- Permissions keyed by module path + action
- Roles with a linear authority ordering (lower priority = more authority)
- Role-permission grants
- Per-user allow/deny overrides with optional expiry
- Audit log rows for mutation outcomes
"""
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Boolean, Integer, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


OVERRIDE_EFFECTS = ("allow", "deny")


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission grants; the composite primary key is the uniqueness constraint
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    A grantable capability: one action on one module.

    The name is derived from the module path and the action, e.g.
    module path "accounting.invoices" + action "delete" gives
    "accounting.invoices.delete". System permissions can never be edited,
    deleted or overridden.
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    module_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("modules.id"),
        nullable=False,
        index=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    is_system_permission: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="noload"
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, action={self.action})>"


class Role(Base, TimestampMixin):
    """
    A named authority level.

    Lower priority means more authority (Super Admin = 0). base_role_id points
    at the role this one was cloned from and must never form a cycle.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    base_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    # Job grade (1=Top-Level, 2=Middle, 3=First-Line, ...), copied from the base role
    level: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="noload"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, priority={self.priority})>"


class UserPermissionOverride(Base, TimestampMixin):
    """
    Per-user exception to the role grants.

    At most one override exists per (user, permission); writing a second one
    updates the first. An override is active while expires_at is null or in
    the future; expired rows are never swept, only ignored.
    """
    __tablename__ = "user_permission_overrides"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permission_override"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    effect: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    granted_by_user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<UserPermissionOverride(id={self.id}, user_id={self.user_id}, "
            f"permission_id={self.permission_id}, effect={self.effect})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for permission-related mutations.

    Tracks who did what to which role, permission or override.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
