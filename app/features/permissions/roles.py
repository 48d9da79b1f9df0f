"""
Role catalog service: create, edit, delete and clone roles, and move users
between roles.

Every mutation is gated on relative priority. An actor can only create,
edit, delete or hand out roles that carry no more authority than its own.
"""
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.grants import (
    get_role_permission_ids,
    validate_grantable_permissions,
    write_grants,
)
from app.features.permissions.hierarchy import (
    RoleCache,
    get_actor_role,
    require_priority,
    require_role_hierarchy,
    validate_role_lineage,
)
from app.features.permissions.models import Permission, Role, role_permissions
from app.features.permissions.schemas import RoleCreate, RoleUpdate
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


async def _name_taken(db: AsyncSession, name: str) -> bool:
    result = await db.execute(select(Role.id).where(Role.name == name))
    return result.first() is not None


# ============================================================================
# Queries
# ============================================================================

async def get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None or role.is_deleted:
        raise NotFoundError("Role not found")
    return role


async def list_roles(db: AsyncSession, include_inactive: bool = False) -> List[Role]:
    """Non-deleted roles, strongest first."""
    stmt = select(Role).where(Role.is_deleted == False)  # noqa: E712
    if not include_inactive:
        stmt = stmt.where(Role.is_active == True)  # noqa: E712
    result = await db.execute(stmt.order_by(Role.priority, Role.name))
    return list(result.scalars().all())


async def get_role_permissions(db: AsyncSession, role_id: str) -> List[Permission]:
    """Non-deleted permissions granted to a role, ordered by name."""
    role = await get_role(db, role_id)
    result = await db.execute(
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(
            role_permissions.c.role_id == role.id,
            Permission.is_deleted == False  # noqa: E712
        )
        .order_by(Permission.name)
    )
    return list(result.scalars().all())


# ============================================================================
# Mutations
# ============================================================================

async def create_role(db: AsyncSession, data: RoleCreate, actor_id: str) -> Role:
    """
    Create a custom role.

    The actor may not create a role stronger than its own. When base_role_id
    is given the base must exist, and level falls back to the base's level.
    """
    actor_role = await get_actor_role(db, actor_id)
    require_priority(actor_role, data.priority)

    if await _name_taken(db, data.name):
        raise ValidationError(f"Role '{data.name}' already exists")

    level = data.level
    if data.base_role_id:
        base_role = await validate_role_lineage(db, data.base_role_id)
        if level is None:
            level = base_role.level

    role = Role(
        name=data.name,
        description=data.description,
        priority=data.priority,
        base_role_id=data.base_role_id,
        level=level,
        is_system_role=False,
    )
    db.add(role)
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="create", resource_type="role",
        resource_id=role.id, details={"name": role.name, "priority": role.priority}
    )
    log.info(f"Role created: {role.name} (priority {role.priority}) by {actor_id}")
    return role


async def update_role(db: AsyncSession, role_id: str, data: RoleUpdate, actor_id: str) -> Role:
    """
    Edit a custom role.

    The actor must outrank (or equal) the role both before and after a
    priority change. Re-pointing base_role_id re-checks the lineage with this
    role already counted as visited.
    """
    role = await get_role(db, role_id)
    if role.is_system_role:
        raise AuthorizationError("System roles cannot be modified")

    actor_role = await get_actor_role(db, actor_id)
    require_role_hierarchy(actor_role, role)

    updates = data.model_dump(exclude_unset=True)
    if updates.get("priority") is not None and updates["priority"] != role.priority:
        require_priority(actor_role, updates["priority"])

    if updates.get("name") and updates["name"] != role.name and await _name_taken(db, updates["name"]):
        raise ValidationError(f"Role '{updates['name']}' already exists")

    if updates.get("base_role_id"):
        if updates["base_role_id"] == role.id:
            raise ValidationError("Circular base_role_id dependency detected")
        await validate_role_lineage(db, updates["base_role_id"], role.id)

    for field, value in updates.items():
        # name, priority and is_active are NOT NULL
        if value is None and field in ("name", "priority", "is_active"):
            continue
        setattr(role, field, value)
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="update", resource_type="role",
        resource_id=role.id, details=updates
    )
    log.info(f"Role updated: {role.name} by {actor_id}")
    return role


async def delete_role(db: AsyncSession, role_id: str, actor_id: str) -> None:
    """Soft delete a custom role that no non-deleted user still holds."""
    role = await get_role(db, role_id)
    if role.is_system_role:
        raise AuthorizationError("System roles cannot be deleted")

    actor_role = await get_actor_role(db, actor_id)
    require_role_hierarchy(actor_role, role)

    holders = (await db.execute(
        select(func.count(User.id)).where(
            User.role_id == role.id,
            User.is_deleted == False  # noqa: E712
        )
    )).scalar_one()
    if holders:
        raise ValidationError(f"Cannot delete role: {holders} user(s) are still assigned to it")

    role.is_deleted = True
    role.is_active = False
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="delete", resource_type="role",
        resource_id=role.id, details={"name": role.name}
    )
    log.info(f"Role deleted: {role.name} by {actor_id}")


async def clone_role(
    db: AsyncSession,
    base_role_id: str,
    actor_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    permission_ids: Optional[List[str]] = None
) -> Role:
    """
    Create a custom role derived from base_role_id.

    The clone sits one step below the weaker of the creator and the base
    role: priority = max(creator, base) + 1. It can therefore never be
    stronger than either. level is copied from the base.

    A non-empty permission_ids list is assigned verbatim after validation.
    Otherwise the base role's grants are copied verbatim. Neither path
    cascades.

    Args:
        db: Database session
        base_role_id: Role to clone
        actor_id: User creating the clone
        name: Defaults to "<base name>_custom"
        description: Optional description
        permission_ids: Explicit grants for the clone

    Returns:
        The new role (flushed, not committed)
    """
    base_role = await get_role(db, base_role_id)
    actor_role = await get_actor_role(db, actor_id)

    clone_name = (name or "").strip() or f"{base_role.name}{config.CLONED_ROLE_SUFFIX}"
    if await _name_taken(db, clone_name):
        raise ValidationError(f"Role '{clone_name}' already exists")

    if permission_ids:
        grants = await validate_grantable_permissions(db, permission_ids)
    else:
        grants = await get_role_permission_ids(db, base_role.id)

    clone = Role(
        name=clone_name,
        description=description or f"Custom role based on {base_role.name}",
        priority=max(actor_role.priority, base_role.priority) + 1,
        base_role_id=base_role.id,
        level=base_role.level,
        is_system_role=False,
    )
    db.add(clone)
    await db.flush()
    await write_grants(db, clone.id, grants)

    await create_audit_log(
        db, user_id=actor_id, action="clone", resource_type="role",
        resource_id=clone.id,
        details={"base_role_id": base_role.id, "priority": clone.priority, "permissions": len(grants)}
    )
    log.info(
        f"Role {clone.name} cloned from {base_role.name} with priority {clone.priority} "
        f"and {len(grants)} permissions"
    )
    return clone


async def reassign_user_role(db: AsyncSession, user_id: str, role_id: str, actor_id: str) -> User:
    """
    Move a user to another role.

    The actor must hold at least the authority of both the user's current
    role and the new one.
    """
    cache = RoleCache(db)
    user = await cache.get_user(user_id)
    if user is None or user.is_deleted:
        raise NotFoundError("User not found")
    new_role = await cache.get_role(role_id)
    if new_role is None or new_role.is_deleted:
        raise NotFoundError("Role not found")
    if not new_role.is_active:
        raise ValidationError(f"Role '{new_role.name}' is inactive")

    actor_role = await get_actor_role(db, actor_id, cache)
    if user.role_id:
        current_role = await cache.get_role(user.role_id)
        if current_role is not None and not current_role.is_deleted:
            require_role_hierarchy(actor_role, current_role)
    require_role_hierarchy(actor_role, new_role)

    previous_role_id = user.role_id
    user.role_id = new_role.id
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="reassign_role", resource_type="user",
        resource_id=user.id, details={"from": previous_role_id, "to": new_role.id}
    )
    log.info(f"User {user.id} moved to role {new_role.name} by {actor_id}")
    return user
