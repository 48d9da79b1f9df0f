"""
Role-permission grant service.

Grants fan out across the module tree: adding an action on a module also adds
it on every descendant module, and removing one also removes it on every
ancestor. Writes go through INSERT ... ON CONFLICT DO NOTHING so re-granting
never duplicates an edge.
"""
from typing import Iterable, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.upsert import insert_ignore
from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.permissions.cascade import (
    expand_with_grant_cascade,
    expand_with_revocation_cascade,
    load_cascade_context,
)
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.hierarchy import RoleCache, get_actor_role, require_role_hierarchy
from app.features.permissions.models import Permission, Role, role_permissions
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Internal helpers
# ============================================================================

async def require_mutable_role(
    db: AsyncSession,
    role_id: str,
    actor_id: str,
    cache: Optional[RoleCache] = None
) -> Role:
    """
    Load a role whose grants the actor is about to change.

    Raises:
        NotFoundError: Role missing or deleted
        AuthorizationError: System role, or actor has less authority than the role
    """
    cache = cache or RoleCache(db)
    role = await cache.get_role(role_id)
    if role is None or role.is_deleted:
        raise NotFoundError("Role not found")
    if role.is_system_role:
        raise AuthorizationError("Cannot modify permissions of a system role")
    actor_role = await get_actor_role(db, actor_id, cache)
    require_role_hierarchy(actor_role, role)
    return role


async def validate_grantable_permissions(db: AsyncSession, permission_ids: Iterable[str]) -> List[str]:
    """
    Deduplicate permission_ids and check every one exists and is active.

    Returns:
        The ids in first-seen order
    """
    unique_ids = list(dict.fromkeys(permission_ids))
    if not unique_ids:
        return []
    result = await db.execute(
        select(Permission.id).where(
            Permission.id.in_(unique_ids),
            Permission.is_active == True,  # noqa: E712
            Permission.is_deleted == False,  # noqa: E712
        )
    )
    found = set(result.scalars().all())
    missing = [pid for pid in unique_ids if pid not in found]
    if missing:
        raise ValidationError(f"Permissions not found or inactive: {', '.join(missing)}")
    return unique_ids


async def write_grants(db: AsyncSession, role_id: str, permission_ids: Iterable[str]) -> None:
    """Insert grant edges, skipping ones that already exist. No checks, no cascade."""
    rows = [{"role_id": role_id, "permission_id": pid} for pid in dict.fromkeys(permission_ids)]
    await insert_ignore(db, role_permissions, rows, index_elements=["role_id", "permission_id"])


async def get_role_permission_ids(db: AsyncSession, role_id: str) -> List[str]:
    result = await db.execute(
        select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id)
    )
    return list(result.scalars().all())


async def get_roles_with_permission(db: AsyncSession, permission_id: str) -> List[Role]:
    """Roles granted permission_id directly, strongest first. Deleted roles are left out."""
    permission = await db.get(Permission, permission_id)
    if permission is None or permission.is_deleted:
        raise NotFoundError("Permission not found")
    result = await db.execute(
        select(Role)
        .join(role_permissions, role_permissions.c.role_id == Role.id)
        .where(
            role_permissions.c.permission_id == permission_id,
            Role.is_deleted == False,  # noqa: E712
        )
        .order_by(Role.priority, Role.name)
    )
    return list(result.scalars().all())


# ============================================================================
# Grant operations
# ============================================================================

async def assign_role_permissions(
    db: AsyncSession,
    role_id: str,
    permission_ids: List[str],
    actor_id: str,
    cascade: bool = True
) -> List[str]:
    """
    Replace a role's full grant set.

    Every requested permission must exist and be active. With cascade the
    set is widened to the same action on every descendant module. Existing
    grants are wiped and the new set written in the caller's transaction.

    An empty request is a no-op: the actor is still checked but the current
    grants are left untouched. Clearing a role goes through
    clear_role_permissions.

    Returns:
        The permission ids written, which the role now holds
    """
    role = await require_mutable_role(db, role_id, actor_id)
    if not permission_ids:
        log.info(f"Empty grant request for role {role.name} by {actor_id}; nothing changed")
        return []

    requested = await validate_grantable_permissions(db, permission_ids)
    if cascade:
        tree, index = await load_cascade_context(db)
        granted = expand_with_grant_cascade(requested, tree, index)
    else:
        granted = requested

    await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role.id))
    await write_grants(db, role.id, granted)

    await create_audit_log(
        db, user_id=actor_id, action="assign_permissions", resource_type="role",
        resource_id=role.id, details={"requested": requested, "granted": granted}
    )
    log.info(f"Role {role.name} assigned {len(granted)} permissions ({len(requested)} requested)")
    return granted


async def add_role_permission(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    actor_id: str,
    cascade: bool = True
) -> List[str]:
    """
    Grant one permission (plus its descendant cascade) to a role.

    Idempotent: edges the role already holds are left untouched.

    Returns:
        The permission ids written, the requested one first
    """
    role = await require_mutable_role(db, role_id, actor_id)
    await validate_grantable_permissions(db, [permission_id])
    if cascade:
        tree, index = await load_cascade_context(db)
        granted = expand_with_grant_cascade([permission_id], tree, index)
    else:
        granted = [permission_id]

    await write_grants(db, role.id, granted)

    await create_audit_log(
        db, user_id=actor_id, action="add_permission", resource_type="role",
        resource_id=role.id, details={"permission_id": permission_id, "granted": granted}
    )
    log.info(f"Role {role.name} granted {permission_id} (+{len(granted) - 1} cascaded)")
    return granted


async def remove_role_permission(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    actor_id: str,
    cascade: bool = True
) -> List[str]:
    """
    Revoke one permission from a role.

    With cascade the same action is also revoked on every ancestor module.

    Returns:
        The permission ids actually removed

    Raises:
        NotFoundError: If the role held none of them
    """
    role = await require_mutable_role(db, role_id, actor_id)
    if cascade:
        tree, index = await load_cascade_context(db)
        targets = expand_with_revocation_cascade([permission_id], tree, index)
    else:
        targets = [permission_id]

    held = set(await get_role_permission_ids(db, role.id))
    removed = [pid for pid in targets if pid in held]
    if not removed:
        raise NotFoundError("Permission is not assigned to this role")

    await db.execute(
        delete(role_permissions).where(
            role_permissions.c.role_id == role.id,
            role_permissions.c.permission_id.in_(removed),
        )
    )

    await create_audit_log(
        db, user_id=actor_id, action="remove_permission", resource_type="role",
        resource_id=role.id, details={"permission_id": permission_id, "removed": removed}
    )
    log.info(f"Role {role.name} revoked {permission_id} (+{len(removed) - 1} cascaded)")
    return removed


async def clear_role_permissions(db: AsyncSession, role_id: str, actor_id: str) -> int:
    """Remove every grant from a role. Returns the number of edges removed."""
    role = await require_mutable_role(db, role_id, actor_id)
    held = await get_role_permission_ids(db, role.id)
    if held:
        await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role.id))

    await create_audit_log(
        db, user_id=actor_id, action="clear_permissions", resource_type="role",
        resource_id=role.id, details={"removed": len(held)}
    )
    log.info(f"Role {role.name} cleared of {len(held)} permissions")
    return len(held)
