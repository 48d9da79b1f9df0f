"""
Permission catalog service.

Permissions are keyed by their module path plus action. The name is never
free text: it is derived from the owning module and the action, so renaming a
module and re-saving a permission resyncs its key.
"""
from typing import List, Optional, Sequence

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.modules.models import Module
from app.features.permissions.actions import ACTIONS, build_permission_key, is_valid_action
from app.features.permissions.cascade import ModuleTree, load_module_tree, module_path
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.models import Permission
from app.features.permissions.schemas import PermissionCreate, PermissionUpdate
from app.utils import get_logger


log = get_logger(__name__)


async def _require_live_module(db: AsyncSession, module_id: str) -> Module:
    module = await db.get(Module, module_id)
    if module is None or module.is_deleted:
        raise NotFoundError(f"Module '{module_id}' not found")
    if not module.is_active:
        raise ValidationError(f"Module '{module.key}' is inactive")
    return module


def _derive_name(tree: ModuleTree, module_id: str, action: str, supplied: Optional[str]) -> str:
    name = build_permission_key(module_path(tree, module_id), action)
    if supplied is not None and supplied != name:
        raise ValidationError(
            f"Permission name '{supplied}' does not match the derived key '{name}'"
        )
    return name


async def _existing_names(db: AsyncSession, names: Sequence[str]) -> set[str]:
    if not names:
        return set()
    result = await db.execute(select(Permission.name).where(Permission.name.in_(names)))
    return set(result.scalars().all())


async def _validate_new_permission(
    db: AsyncSession,
    tree: ModuleTree,
    data: PermissionCreate
) -> str:
    if not is_valid_action(data.action):
        raise ValidationError(
            f"Invalid action '{data.action}'. Must be one of: {', '.join(ACTIONS)}"
        )
    await _require_live_module(db, data.module_id)
    return _derive_name(tree, data.module_id, data.action, data.name)


async def create_permission(
    db: AsyncSession,
    data: PermissionCreate,
    actor_id: Optional[str] = None
) -> Permission:
    """
    Create a permission for one action on one module.

    Raises:
        ValidationError: Unknown action, inactive module, mismatched or duplicate name
        NotFoundError: Module does not exist
    """
    tree = await load_module_tree(db, include_inactive=True)
    name = await _validate_new_permission(db, tree, data)
    if await _existing_names(db, [name]):
        raise ValidationError(f"Permission '{name}' already exists")

    permission = Permission(
        name=name,
        description=data.description,
        module_id=data.module_id,
        action=data.action,
        is_system_permission=data.is_system_permission,
    )
    db.add(permission)
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="create", resource_type="permission",
        resource_id=permission.id, details={"name": name}
    )
    log.info(f"Permission created: {name} ({permission.id})")
    return permission


async def bulk_create_permissions(
    db: AsyncSession,
    items: List[PermissionCreate],
    actor_id: Optional[str] = None
) -> List[Permission]:
    """
    Create many permissions. Nothing is inserted unless every item is valid
    and no derived name collides with another item or an existing row.
    """
    if not items:
        raise ValidationError("No permissions supplied")

    tree = await load_module_tree(db, include_inactive=True)
    names: List[str] = []
    for data in items:
        name = await _validate_new_permission(db, tree, data)
        if name in names:
            raise ValidationError(f"Duplicate permission '{name}' in request")
        names.append(name)

    existing = await _existing_names(db, names)
    if existing:
        raise ValidationError(f"Permissions already exist: {', '.join(sorted(existing))}")

    permissions = [
        Permission(
            name=name,
            description=data.description,
            module_id=data.module_id,
            action=data.action,
            is_system_permission=data.is_system_permission,
        )
        for name, data in zip(names, items)
    ]
    db.add_all(permissions)
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="bulk_create", resource_type="permission",
        details={"names": names}
    )
    log.info(f"Bulk created {len(permissions)} permissions")
    return permissions


async def get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None or permission.is_deleted:
        raise NotFoundError("Permission not found")
    return permission


async def get_permission_by_key(db: AsyncSession, permission_key: str) -> Permission:
    """Look up a permission by its derived name, e.g. "accounting.invoices.read"."""
    result = await db.execute(
        select(Permission).where(
            Permission.name == permission_key,
            Permission.is_deleted == False  # noqa: E712
        )
    )
    permission = result.scalar_one_or_none()
    if permission is None:
        raise NotFoundError(f"Permission '{permission_key}' not found")
    return permission


async def list_permissions(
    db: AsyncSession,
    module_id: Optional[str] = None,
    action: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100
) -> tuple[List[Permission], int]:
    """
    List non-deleted permissions ordered by name.

    Returns:
        (page of permissions, total matching count)
    """
    filters = [Permission.is_deleted == False]  # noqa: E712
    if module_id:
        filters.append(Permission.module_id == module_id)
    if action:
        filters.append(Permission.action == action.lower())
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(
            func.lower(Permission.name).like(pattern),
            func.lower(Permission.description).like(pattern),
        ))

    total = (await db.execute(select(func.count(Permission.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(Permission).where(*filters).order_by(Permission.name).offset(skip).limit(limit)
    )
    return list(result.scalars().all()), total


async def update_permission(
    db: AsyncSession,
    permission_id: str,
    data: PermissionUpdate,
    actor_id: Optional[str] = None
) -> Permission:
    """
    Update name, description or is_active of a non-system permission.

    The name is always re-derived from the current module path. Supplying a
    name that differs from that key is rejected.
    """
    permission = await get_permission(db, permission_id)
    if permission.is_system_permission:
        raise AuthorizationError("System permissions cannot be modified")

    updates = data.model_dump(exclude_unset=True)
    tree = await load_module_tree(db, include_inactive=True)
    name = _derive_name(tree, permission.module_id, permission.action, updates.get("name"))
    if name != permission.name and await _existing_names(db, [name]):
        raise ValidationError(f"Permission '{name}' already exists")

    permission.name = name
    if "description" in updates:
        permission.description = updates["description"]
    if updates.get("is_active") is not None:
        permission.is_active = updates["is_active"]
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="update", resource_type="permission",
        resource_id=permission.id, details=updates
    )
    log.info(f"Permission updated: {permission.name}")
    return permission


async def delete_permission(
    db: AsyncSession,
    permission_id: str,
    actor_id: Optional[str] = None
) -> None:
    """Soft delete a non-system permission."""
    permission = await get_permission(db, permission_id)
    if permission.is_system_permission:
        raise AuthorizationError("System permissions cannot be deleted")

    permission.is_deleted = True
    permission.is_active = False
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="delete", resource_type="permission",
        resource_id=permission.id, details={"name": permission.name}
    )
    log.info(f"Permission deleted: {permission.name}")
