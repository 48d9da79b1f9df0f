"""
Permission management API routes.

Provides endpoints for the permission catalog, roles, role grants, user
overrides and permission checks. Services stage their writes; each mutating
route commits once at the end.
"""
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions import catalog, engine, grants, overrides, roles
from app.features.permissions.hierarchy import require_user_management
from app.features.permissions.models import AuditLog
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionBulkCreate,
    PermissionUpdate,
    PermissionResponse,
    PermissionListResponse,
    RoleCreate,
    RoleUpdate,
    RoleClone,
    RoleResponse,
    RoleWithPermissions,
    AssignPermissionsToRole,
    AssignPermissionToRole,
    GrantChangeResponse,
    OverrideCreate,
    OverrideBulkCreate,
    OverrideResponse,
    OverrideCreateResponse,
    OverrideExpiryUpdate,
    OverrideStatsResponse,
    OverrideHolderResponse,
    DeletedCountResponse,
    PermissionCheckRequest,
    PermissionBatchCheckRequest,
    PermissionDecision,
    EffectivePermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    require_all_permissions,
    require_any_permission,
    require_permission,
    require_role_priority,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

catalog_admin = require_role_priority(config.CATALOG_ADMIN_MAX_PRIORITY)

# Read access to the administration screens
ROLES_READ = "administration.roles.read"
PERMISSIONS_READ = "administration.permissions.read"
USERS_READ = "administration.users.read"


async def _require_inspect(db: AsyncSession, current_user: User, user_id: Optional[str]) -> str:
    """Callers may always inspect themselves; inspecting others needs the user-management gate."""
    if user_id and user_id != current_user.id:
        await require_user_management(db, current_user.id, user_id)
        return user_id
    return current_user.id


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(catalog_admin)
):
    """Create a new permission (catalog admins only)."""
    db_permission = await catalog.create_permission(db, permission, current_user.id)
    await db.commit()
    await db.refresh(db_permission)
    return db_permission


@router.post("/permissions/bulk", response_model=List[PermissionResponse], status_code=status.HTTP_201_CREATED)
async def bulk_create_permissions(
    payload: PermissionBulkCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(catalog_admin)
):
    """Create many permissions; none are created if any is invalid."""
    created = await catalog.bulk_create_permissions(db, payload.permissions, current_user.id)
    await db.commit()
    for permission in created:
        await db.refresh(permission)
    return created


@router.get("/permissions", response_model=PermissionListResponse)
async def list_permissions(
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=500),
    module_id: Optional[str] = None,
    action: Optional[str] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List permissions with optional filtering and free-text search."""
    items, total = await catalog.list_permissions(
        db, module_id=module_id, action=action, search=search,
        skip=(page - 1) * page_size, limit=page_size
    )
    return PermissionListResponse(
        items=[PermissionResponse.model_validate(p) for p in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size
    )


@router.get("/permissions/by-key", response_model=PermissionResponse)
async def get_permission_by_key(
    key: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a permission by its key, e.g. accounting.invoices.read."""
    return await catalog.get_permission_by_key(db, key)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific permission by ID."""
    return await catalog.get_permission(db, permission_id)


@router.get("/permissions/{permission_id}/roles", response_model=List[RoleResponse])
async def list_roles_with_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(ROLES_READ))
):
    """List the roles granted a permission, strongest first."""
    return await grants.get_roles_with_permission(db, permission_id)


@router.get("/permissions/{permission_id}/overrides", response_model=List[OverrideHolderResponse])
async def list_users_with_override(
    permission_id: str,
    include_expired: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_all_permissions([USERS_READ, PERMISSIONS_READ]))
):
    """List every user holding an override on a permission."""
    holders = await overrides.list_users_with_override(db, permission_id, include_expired=include_expired)
    return [
        OverrideHolderResponse(
            **OverrideResponse.model_validate(holder.override).model_dump(),
            user_name=holder.user.name,
            user_email=holder.user.email,
            role_id=holder.user.role_id,
            role_class=holder.role_class,
        )
        for holder in holders
    ]


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(catalog_admin)
):
    """Update a permission (catalog admins only, never system permissions)."""
    permission = await catalog.update_permission(db, permission_id, permission_update, current_user.id)
    await db.commit()
    await db.refresh(permission)
    return permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(catalog_admin)
):
    """Soft delete a permission (catalog admins only, never system permissions)."""
    await catalog.delete_permission(db, permission_id, current_user.id)
    await db.commit()


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create a role no stronger than the caller's own."""
    db_role = await roles.create_role(db, role, current_user.id)
    await db.commit()
    await db.refresh(db_role)
    return db_role


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List roles, strongest first."""
    return await roles.list_roles(db, include_inactive=include_inactive)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a role with its granted permissions."""
    role = await roles.get_role(db, role_id)
    permissions = await roles.get_role_permissions(db, role_id)
    return RoleWithPermissions(
        **RoleResponse.model_validate(role).model_dump(),
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
    )


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Update a custom role."""
    role = await roles.update_role(db, role_id, role_update, current_user.id)
    await db.commit()
    await db.refresh(role)
    return role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Soft delete a custom role that no user holds."""
    await roles.delete_role(db, role_id, current_user.id)
    await db.commit()


@router.post("/roles/{role_id}/clone", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def clone_role(
    role_id: str,
    payload: RoleClone,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Clone a role into a weaker custom role."""
    clone = await roles.clone_role(
        db, role_id, current_user.id,
        name=payload.name,
        description=payload.description,
        permission_ids=payload.permission_ids,
    )
    await db.commit()
    await db.refresh(clone)
    return clone


# ============================================================================
# Role Grant Routes
# ============================================================================

@router.get("/roles/{role_id}/permissions", response_model=List[PermissionResponse])
async def list_role_permissions(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List the permissions granted to a role."""
    return await roles.get_role_permissions(db, role_id)


@router.put("/roles/{role_id}/permissions", response_model=GrantChangeResponse)
async def assign_role_permissions(
    role_id: str,
    payload: AssignPermissionsToRole,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Replace a role's grants, cascading to descendant modules."""
    granted = await grants.assign_role_permissions(
        db, role_id, payload.permission_ids, current_user.id, cascade=payload.cascade
    )
    await db.commit()
    return GrantChangeResponse(
        role_id=role_id,
        permission_ids=granted,
        message=f"Role now holds {len(granted)} permissions" if granted else "No permissions requested; grants unchanged"
    )


@router.post("/roles/{role_id}/permissions", response_model=GrantChangeResponse)
async def add_role_permission(
    role_id: str,
    payload: AssignPermissionToRole,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Grant one permission to a role."""
    granted = await grants.add_role_permission(
        db, role_id, payload.permission_id, current_user.id, cascade=payload.cascade
    )
    await db.commit()
    return GrantChangeResponse(
        role_id=role_id,
        permission_ids=granted,
        message=f"Granted {len(granted)} permissions"
    )


@router.delete("/roles/{role_id}/permissions/{permission_id}", response_model=GrantChangeResponse)
async def remove_role_permission(
    role_id: str,
    permission_id: str,
    cascade: bool = True,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Revoke one permission from a role, cascading to ancestor modules."""
    removed = await grants.remove_role_permission(db, role_id, permission_id, current_user.id, cascade=cascade)
    await db.commit()
    return GrantChangeResponse(
        role_id=role_id,
        permission_ids=removed,
        message=f"Revoked {len(removed)} permissions"
    )


@router.delete("/roles/{role_id}/permissions", response_model=DeletedCountResponse)
async def clear_role_permissions(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Remove every grant from a role."""
    removed = await grants.clear_role_permissions(db, role_id, current_user.id)
    await db.commit()
    return DeletedCountResponse(deleted=removed)


# ============================================================================
# User Override Routes
# ============================================================================

@router.post(
    "/users/{user_id}/overrides",
    response_model=OverrideCreateResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_override(
    user_id: str,
    payload: OverrideCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Create or replace one override for a user.

    A deny on a permission the user's role does not grant is still stored,
    with a warning in the response.
    """
    override = await overrides.create_override(
        db, user_id, payload.permission_id, payload.effect, current_user.id,
        reason=payload.reason, expires_at=payload.expires_at
    )
    warning = await overrides.check_redundant_deny(db, user_id, payload.permission_id, payload.effect)
    await db.commit()
    return OverrideCreateResponse(**OverrideResponse.model_validate(override).model_dump(), warning=warning)


@router.post(
    "/users/{user_id}/overrides/bulk",
    response_model=List[OverrideResponse],
    status_code=status.HTTP_201_CREATED
)
async def bulk_create_overrides(
    user_id: str,
    payload: OverrideBulkCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create or replace many overrides for a user, optionally cascading."""
    stored = await overrides.bulk_create_overrides(
        db, user_id, payload.overrides, current_user.id, cascade=payload.cascade
    )
    await db.commit()
    return stored


@router.get("/users/{user_id}/overrides", response_model=List[OverrideResponse])
async def list_user_overrides(
    user_id: str,
    include_expired: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List a user's overrides."""
    target_id = await _require_inspect(db, current_user, user_id)
    return await overrides.list_user_overrides(db, target_id, include_expired=include_expired)


@router.get("/users/{user_id}/overrides/stats", response_model=OverrideStatsResponse)
async def get_user_override_stats(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_any_permission([USERS_READ, PERMISSIONS_READ]))
):
    """Count a user's overrides: total, active, expired, and active allows and denies."""
    return await overrides.get_user_override_stats(db, user_id)


@router.patch("/users/{user_id}/overrides/{permission_id}", response_model=OverrideResponse)
async def update_override_expiration(
    user_id: str,
    permission_id: str,
    payload: OverrideExpiryUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Move an override's expiry; null makes it permanent."""
    override = await overrides.update_override_expiration(
        db, user_id, permission_id, payload.expires_at, current_user.id
    )
    await db.commit()
    await db.refresh(override)
    return override


@router.delete("/users/{user_id}/overrides", response_model=DeletedCountResponse)
async def delete_all_user_overrides(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Remove every override of a user."""
    count = await overrides.delete_all_user_overrides(db, user_id, current_user.id)
    await db.commit()
    return DeletedCountResponse(deleted=count)


@router.delete("/overrides/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(
    override_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Remove one override."""
    await overrides.delete_override(db, override_id, current_user.id)
    await db.commit()


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionDecision)
async def check_permission(
    check: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Check whether a user holds a permission.

    Defaults to the caller. Checking someone else requires the authority to
    manage that user.
    """
    user_id = await _require_inspect(db, current_user, check.user_id)
    return await engine.check_permission(db, user_id, check.permission_key)


@router.post("/check/batch", response_model=Dict[str, bool])
async def check_permissions_batch(
    check: PermissionBatchCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check many permissions in one evaluation."""
    user_id = await _require_inspect(db, current_user, check.user_id)
    return await engine.check_permissions_batch(db, user_id, check.permission_keys)


@router.get("/users/{user_id}/effective", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get the permission names a user holds by role and by active overrides."""
    target_id = await _require_inspect(db, current_user, user_id)
    return await engine.get_effective_permissions(db, target_id)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    user_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(catalog_admin)
):
    """List audit logs, newest first (catalog admins only)."""
    filters = []
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if resource_id:
        filters.append(AuditLog.resource_id == resource_id)
    if user_id:
        filters.append(AuditLog.user_id == user_id)

    total = (await db.execute(select(func.count(AuditLog.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(row) for row in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size
    )
