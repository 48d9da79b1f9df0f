"""
FastAPI dependencies for route protection and audit logging helpers.

Implements:
- Route guards backed by the decision engine (one key, any key, all keys)
- A role priority guard for administrative routes
- Audit log rows written inside the caller's transaction
"""
from typing import Annotated, Any, Dict, List, Optional
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.engine import check_permission, check_permissions_batch
from app.features.permissions.models import AuditLog, Role
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(permission_key: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/invoices")
        async def create_invoice(
            user: User = Depends(require_permission("accounting.invoices.create"))
        ):
            # User may create invoices
            pass

    Args:
        permission_key: Permission key, e.g. "accounting.invoices.create"

    Returns:
        Dependency function that returns the current user if access is granted

    Raises:
        HTTPException: 403 if the engine denies the key
    """
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        decision = await check_permission(db, current_user.id, permission_key)
        if not decision.has_access:
            log.info(f"User {current_user.id} denied {permission_key}: {decision.reason}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_key}"
            )
        return current_user

    return permission_dependency


def require_any_permission(permission_keys: List[str]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    All keys are decided with one batch evaluation.
    """
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        results = await check_permissions_batch(db, current_user.id, permission_keys)
        if not any(results.values()):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {permission_keys}"
            )
        return current_user

    return permission_dependency


def require_all_permissions(permission_keys: List[str]):
    """FastAPI dependency to require EVERY one of the specified permissions."""
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        results = await check_permissions_batch(db, current_user.id, permission_keys)
        missing = [key for key, granted in results.items() if not granted]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: missing {missing}"
            )
        return current_user

    return permission_dependency


def require_role_priority(max_priority: int):
    """
    FastAPI dependency to require a live role with priority <= max_priority.

    Usage:
        @router.post("/permissions")
        async def create_permission(
            user: User = Depends(require_role_priority(config.CATALOG_ADMIN_MAX_PRIORITY))
        ):
            pass
    """
    async def priority_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        role = await db.get(Role, current_user.role_id) if current_user.role_id else None
        if role is None or role.is_deleted or not role.is_active or role.priority > max_priority:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires a role with priority <= {max_priority}"
            )
        return current_user

    return priority_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Create an audit log entry in the current transaction.

    The row is flushed, not committed, so it disappears with the mutation it
    describes if the transaction rolls back.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "assign_permissions", "override_deny")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID of the resource
        details: Additional details

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
    )

    db.add(audit_log)
    await db.flush()

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}")

    return audit_log
