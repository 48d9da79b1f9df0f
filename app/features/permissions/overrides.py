"""
User permission override service.

An override is a per-user allow or deny for one permission, optionally
expiring. At most one exists per (user, permission): every write is a single
INSERT ... ON CONFLICT DO UPDATE, so writing the pair again replaces the
previous effect, reason and expiry.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.base import generate_ulid
from app.core.database.upsert import upsert
from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.permissions.actions import coarser_permission_keys
from app.features.permissions.cascade import grant_cascade, load_cascade_context, revocation_cascade
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.hierarchy import RoleCache, require_user_management
from app.features.permissions.models import (
    OVERRIDE_EFFECTS,
    Permission,
    UserPermissionOverride,
    role_permissions,
)
from app.features.permissions.schemas import OverrideCreate
from app.features.users.models import User
from app.utils import ensure_utc, get_logger, utcnow


log = get_logger(__name__)

REDUNDANT_DENY_WARNING = "User's role already lacks this permission. DENY override is redundant."

_UPDATE_COLUMNS = ("effect", "reason", "expires_at", "granted_by_user_id", "updated_at")


@dataclass
class _PlannedOverride:
    permission_id: str
    effect: str
    reason: Optional[str]
    expires_at: Optional[datetime]
    explicit: bool


# ============================================================================
# Validation
# ============================================================================

def _validate_effect(effect: str) -> str:
    if effect not in OVERRIDE_EFFECTS:
        raise ValidationError(f"Invalid effect '{effect}'. Must be 'allow' or 'deny'")
    return effect


def _validate_expiry(expires_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    if expires_at is None:
        return None
    expires_at = ensure_utc(expires_at)
    if expires_at <= now:
        raise ValidationError("expires_at must be in the future")
    return expires_at


async def validate_override_authorization(
    db: AsyncSession,
    actor_id: str,
    target_user_id: str,
    permission_id: str,
    cache: Optional[RoleCache] = None
) -> Permission:
    """
    Check that actor_id may set an override of permission_id on target_user_id.

    The actor must be within the override-granting threshold, hold at least
    the target's authority, and the permission must exist and not be a
    system permission.

    Returns:
        The permission being overridden

    Raises:
        NotFoundError: Actor, target or permission missing
        AuthorizationError: Any authority check fails
    """
    await require_user_management(db, actor_id, target_user_id, cache)

    permission = await db.get(Permission, permission_id)
    if permission is None or permission.is_deleted:
        raise NotFoundError("Permission not found")
    if permission.is_system_permission:
        raise AuthorizationError("System permissions cannot be overridden")
    return permission


async def check_redundant_deny(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    effect: str = "deny"
) -> Optional[str]:
    """
    Warn when a deny override would change nothing.

    That is the case when the user's role grants neither the permission nor
    a coarser action on the same module. Users without a role get no warning.

    Returns:
        The warning text, or None
    """
    if effect != "deny":
        return None
    user = await db.get(User, user_id)
    if user is None or not user.role_id:
        return None
    permission = await db.get(Permission, permission_id)
    if permission is None:
        return None

    names = [permission.name, *coarser_permission_keys(permission.name)]
    held = (await db.execute(
        select(func.count())
        .select_from(role_permissions)
        .join(Permission, Permission.id == role_permissions.c.permission_id)
        .where(
            role_permissions.c.role_id == user.role_id,
            Permission.name.in_(names),
            Permission.is_deleted == False,  # noqa: E712
        )
    )).scalar_one()
    if held:
        return None
    log.info(f"Redundant deny of {permission.name} for user {user_id}: role does not grant it")
    return REDUNDANT_DENY_WARNING


# ============================================================================
# Writes
# ============================================================================

async def _write_override(
    db: AsyncSession,
    user_id: str,
    planned: _PlannedOverride,
    actor_id: str,
    now: datetime
) -> None:
    await upsert(
        db,
        UserPermissionOverride.__table__,
        {
            "id": generate_ulid(),
            "user_id": user_id,
            "permission_id": planned.permission_id,
            "effect": planned.effect,
            "reason": planned.reason,
            "expires_at": planned.expires_at,
            "granted_by_user_id": actor_id,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["user_id", "permission_id"],
        update_columns=_UPDATE_COLUMNS,
    )


async def _load_overrides(
    db: AsyncSession,
    user_id: str,
    permission_ids: List[str]
) -> List[UserPermissionOverride]:
    result = await db.execute(
        select(UserPermissionOverride)
        .where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id.in_(permission_ids),
        )
        .execution_options(populate_existing=True)
    )
    by_permission = {row.permission_id: row for row in result.scalars().all()}
    return [by_permission[pid] for pid in permission_ids if pid in by_permission]


async def create_override(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    effect: str,
    actor_id: str,
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None
) -> UserPermissionOverride:
    """
    Create or replace the override for (user_id, permission_id).

    Raises:
        ValidationError: Bad effect or an expiry that is not in the future
        NotFoundError: User or permission missing
        AuthorizationError: Actor may not override this user or permission
    """
    now = utcnow()
    planned = _PlannedOverride(
        permission_id=permission_id,
        effect=_validate_effect(effect),
        reason=reason,
        expires_at=_validate_expiry(expires_at, now),
        explicit=True,
    )
    permission = await validate_override_authorization(db, actor_id, user_id, permission_id)

    await _write_override(db, user_id, planned, actor_id, now)
    [override] = await _load_overrides(db, user_id, [permission_id])

    await create_audit_log(
        db, user_id=actor_id, action=f"override_{effect}", resource_type="user",
        resource_id=user_id,
        details={"permission": permission.name, "expires_at": planned.expires_at.isoformat() if planned.expires_at else None}
    )
    log.info(f"Override {effect} {permission.name} set on user {user_id} by {actor_id}")
    return override


def _merge(plan: Dict[str, _PlannedOverride], entry: _PlannedOverride) -> None:
    """
    Add entry to plan. Explicit entries beat cascaded ones; between entries
    of the same kind a deny beats an allow and otherwise the later one wins.
    """
    current = plan.get(entry.permission_id)
    if current is not None:
        if current.explicit and not entry.explicit:
            return
        if current.explicit == entry.explicit and current.effect == "deny" and entry.effect == "allow":
            return
    plan[entry.permission_id] = entry


async def bulk_create_overrides(
    db: AsyncSession,
    user_id: str,
    overrides: List[Union[OverrideCreate, Mapping[str, Any]]],
    actor_id: str,
    cascade: bool = False
) -> List[UserPermissionOverride]:
    """
    Create or replace many overrides for one user in one transaction.

    With cascade, each allow is widened to the same action on every
    descendant module and each deny to the same action on every ancestor.
    Cascaded rows inherit the expiry of the override that produced them.
    System permissions reached only through a cascade are skipped.

    Returns:
        The stored overrides, explicit entries first
    """
    if not overrides:
        raise ValidationError("At least one override is required")

    now = utcnow()
    entries = [OverrideCreate.model_validate(item) for item in overrides]
    plan: Dict[str, _PlannedOverride] = {}
    for entry in entries:
        _merge(plan, _PlannedOverride(
            permission_id=entry.permission_id,
            effect=_validate_effect(entry.effect),
            reason=entry.reason,
            expires_at=_validate_expiry(entry.expires_at, now),
            explicit=True,
        ))

    cache = RoleCache(db)
    names: Dict[str, str] = {}
    for permission_id in list(plan):
        permission = await validate_override_authorization(db, actor_id, user_id, permission_id, cache)
        names[permission_id] = permission.name

    if cascade:
        tree, index = await load_cascade_context(db)
        for source in [p for p in plan.values() if p.explicit]:
            step = grant_cascade if source.effect == "allow" else revocation_cascade
            for cascaded_id in step(source.permission_id, tree, index):
                if cascaded_id in plan and plan[cascaded_id].explicit:
                    continue
                permission = await db.get(Permission, cascaded_id)
                if permission is None or permission.is_system_permission:
                    continue
                await validate_override_authorization(db, actor_id, user_id, cascaded_id, cache)
                names[cascaded_id] = permission.name
                _merge(plan, _PlannedOverride(
                    permission_id=cascaded_id,
                    effect=source.effect,
                    reason=f"Cascaded from {names[source.permission_id]}",
                    expires_at=source.expires_at,
                    explicit=False,
                ))

    for planned in plan.values():
        await _write_override(db, user_id, planned, actor_id, now)
    stored = await _load_overrides(db, user_id, list(plan))

    await create_audit_log(
        db, user_id=actor_id, action="bulk_override", resource_type="user",
        resource_id=user_id,
        details={
            "allow": [names[p.permission_id] for p in plan.values() if p.effect == "allow"],
            "deny": [names[p.permission_id] for p in plan.values() if p.effect == "deny"],
            "cascade": cascade,
        }
    )
    log.info(f"Bulk override on user {user_id}: {len(stored)} rows ({len(entries)} requested) by {actor_id}")
    return stored


async def update_override_expiration(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    expires_at: Optional[datetime],
    actor_id: str
) -> UserPermissionOverride:
    """
    Move the expiry of an existing override in place.

    None makes the override permanent. An expired override can be revived by
    giving it a future expiry; effect and reason are left alone.

    Raises:
        ValidationError: An expiry that is not in the future
        NotFoundError: No override for (user_id, permission_id)
        AuthorizationError: Actor may not manage this user
    """
    expires_at = _validate_expiry(expires_at, utcnow())
    result = await db.execute(
        select(UserPermissionOverride).where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id == permission_id,
        )
    )
    override = result.scalars().first()
    if override is None:
        raise NotFoundError("Override not found")
    await require_user_management(db, actor_id, user_id)

    previous = override.expires_at
    override.expires_at = expires_at
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="update_override_expiry", resource_type="user",
        resource_id=user_id,
        details={
            "permission_id": permission_id,
            "previous": previous.isoformat() if previous else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
    )
    log.info(f"Override {override.id} on user {user_id} now expires at {expires_at} (set by {actor_id})")
    return override


# ============================================================================
# Queries and deletes
# ============================================================================

async def list_user_overrides(
    db: AsyncSession,
    user_id: str,
    include_expired: bool = False
) -> List[UserPermissionOverride]:
    """Overrides of one user, oldest first. Expired rows only on request."""
    if await db.get(User, user_id) is None:
        raise NotFoundError("User not found")
    stmt = select(UserPermissionOverride).where(UserPermissionOverride.user_id == user_id)
    if not include_expired:
        stmt = stmt.where(or_(
            UserPermissionOverride.expires_at.is_(None),
            UserPermissionOverride.expires_at > utcnow(),
        ))
    result = await db.execute(stmt.order_by(UserPermissionOverride.created_at, UserPermissionOverride.id))
    return list(result.scalars().all())


async def get_user_override_stats(db: AsyncSession, user_id: str) -> Dict[str, int]:
    """
    Count a user's overrides.

    Returns:
        {"total", "active", "expired", "allow", "deny"}; allow and deny count
        active overrides only
    """
    if await db.get(User, user_id) is None:
        raise NotFoundError("User not found")
    result = await db.execute(
        select(UserPermissionOverride.effect, UserPermissionOverride.expires_at)
        .where(UserPermissionOverride.user_id == user_id)
    )
    now = utcnow()
    stats = {"total": 0, "active": 0, "expired": 0, "allow": 0, "deny": 0}
    for effect, expires_at in result.all():
        stats["total"] += 1
        if expires_at is not None and ensure_utc(expires_at) <= now:
            stats["expired"] += 1
            continue
        stats["active"] += 1
        stats[effect] += 1
    return stats


@dataclass
class OverrideHolder:
    """One override on a permission together with the user it belongs to."""
    override: UserPermissionOverride
    user: User
    role_class: Optional[str]


async def list_users_with_override(
    db: AsyncSession,
    permission_id: str,
    include_expired: bool = False
) -> List[OverrideHolder]:
    """
    Every user holding an override on permission_id, oldest override first.

    Each holder is tagged "manager" or "employee" from its role priority
    (see RoleCache.classify_role); role lookups are shared across the list.
    """
    permission = await db.get(Permission, permission_id)
    if permission is None or permission.is_deleted:
        raise NotFoundError("Permission not found")

    stmt = (
        select(UserPermissionOverride, User)
        .join(User, User.id == UserPermissionOverride.user_id)
        .where(UserPermissionOverride.permission_id == permission_id)
    )
    if not include_expired:
        stmt = stmt.where(or_(
            UserPermissionOverride.expires_at.is_(None),
            UserPermissionOverride.expires_at > utcnow(),
        ))
    result = await db.execute(stmt.order_by(UserPermissionOverride.created_at, UserPermissionOverride.id))

    cache = RoleCache(db)
    holders = []
    for override, user in result.all():
        holders.append(OverrideHolder(override, user, await cache.classify_role(user.role_id)))
    return holders


async def delete_override(db: AsyncSession, override_id: str, actor_id: str) -> None:
    """Delete one override. The actor must be allowed to manage its user."""
    override = await db.get(UserPermissionOverride, override_id)
    if override is None:
        raise NotFoundError("Override not found")
    await require_user_management(db, actor_id, override.user_id)

    await db.delete(override)
    await db.flush()

    await create_audit_log(
        db, user_id=actor_id, action="delete_override", resource_type="user",
        resource_id=override.user_id, details={"permission_id": override.permission_id}
    )
    log.info(f"Override {override_id} removed from user {override.user_id} by {actor_id}")


async def delete_all_user_overrides(db: AsyncSession, user_id: str, actor_id: str) -> int:
    """Delete every override of a user. Returns the number removed."""
    await require_user_management(db, actor_id, user_id)

    count = (await db.execute(
        select(func.count(UserPermissionOverride.id)).where(UserPermissionOverride.user_id == user_id)
    )).scalar_one()
    if count:
        await db.execute(delete(UserPermissionOverride).where(UserPermissionOverride.user_id == user_id))

    await create_audit_log(
        db, user_id=actor_id, action="clear_overrides", resource_type="user",
        resource_id=user_id, details={"removed": count}
    )
    log.info(f"Removed {count} overrides from user {user_id} by {actor_id}")
    return count
