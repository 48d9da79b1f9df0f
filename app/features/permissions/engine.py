"""
Authorization decision engine.

Answers "may this user use this permission key" with a reason. Rules are
tried in order and the first match wins:

1. user missing, inactive, deleted, without a role, or role gone -> deny
2. permission key unknown or inactive -> deny
3. active deny override on the key -> deny
4. active deny override on a coarser action of the same path -> deny
5. active allow override on the key -> allow
6. active allow override on a coarser action -> allow
7. role grant on the key -> allow
8. role grant on a coarser action -> allow
9. otherwise -> deny

A denial is a normal return value. Single and batch checks share the same
loader and the same in-memory evaluation, so their answers always agree.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationError
from app.features.permissions.actions import coarser_permission_keys
from app.features.permissions.models import Permission, Role, UserPermissionOverride, role_permissions
from app.features.permissions.schemas import PermissionDecision
from app.features.users.models import User
from app.utils import ensure_utc, get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class _CatalogEntry:
    id: str
    name: str
    is_active: bool


@dataclass
class _Snapshot:
    """Everything needed to decide a set of keys for one user."""
    by_name: Dict[str, _CatalogEntry] = field(default_factory=dict)
    overrides: Dict[str, str] = field(default_factory=dict)
    granted: set = field(default_factory=set)


def _deny(reason: str, **details) -> PermissionDecision:
    return PermissionDecision(has_access=False, reason=reason, details=details or None)


def _allow(reason: str, **details) -> PermissionDecision:
    return PermissionDecision(has_access=True, reason=reason, details=details or None)


def _validate_keys(permission_keys: Sequence[str]) -> List[str]:
    if not permission_keys:
        raise ValidationError("At least one permission key is required")
    for key in permission_keys:
        if not key or not key.strip():
            raise ValidationError("Permission key is required")
    return list(dict.fromkeys(permission_keys))


async def _load_role_id(db: AsyncSession, user_id: str) -> tuple[Optional[str], Optional[PermissionDecision]]:
    """Return (role_id, None) for an eligible user, else (None, denial)."""
    user = await db.get(User, user_id)
    if user is None:
        return None, _deny("User not found")
    if not user.is_active:
        return None, _deny("User account is inactive")
    if user.is_deleted:
        return None, _deny("User account is deleted")
    if not user.role_id:
        return None, _deny("User has no role assigned")
    role = await db.get(Role, user.role_id)
    if role is None or role.is_deleted:
        return None, _deny("User role not found")
    return role.id, None


async def _load_snapshot(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    permission_keys: Sequence[str],
    now: datetime
) -> _Snapshot:
    """Three set-oriented reads: catalog, active overrides, role grants."""
    snapshot = _Snapshot()
    names = list(dict.fromkeys(
        name for key in permission_keys for name in [key, *coarser_permission_keys(key)]
    ))
    result = await db.execute(
        select(Permission.id, Permission.name, Permission.is_active).where(
            Permission.name.in_(names),
            Permission.is_deleted == False  # noqa: E712
        )
    )
    for permission_id, name, is_active in result.all():
        snapshot.by_name[name] = _CatalogEntry(permission_id, name, is_active)

    permission_ids = [entry.id for entry in snapshot.by_name.values()]
    if not permission_ids:
        return snapshot

    result = await db.execute(
        select(UserPermissionOverride.permission_id, UserPermissionOverride.effect).where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id.in_(permission_ids),
            or_(
                UserPermissionOverride.expires_at.is_(None),
                UserPermissionOverride.expires_at > now,
            ),
        )
    )
    snapshot.overrides = dict(result.all())

    result = await db.execute(
        select(role_permissions.c.permission_id).where(
            role_permissions.c.role_id == role_id,
            role_permissions.c.permission_id.in_(permission_ids),
        )
    )
    snapshot.granted = set(result.scalars().all())
    return snapshot


def _decide(permission_key: str, snapshot: _Snapshot) -> PermissionDecision:
    entry = snapshot.by_name.get(permission_key)
    if entry is None or not entry.is_active:
        return _deny("Permission not found")

    coarser = [
        snapshot.by_name[name] for name in coarser_permission_keys(permission_key)
        if name in snapshot.by_name and snapshot.by_name[name].is_active
    ]

    if snapshot.overrides.get(entry.id) == "deny":
        return _deny("Permission explicitly denied")
    for candidate in coarser:
        if snapshot.overrides.get(candidate.id) == "deny":
            return _deny("Permission explicitly denied", denied_via=candidate.name)

    if snapshot.overrides.get(entry.id) == "allow":
        return _allow("Permission explicitly allowed")
    for candidate in coarser:
        if snapshot.overrides.get(candidate.id) == "allow":
            return _allow("Permission explicitly allowed", granted_via=candidate.name)

    if entry.id in snapshot.granted:
        return _allow("Permission granted by role")
    for candidate in coarser:
        if candidate.id in snapshot.granted:
            return _allow("Permission granted by role via action hierarchy", granted_via=candidate.name)

    return _deny("Permission not granted")


async def evaluate_permissions_batch(
    db: AsyncSession,
    user_id: str,
    permission_keys: Sequence[str],
    now: Optional[datetime] = None
) -> Dict[str, PermissionDecision]:
    """
    Decide many keys for one user.

    Loads the user once, then the catalog entries for every key and its
    coarser keys, the active overrides and the role grants in one query each.

    Raises:
        ValidationError: If the list is empty or any key is blank
    """
    keys = _validate_keys(permission_keys)
    role_id, denial = await _load_role_id(db, user_id)
    if denial is not None:
        log.debug(f"Permission check for user {user_id} denied: {denial.reason}")
        return {key: denial for key in keys}

    now = ensure_utc(now) if now else utcnow()
    snapshot = await _load_snapshot(db, user_id, role_id, keys, now)
    decisions = {key: _decide(key, snapshot) for key in keys}
    for key, decision in decisions.items():
        log.debug(f"Permission check user={user_id} key={key} -> {decision.has_access} ({decision.reason})")
    return decisions


async def check_permission(
    db: AsyncSession,
    user_id: str,
    permission_key: str,
    now: Optional[datetime] = None
) -> PermissionDecision:
    """
    Decide one permission key for one user.

    Args:
        db: Database session
        user_id: User to check
        permission_key: e.g. "accounting.invoices.create"
        now: Evaluation time for override expiry (defaults to the current time)

    Returns:
        PermissionDecision with has_access, reason and optional details
    """
    decisions = await evaluate_permissions_batch(db, user_id, [permission_key], now)
    return decisions[permission_key]


async def check_permissions_batch(
    db: AsyncSession,
    user_id: str,
    permission_keys: Sequence[str],
    now: Optional[datetime] = None
) -> Dict[str, bool]:
    decisions = await evaluate_permissions_batch(db, user_id, permission_keys, now)
    return {key: decision.has_access for key, decision in decisions.items()}


async def get_effective_permissions(db: AsyncSession, user_id: str) -> Dict[str, List[str]]:
    """
    Permission names a user holds through its role and through active overrides.

    Returns empty lists for any user the engine would deny outright: missing,
    inactive, deleted, without a role or with a deleted role.
    """
    effective: Dict[str, List[str]] = {"role_permissions": [], "allow_overrides": [], "deny_overrides": []}
    role_id, denial = await _load_role_id(db, user_id)
    if denial is not None:
        return effective

    result = await db.execute(
        select(Permission.name)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(
            role_permissions.c.role_id == role_id,
            Permission.is_active == True,  # noqa: E712
            Permission.is_deleted == False,  # noqa: E712
        )
        .order_by(Permission.name)
    )
    effective["role_permissions"] = list(result.scalars().all())

    result = await db.execute(
        select(Permission.name, UserPermissionOverride.effect)
        .join(Permission, Permission.id == UserPermissionOverride.permission_id)
        .where(
            UserPermissionOverride.user_id == user_id,
            Permission.is_active == True,  # noqa: E712
            Permission.is_deleted == False,  # noqa: E712
            or_(
                UserPermissionOverride.expires_at.is_(None),
                UserPermissionOverride.expires_at > utcnow(),
            ),
        )
        .order_by(Permission.name)
    )
    for name, effect in result.all():
        effective[f"{effect}_overrides"].append(name)
    return effective
