"""
Role-hierarchy authorization gate and role lineage validation.

Authority is a single integer per role: lower priority means more authority.
An actor may act on a role (or on a user holding that role) only when its own
priority is less than or equal to the target's.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.permissions.models import Role
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class GateResult:
    is_authorized: bool
    reason: str


class RoleCache:
    """
    Memoises role and user lookups for the lifetime of one outer operation.

    Create one per request (or per bulk call) and pass it down. It is never
    shared between operations, so stale entries cannot leak across requests.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._roles: dict[str, Optional[Role]] = {}
        self._users: dict[str, Optional[User]] = {}

    async def get_role(self, role_id: str) -> Optional[Role]:
        if role_id not in self._roles:
            self._roles[role_id] = await self.db.get(Role, role_id)
        return self._roles[role_id]

    async def get_user(self, user_id: str) -> Optional[User]:
        if user_id not in self._users:
            self._users[user_id] = await self.db.get(User, user_id)
        return self._users[user_id]

    async def get_user_role(self, user_id: str) -> Optional[Role]:
        user = await self.get_user(user_id)
        if user is None or not user.role_id:
            return None
        return await self.get_role(user.role_id)

    async def is_manager_role(self, role_id: str) -> bool:
        role = await self.get_role(role_id)
        return role is not None and role.priority < config.MANAGER_PRIORITY_THRESHOLD

    async def is_employee_role(self, role_id: str) -> bool:
        role = await self.get_role(role_id)
        return role is not None and role.priority >= config.MANAGER_PRIORITY_THRESHOLD

    async def classify_role(self, role_id: Optional[str]) -> Optional[str]:
        """Classify a role as "manager" or "employee" by priority. None when the role is missing."""
        if not role_id:
            return None
        if await self.is_manager_role(role_id):
            return "manager"
        if await self.is_employee_role(role_id):
            return "employee"
        return None


def _is_live(role: Optional[Role]) -> bool:
    return role is not None and role.is_active and not role.is_deleted


def check_role_hierarchy(granter_role: Role, target_role: Role) -> GateResult:
    """Authorized iff granter_role.priority <= target_role.priority."""
    if granter_role.priority > target_role.priority:
        return GateResult(
            False,
            f"Cannot act on a role with higher authority. Your priority "
            f"({granter_role.priority}) > target priority ({target_role.priority})",
        )
    return GateResult(True, "Authorized to modify target role")


def check_priority(granter_role: Role, target_priority: int) -> GateResult:
    """Same rule as check_role_hierarchy for a priority that has no row yet."""
    if granter_role.priority > target_priority:
        return GateResult(
            False,
            f"Cannot create or assign a role with higher authority. Your priority "
            f"({granter_role.priority}) > target priority ({target_priority})",
        )
    return GateResult(True, "Authorized for target priority")


def require_role_hierarchy(granter_role: Role, target_role: Role) -> None:
    result = check_role_hierarchy(granter_role, target_role)
    if not result.is_authorized:
        log.info("Role hierarchy gate denied %s over %s: %s", granter_role.id, target_role.id, result.reason)
        raise AuthorizationError(result.reason)


def require_priority(granter_role: Role, target_priority: int) -> None:
    result = check_priority(granter_role, target_priority)
    if not result.is_authorized:
        log.info("Role hierarchy gate denied %s for priority %s", granter_role.id, target_priority)
        raise AuthorizationError(result.reason)


async def get_actor_role(
    db: AsyncSession,
    actor_id: str,
    cache: Optional[RoleCache] = None
) -> Role:
    """
    Load the acting user's role.

    Raises:
        NotFoundError: If the actor does not exist
        AuthorizationError: If the actor is inactive, deleted or has no live role
    """
    cache = cache or RoleCache(db)
    actor = await cache.get_user(actor_id)
    if actor is None:
        raise NotFoundError("Acting user not found")
    if not actor.is_active or actor.is_deleted:
        raise AuthorizationError("Acting user account is inactive")
    if not actor.role_id:
        raise AuthorizationError("Acting user has no role assigned")
    role = await cache.get_role(actor.role_id)
    if not _is_live(role):
        raise AuthorizationError("Acting user's role is inactive or deleted")
    return role


async def require_user_management(
    db: AsyncSession,
    actor_id: str,
    target_user_id: str,
    cache: Optional[RoleCache] = None
) -> tuple[Role, Role]:
    """
    Gate used before touching another user's overrides.

    The actor must be live (see get_actor_role), within the override-granting
    threshold and hold equal or more authority than the target user. A target
    whose role is missing or deleted counts as having no role.

    Returns:
        (actor_role, target_role)
    """
    cache = cache or RoleCache(db)
    actor_role = await get_actor_role(db, actor_id, cache)
    target = await cache.get_user(target_user_id)
    if target is None:
        raise NotFoundError("Target user not found")

    target_role = await cache.get_user_role(target_user_id)
    if target_role is None or target_role.is_deleted:
        raise AuthorizationError("Target user has no role")

    if actor_role.priority > config.OVERRIDE_GRANT_MAX_PRIORITY:
        raise AuthorizationError(
            "Not authorized to manage permission overrides. Only roles with priority "
            f"<= {config.OVERRIDE_GRANT_MAX_PRIORITY} can grant overrides."
        )
    if actor_role.priority > target_role.priority:
        raise AuthorizationError(
            f"Cannot override permissions of a higher-privilege user. Target role priority "
            f"({target_role.priority}) is stronger than your role priority ({actor_role.priority})."
        )
    return actor_role, target_role


async def validate_role_lineage(
    db: AsyncSession,
    base_role_id: str,
    role_id: Optional[str] = None
) -> Role:
    """
    Walk the base_role_id chain starting at base_role_id.

    role_id is the role being created or updated; reaching it (or any id twice)
    means the new link would close a cycle.

    Returns:
        The base role

    Raises:
        NotFoundError: If the base role does not exist
        ValidationError: If the chain contains a cycle
    """
    base_role = await db.get(Role, base_role_id)
    if base_role is None or base_role.is_deleted:
        raise NotFoundError("Base role not found")

    visited: set[str] = {role_id} if role_id else set()
    current: Optional[Role] = base_role
    while current is not None:
        if current.id in visited:
            raise ValidationError("Circular base_role_id dependency detected")
        visited.add(current.id)
        if not current.base_role_id:
            break
        current = await db.get(Role, current.base_role_id)
    return base_role
