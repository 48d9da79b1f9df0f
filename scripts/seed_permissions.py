"""
Seed script to populate the default module tree, permissions and system roles.

Run this script after database initialization to create:
- The default module tree
- One permission for every (module, action) pair
- The system roles and their grants

Running it again only adds what is missing.

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.modules.models import Module
from app.features.permissions.actions import ACTIONS, build_permission_key
from app.features.permissions.cascade import (
    expand_with_grant_cascade,
    load_cascade_context,
    load_module_tree,
    module_path,
)
from app.features.permissions.grants import write_grants
from app.features.permissions.models import Permission, Role
from app.utils import get_logger


log = get_logger(__name__)


# (key, name, children)
DEFAULT_MODULES = [
    ("accounting", "Accounting", [
        ("invoices", "Invoices", []),
        ("payments", "Payments", []),
        ("ledger", "General Ledger", []),
    ]),
    ("people", "People", [
        ("employees", "Employees", []),
        ("attendance", "Attendance", []),
    ]),
    ("reports", "Reports", []),
    ("administration", "Administration", [
        ("roles", "Roles", []),
        ("permissions", "Permissions", []),
        ("users", "Users", []),
    ]),
]

# Permissions under these root modules are system permissions
SYSTEM_MODULES = {"administration"}


# Grants are permission keys; each one cascades down the module tree
DEFAULT_ROLES = {
    "Super Admin": {
        "description": "Full access to every module",
        "priority": 0,
        "level": 0,
        "permissions": "ALL",
    },
    "Platform Admin": {
        "description": "Administers the platform below the super admin",
        "priority": 10,
        "level": 0,
        "permissions": [
            "accounting.manage", "accounting.approve", "accounting.export",
            "people.manage", "people.approve", "people.export",
            "reports.manage", "reports.export",
            "administration.read",
        ],
    },
    "Support Lead": {
        "description": "Handles escalations and may grant user overrides",
        "priority": 20,
        "level": 1,
        "permissions": [
            "accounting.read", "people.manage", "reports.read", "reports.export",
        ],
    },
    "Manager": {
        "description": "Runs a team",
        "priority": 30,
        "level": 2,
        "permissions": [
            "accounting.update", "accounting.approve", "people.read", "people.attendance.approve",
            "reports.read",
        ],
    },
    "Employee": {
        "description": "Day to day work",
        "priority": 40,
        "level": 3,
        "permissions": [
            "accounting.invoices.create", "accounting.invoices.read", "people.attendance.create",
            "reports.read",
        ],
    },
}


async def seed_modules(db: AsyncSession) -> None:
    """Create the default module tree."""
    log.info("Creating default modules...")
    created = 0

    async def ensure(key: str, name: str, parent_id, children) -> None:
        nonlocal created
        result = await db.execute(
            select(Module).where(Module.key == key, Module.parent_module_id == parent_id)
        )
        module = result.scalars().first()
        if module is None:
            module = Module(key=key, name=name, parent_module_id=parent_id)
            db.add(module)
            await db.flush()
            created += 1
        for child_key, child_name, grandchildren in children:
            await ensure(child_key, child_name, module.id, grandchildren)

    for key, name, children in DEFAULT_MODULES:
        await ensure(key, name, None, children)

    await db.commit()
    log.info(f"Created {created} modules")


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create one permission per (module, action).

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    tree = await load_module_tree(db, include_inactive=True)
    result = await db.execute(select(Permission))
    permissions_map = {permission.name: permission for permission in result.scalars().all()}
    created = 0

    for module_id in tree.parents:
        path = module_path(tree, module_id)
        is_system = path.split(".")[0] in SYSTEM_MODULES
        for action in ACTIONS:
            name = build_permission_key(path, action)
            if name in permissions_map:
                continue
            permission = Permission(
                name=name,
                description=f"{action.capitalize()} {path}",
                module_id=module_id,
                action=action,
                is_system_permission=is_system,
            )
            db.add(permission)
            permissions_map[name] = permission
            created += 1

    await db.commit()
    log.info(f"Created {created} permissions ({len(permissions_map)} total)")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]):
    """
    Create the system roles and grant their permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission name -> Permission object
    """
    log.info("Creating default roles...")
    tree, index = await load_cascade_context(db)

    for role_name, role_config in DEFAULT_ROLES.items():
        result = await db.execute(select(Role).where(Role.name == role_name))
        role = result.scalars().first()

        if role is None:
            role = Role(
                name=role_name,
                description=role_config["description"],
                priority=role_config["priority"],
                level=role_config["level"],
                is_system_role=True,
            )
            db.add(role)
            await db.flush()
            log.info(f"Created role '{role_name}' (priority {role.priority})")

        if role_config["permissions"] == "ALL":
            permission_ids = [permission.id for permission in permissions_map.values()]
        else:
            requested = []
            for perm_name in role_config["permissions"]:
                if perm_name in permissions_map:
                    requested.append(permissions_map[perm_name].id)
                else:
                    log.warning(f"Permission '{perm_name}' not found for role '{role_name}'")
            permission_ids = expand_with_grant_cascade(requested, tree, index)

        await write_grants(db, role.id, permission_ids)
        log.info(f"Role '{role_name}' holds {len(permission_ids)} permissions")

    await db.commit()
    log.info("Default roles created successfully")


async def main():
    """Main function to seed modules, permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            await seed_modules(db)
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)

            log.info("Permission seeding completed successfully!")
            for role_name, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_name} (priority {role_config['priority']}): {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
