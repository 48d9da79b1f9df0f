"""
Shared pytest fixtures for the permission engine tests.

Provides:
- An in-memory SQLite database per test, built from the ORM metadata
- A factory for modules, permissions, roles and users
- A populated "world": module tree, full permission catalog, one role and
  one user per authority level
"""
from dataclasses import dataclass, field
from typing import AsyncGenerator, Dict, Iterable, Optional

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.base import Base
from app.features.modules.models import Module
from app.features.permissions.actions import ACTIONS, build_permission_key
from app.features.permissions.models import Permission, Role, UserPermissionOverride, AuditLog  # noqa: F401
from app.features.users.models import User


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


# ============================================================================
# Factories
# ============================================================================

class Factory:
    """Creates rows directly, bypassing the services and their checks."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.paths: Dict[str, str] = {}
        self._user_seq = 0

    async def module(self, key: str, parent: Optional[Module] = None, is_active: bool = True) -> Module:
        module = Module(
            key=key,
            name=key.title(),
            parent_module_id=parent.id if parent else None,
            is_active=is_active,
        )
        self.db.add(module)
        await self.db.flush()
        self.paths[module.id] = f"{self.paths[parent.id]}.{key}" if parent else key
        return module

    async def permissions(
        self,
        module: Module,
        actions: Iterable[str] = ACTIONS,
        is_system: bool = False
    ) -> Dict[str, Permission]:
        created = {}
        for action in actions:
            name = build_permission_key(self.paths[module.id], action)
            permission = Permission(
                name=name,
                module_id=module.id,
                action=action,
                is_system_permission=is_system,
            )
            self.db.add(permission)
            created[name] = permission
        await self.db.flush()
        return created

    async def role(
        self,
        name: str,
        priority: int,
        is_system: bool = False,
        level: Optional[int] = None,
        base_role: Optional[Role] = None
    ) -> Role:
        role = Role(
            name=name,
            priority=priority,
            is_system_role=is_system,
            level=level,
            base_role_id=base_role.id if base_role else None,
        )
        self.db.add(role)
        await self.db.flush()
        return role

    async def user(
        self,
        role: Optional[Role] = None,
        name: Optional[str] = None,
        is_active: bool = True,
        is_deleted: bool = False
    ) -> User:
        self._user_seq += 1
        name = name or f"user{self._user_seq}"
        user = User(
            email=f"{name}@example.com",
            name=name,
            role_id=role.id if role else None,
            is_active=is_active,
            is_deleted=is_deleted,
        )
        self.db.add(user)
        await self.db.flush()
        return user


@pytest_asyncio.fixture
async def factory(db: AsyncSession) -> Factory:
    return Factory(db)


# ============================================================================
# Populated World
# ============================================================================

@dataclass
class World:
    """
    Module tree:

        accounting
        ├── invoices
        └── payments
        people
        └── employees
            └── contracts
        reports
        settings        (system permissions only)

    Every module carries every action. Roles (custom unless noted):
    super_admin 0 (system), admin 10, lead 20, manager 30, employee 40.
    """
    db: AsyncSession
    engine: AsyncEngine
    factory: Factory
    modules: Dict[str, Module] = field(default_factory=dict)
    perms: Dict[str, Permission] = field(default_factory=dict)
    roles: Dict[str, Role] = field(default_factory=dict)
    users: Dict[str, User] = field(default_factory=dict)


@pytest_asyncio.fixture
async def world(db: AsyncSession, db_engine: AsyncEngine, factory: Factory) -> World:
    w = World(db=db, engine=db_engine, factory=factory)

    accounting = await factory.module("accounting")
    people = await factory.module("people")
    employees = await factory.module("employees", people)
    w.modules = {
        "accounting": accounting,
        "accounting.invoices": await factory.module("invoices", accounting),
        "accounting.payments": await factory.module("payments", accounting),
        "people": people,
        "people.employees": employees,
        "people.employees.contracts": await factory.module("contracts", employees),
        "reports": await factory.module("reports"),
        "settings": await factory.module("settings"),
    }
    for path, module in w.modules.items():
        w.perms.update(await factory.permissions(module, is_system=(path == "settings")))

    w.roles = {
        "super_admin": await factory.role("Super Admin", 0, is_system=True, level=0),
        "admin": await factory.role("Admin", 10, level=0),
        "lead": await factory.role("Lead", 20, level=1),
        "manager": await factory.role("Manager", 30, level=2),
        "employee": await factory.role("Employee", 40, level=3),
    }
    w.users = {name: await factory.user(role, name=name) for name, role in w.roles.items()}
    await db.commit()
    return w
