"""
Authorization decision engine.
"""
from datetime import timedelta

import pytest
from sqlalchemy import event

from app.core.exceptions import ValidationError
from app.features.permissions.engine import (
    check_permission,
    check_permissions_batch,
    evaluate_permissions_batch,
    get_effective_permissions,
)
from app.features.permissions.grants import add_role_permission, write_grants
from app.features.permissions.models import UserPermissionOverride
from app.features.permissions.overrides import create_override
from app.utils import utcnow


async def _override(world, user, key, effect, expires_at=None):
    world.db.add(UserPermissionOverride(
        user_id=user.id,
        permission_id=world.perms[key].id,
        effect=effect,
        expires_at=expires_at,
    ))
    await world.db.flush()


async def _grant(world, role, *keys):
    await write_grants(world.db, role.id, [world.perms[key].id for key in keys])


class TestScenarios:

    @pytest.mark.asyncio
    async def test_manage_grant_with_deny_override_on_child(self, world):
        """accounting.manage cascaded to the employee role, then delete denied on invoices."""
        employee = world.users["employee"]
        await add_role_permission(
            world.db, world.roles["employee"].id, world.perms["accounting.manage"].id, world.users["admin"].id
        )
        await create_override(
            world.db, employee.id, world.perms["accounting.invoices.delete"].id, "deny", world.users["lead"].id
        )

        denied = await check_permission(world.db, employee.id, "accounting.invoices.delete")
        assert denied.has_access is False
        assert denied.reason == "Permission explicitly denied"

        allowed = await check_permission(world.db, employee.id, "accounting.invoices.create")
        assert allowed.has_access is True
        assert allowed.details == {"granted_via": "accounting.invoices.manage"}

    @pytest.mark.asyncio
    async def test_expired_override_is_ignored(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "reports.read")
        await _override(world, employee, "reports.read", "deny", expires_at=utcnow() - timedelta(hours=1))

        decision = await check_permission(world.db, employee.id, "reports.read")
        assert decision.has_access is True
        assert decision.reason == "Permission granted by role"

    @pytest.mark.asyncio
    async def test_override_expiry_is_evaluated_at_check_time(self, world):
        employee = world.users["employee"]
        await _override(world, employee, "reports.export", "allow", expires_at=utcnow() + timedelta(hours=1))

        assert (await check_permission(world.db, employee.id, "reports.export")).has_access is True
        later = utcnow() + timedelta(hours=2)
        decision = await check_permission(world.db, employee.id, "reports.export", now=later)
        assert decision.has_access is False
        assert decision.reason == "Permission not granted"


class TestPrecedence:

    @pytest.mark.asyncio
    async def test_exact_deny_beats_role_grant(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "reports.read", "reports.manage")
        await _override(world, employee, "reports.read", "deny")

        decision = await check_permission(world.db, employee.id, "reports.read")
        assert decision.has_access is False
        assert decision.reason == "Permission explicitly denied"

    @pytest.mark.asyncio
    async def test_deny_on_coarser_action_denies_finer(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "accounting.invoices.read")
        await _override(world, employee, "accounting.invoices.manage", "deny")

        decision = await check_permission(world.db, employee.id, "accounting.invoices.read")
        assert decision.has_access is False
        assert decision.details == {"denied_via": "accounting.invoices.manage"}

    @pytest.mark.asyncio
    async def test_hierarchical_deny_beats_exact_allow(self, world):
        employee = world.users["employee"]
        await _override(world, employee, "reports.read", "allow")
        await _override(world, employee, "reports.update", "deny")

        decision = await check_permission(world.db, employee.id, "reports.read")
        assert decision.has_access is False
        assert decision.details == {"denied_via": "reports.update"}

    @pytest.mark.asyncio
    async def test_exact_allow_override_without_role_grant(self, world):
        employee = world.users["employee"]
        await _override(world, employee, "people.employees.update", "allow")

        decision = await check_permission(world.db, employee.id, "people.employees.update")
        assert decision.has_access is True
        assert decision.reason == "Permission explicitly allowed"

    @pytest.mark.asyncio
    async def test_hierarchical_allow_override(self, world):
        employee = world.users["employee"]
        await _override(world, employee, "people.employees.manage", "allow")

        decision = await check_permission(world.db, employee.id, "people.employees.delete")
        assert decision.has_access is True
        assert decision.details == {"granted_via": "people.employees.manage"}

    @pytest.mark.asyncio
    async def test_manage_grant_satisfies_crud_only(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "accounting.payments.manage")

        for action in ("create", "read", "update", "delete"):
            decision = await check_permission(world.db, employee.id, f"accounting.payments.{action}")
            assert decision.has_access is True, action
        for action in ("approve", "export"):
            decision = await check_permission(world.db, employee.id, f"accounting.payments.{action}")
            assert decision.has_access is False, action

    @pytest.mark.asyncio
    async def test_grant_on_parent_module_does_not_reach_child_without_cascade(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "accounting.read")

        decision = await check_permission(world.db, employee.id, "accounting.invoices.read")
        assert decision.has_access is False

    @pytest.mark.asyncio
    async def test_default_deny(self, world):
        decision = await check_permission(world.db, world.users["employee"].id, "reports.delete")
        assert decision.has_access is False
        assert decision.reason == "Permission not granted"


class TestUserAndCatalogChecks:

    @pytest.mark.asyncio
    async def test_unknown_user(self, world):
        decision = await check_permission(world.db, "01ARZ3NDEKTSV4RRFFQ69G5FAV", "reports.read")
        assert decision.has_access is False
        assert decision.reason == "User not found"

    @pytest.mark.asyncio
    async def test_inactive_user(self, world, factory):
        user = await factory.user(world.roles["admin"], is_active=False)
        await _grant(world, world.roles["admin"], "reports.read")

        decision = await check_permission(world.db, user.id, "reports.read")
        assert decision.has_access is False
        assert decision.reason == "User account is inactive"

    @pytest.mark.asyncio
    async def test_deleted_user(self, world, factory):
        user = await factory.user(world.roles["admin"], is_deleted=True)

        decision = await check_permission(world.db, user.id, "reports.read")
        assert decision.reason == "User account is deleted"

    @pytest.mark.asyncio
    async def test_user_without_role(self, world, factory):
        user = await factory.user(None)
        await _override(world, user, "reports.read", "allow")

        decision = await check_permission(world.db, user.id, "reports.read")
        assert decision.has_access is False
        assert decision.reason == "User has no role assigned"

    @pytest.mark.asyncio
    async def test_user_with_deleted_role(self, world):
        world.roles["manager"].is_deleted = True
        await world.db.flush()

        decision = await check_permission(world.db, world.users["manager"].id, "reports.read")
        assert decision.reason == "User role not found"

    @pytest.mark.asyncio
    async def test_unknown_permission_key(self, world):
        decision = await check_permission(world.db, world.users["employee"].id, "warehouse.bins.read")
        assert decision.has_access is False
        assert decision.reason == "Permission not found"

    @pytest.mark.asyncio
    async def test_inactive_permission(self, world):
        await _grant(world, world.roles["employee"], "reports.read")
        world.perms["reports.read"].is_active = False
        await world.db.flush()

        decision = await check_permission(world.db, world.users["employee"].id, "reports.read")
        assert decision.reason == "Permission not found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "   "])
    async def test_blank_key_is_a_validation_error(self, world, key):
        with pytest.raises(ValidationError):
            await check_permission(world.db, world.users["employee"].id, key)


class TestBatch:

    KEYS = [
        "accounting.invoices.create",
        "accounting.invoices.delete",
        "accounting.invoices.read",
        "accounting.payments.approve",
        "reports.read",
        "reports.export",
        "people.employees.read",
        "warehouse.bins.read",
    ]

    async def _setup(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "accounting.invoices.manage", "reports.export")
        await _override(world, employee, "accounting.invoices.delete", "deny")
        await _override(world, employee, "people.employees.update", "allow")
        return employee

    @pytest.mark.asyncio
    async def test_batch_matches_single_checks(self, world):
        employee = await self._setup(world)

        batch = await evaluate_permissions_batch(world.db, employee.id, self.KEYS)
        for key in self.KEYS:
            assert batch[key] == await check_permission(world.db, employee.id, key), key

    @pytest.mark.asyncio
    async def test_batch_booleans(self, world):
        employee = await self._setup(world)

        results = await check_permissions_batch(world.db, employee.id, self.KEYS)
        assert results == {
            "accounting.invoices.create": True,
            "accounting.invoices.delete": False,
            "accounting.invoices.read": True,
            "accounting.payments.approve": False,
            "reports.read": True,
            "reports.export": True,
            "people.employees.read": True,
            "warehouse.bins.read": False,
        }

    @pytest.mark.asyncio
    async def test_batch_for_ineligible_user_is_all_false(self, world, factory):
        user = await factory.user(None)
        results = await check_permissions_batch(world.db, user.id, self.KEYS)
        assert set(results) == set(self.KEYS)
        assert not any(results.values())

    @pytest.mark.asyncio
    async def test_query_count_does_not_grow_with_keys(self, world):
        employee = await self._setup(world)
        await world.db.commit()
        statements = []

        def count(*_args, **_kwargs):
            statements.append(1)

        event.listen(world.engine.sync_engine, "before_cursor_execute", count)
        try:
            world.db.expunge_all()
            await check_permissions_batch(world.db, employee.id, self.KEYS[:1])
            single = len(statements)

            statements.clear()
            world.db.expunge_all()
            await check_permissions_batch(world.db, employee.id, self.KEYS)
            assert len(statements) == single
        finally:
            event.remove(world.engine.sync_engine, "before_cursor_execute", count)


class TestEffectivePermissions:

    @pytest.mark.asyncio
    async def test_role_and_override_names(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "reports.read", "accounting.invoices.create")
        await _override(world, employee, "people.employees.read", "allow")
        await _override(world, employee, "reports.export", "deny")
        await _override(world, employee, "accounting.payments.read", "allow", expires_at=utcnow() - timedelta(days=1))

        effective = await get_effective_permissions(world.db, employee.id)
        assert effective == {
            "role_permissions": ["accounting.invoices.create", "reports.read"],
            "allow_overrides": ["people.employees.read"],
            "deny_overrides": ["reports.export"],
        }

    @pytest.mark.asyncio
    async def test_deleted_user_has_nothing(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "reports.export")
        await _override(world, employee, "reports.read", "allow")
        employee.is_deleted = True
        await world.db.flush()

        assert (await check_permission(world.db, employee.id, "reports.read")).has_access is False
        effective = await get_effective_permissions(world.db, employee.id)
        assert effective == {"role_permissions": [], "allow_overrides": [], "deny_overrides": []}

    @pytest.mark.asyncio
    async def test_deleted_role_has_nothing(self, world):
        await _grant(world, world.roles["employee"], "reports.read")
        world.roles["employee"].is_deleted = True
        await world.db.flush()

        effective = await get_effective_permissions(world.db, world.users["employee"].id)
        assert effective["role_permissions"] == []

    @pytest.mark.asyncio
    async def test_dead_permissions_are_left_out(self, world):
        employee = world.users["employee"]
        await _grant(world, world.roles["employee"], "reports.read", "reports.export")
        await _override(world, employee, "people.read", "allow")
        await _override(world, employee, "accounting.read", "deny")
        world.perms["reports.export"].is_active = False
        world.perms["people.read"].is_deleted = True
        await world.db.flush()

        effective = await get_effective_permissions(world.db, employee.id)
        assert effective == {
            "role_permissions": ["reports.read"],
            "allow_overrides": [],
            "deny_overrides": ["accounting.read"],
        }

    @pytest.mark.asyncio
    async def test_missing_user_has_nothing(self, world):
        effective = await get_effective_permissions(world.db, "missing")
        assert effective == {"role_permissions": [], "allow_overrides": [], "deny_overrides": []}
