"""
Role catalog: create, update, delete, clone and user role reassignment.
"""
import pytest
from sqlalchemy import select, func

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.features.permissions.grants import get_role_permission_ids, write_grants
from app.features.permissions.models import Role
from app.features.permissions.roles import (
    clone_role,
    create_role,
    delete_role,
    get_role_permissions,
    list_roles,
    reassign_user_role,
    update_role,
)
from app.features.permissions.schemas import RoleCreate, RoleUpdate


async def _role_count(db) -> int:
    return (await db.execute(select(func.count(Role.id)))).scalar_one()


class TestCreateRole:

    @pytest.mark.asyncio
    async def test_create_inherits_level_from_base(self, world):
        role = await create_role(
            world.db,
            RoleCreate(name="Auditor", priority=25, base_role_id=world.roles["lead"].id),
            world.users["lead"].id,
        )
        assert role.priority == 25
        assert role.level == world.roles["lead"].level
        assert role.is_system_role is False

    @pytest.mark.asyncio
    async def test_cannot_create_stronger_role(self, world):
        with pytest.raises(AuthorizationError):
            await create_role(world.db, RoleCreate(name="Boss", priority=10), world.users["lead"].id)

    @pytest.mark.asyncio
    async def test_equal_priority_is_allowed(self, world):
        role = await create_role(world.db, RoleCreate(name="Peer", priority=20), world.users["lead"].id)
        assert role.priority == 20

    @pytest.mark.asyncio
    async def test_duplicate_name(self, world):
        with pytest.raises(ValidationError):
            await create_role(world.db, RoleCreate(name="Manager", priority=50), world.users["admin"].id)

    @pytest.mark.asyncio
    async def test_missing_base_role(self, world):
        with pytest.raises(NotFoundError):
            await create_role(
                world.db, RoleCreate(name="Orphan", priority=50, base_role_id="missing"), world.users["admin"].id
            )

    def test_negative_priority_rejected_by_schema(self):
        with pytest.raises(ValueError):
            RoleCreate(name="Bad", priority=-1)

    @pytest.mark.asyncio
    async def test_actor_without_role(self, world, factory):
        nobody = await factory.user(None)
        with pytest.raises(AuthorizationError):
            await create_role(world.db, RoleCreate(name="X", priority=90), nobody.id)


class TestUpdateRole:

    @pytest.mark.asyncio
    async def test_update_fields(self, world):
        role = await update_role(
            world.db, world.roles["employee"].id,
            RoleUpdate(name="Staff", description="Everyone", priority=45),
            world.users["manager"].id,
        )
        assert (role.name, role.description, role.priority) == ("Staff", "Everyone", 45)

    @pytest.mark.asyncio
    async def test_system_role_is_immutable(self, world):
        with pytest.raises(AuthorizationError):
            await update_role(
                world.db, world.roles["super_admin"].id, RoleUpdate(description="x"), world.users["super_admin"].id
            )

    @pytest.mark.asyncio
    async def test_cannot_edit_stronger_role(self, world):
        with pytest.raises(AuthorizationError):
            await update_role(world.db, world.roles["admin"].id, RoleUpdate(description="x"), world.users["lead"].id)

    @pytest.mark.asyncio
    async def test_cannot_raise_role_above_own_authority(self, world):
        with pytest.raises(AuthorizationError):
            await update_role(world.db, world.roles["employee"].id, RoleUpdate(priority=5), world.users["lead"].id)

    @pytest.mark.asyncio
    async def test_rename_to_existing_name(self, world):
        with pytest.raises(ValidationError):
            await update_role(world.db, world.roles["employee"].id, RoleUpdate(name="Lead"), world.users["admin"].id)

    @pytest.mark.asyncio
    async def test_lineage_cycle_rejected(self, world):
        """A -> B exists; pointing B at A would close a loop."""
        a = world.roles["manager"]
        b = world.roles["employee"]
        await update_role(world.db, a.id, RoleUpdate(base_role_id=b.id), world.users["admin"].id)

        with pytest.raises(ValidationError):
            await update_role(world.db, b.id, RoleUpdate(base_role_id=a.id), world.users["admin"].id)
        assert b.base_role_id is None

    @pytest.mark.asyncio
    async def test_role_cannot_be_its_own_base(self, world):
        role = world.roles["employee"]
        with pytest.raises(ValidationError):
            await update_role(world.db, role.id, RoleUpdate(base_role_id=role.id), world.users["admin"].id)


class TestDeleteRole:

    @pytest.mark.asyncio
    async def test_delete_blocked_while_users_hold_it(self, world):
        with pytest.raises(ValidationError):
            await delete_role(world.db, world.roles["employee"].id, world.users["admin"].id)

    @pytest.mark.asyncio
    async def test_inactive_holder_still_blocks(self, world):
        world.users["employee"].is_active = False
        await world.db.flush()
        with pytest.raises(ValidationError):
            await delete_role(world.db, world.roles["employee"].id, world.users["admin"].id)

    @pytest.mark.asyncio
    async def test_delete_after_holder_deleted(self, world):
        world.users["employee"].is_deleted = True
        await world.db.flush()

        await delete_role(world.db, world.roles["employee"].id, world.users["admin"].id)
        assert world.roles["employee"].is_deleted is True
        assert world.roles["employee"] not in await list_roles(world.db, include_inactive=True)

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_deleted(self, world):
        with pytest.raises(AuthorizationError):
            await delete_role(world.db, world.roles["super_admin"].id, world.users["super_admin"].id)


class TestCloneRole:

    @pytest.mark.asyncio
    async def test_priority_is_below_creator_and_base(self, world):
        await write_grants(world.db, world.roles["manager"].id, [world.perms["reports.read"].id])

        clone = await clone_role(world.db, world.roles["manager"].id, world.users["lead"].id)
        assert clone.priority == 31
        assert clone.level == world.roles["manager"].level
        assert clone.name == "Manager_custom"
        assert clone.base_role_id == world.roles["manager"].id
        assert await get_role_permission_ids(world.db, clone.id) == [world.perms["reports.read"].id]

    @pytest.mark.asyncio
    async def test_weaker_creator_sets_the_ceiling(self, world):
        clone = await clone_role(world.db, world.roles["admin"].id, world.users["manager"].id, name="Admin Lite")
        assert clone.priority == 31
        assert clone.priority > world.roles["admin"].priority
        assert clone.level == world.roles["admin"].level

    @pytest.mark.asyncio
    async def test_explicit_permissions_assigned_verbatim(self, world):
        await write_grants(world.db, world.roles["manager"].id, [world.perms["reports.read"].id])
        explicit = [world.perms["accounting.create"].id]

        clone = await clone_role(
            world.db, world.roles["manager"].id, world.users["lead"].id, permission_ids=explicit
        )
        # accounting.create has descendants but the clone does not cascade
        assert await get_role_permission_ids(world.db, clone.id) == explicit

    @pytest.mark.asyncio
    async def test_empty_permission_list_copies_base(self, world):
        await write_grants(world.db, world.roles["manager"].id, [world.perms["reports.read"].id])
        clone = await clone_role(world.db, world.roles["manager"].id, world.users["lead"].id, permission_ids=[])
        assert await get_role_permission_ids(world.db, clone.id) == [world.perms["reports.read"].id]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, world):
        await clone_role(world.db, world.roles["manager"].id, world.users["lead"].id)
        with pytest.raises(ValidationError):
            await clone_role(world.db, world.roles["manager"].id, world.users["lead"].id)

    @pytest.mark.asyncio
    async def test_invalid_permission_writes_nothing(self, world):
        before = await _role_count(world.db)
        with pytest.raises(ValidationError):
            await clone_role(
                world.db, world.roles["manager"].id, world.users["lead"].id, permission_ids=["missing"]
            )
        assert await _role_count(world.db) == before

    @pytest.mark.asyncio
    async def test_missing_base(self, world):
        with pytest.raises(NotFoundError):
            await clone_role(world.db, "missing", world.users["lead"].id)


class TestQueriesAndReassignment:

    @pytest.mark.asyncio
    async def test_list_roles_strongest_first(self, world):
        roles = await list_roles(world.db)
        assert [r.priority for r in roles] == [0, 10, 20, 30, 40]

    @pytest.mark.asyncio
    async def test_get_role_permissions(self, world):
        await write_grants(world.db, world.roles["employee"].id, [
            world.perms["reports.read"].id, world.perms["accounting.read"].id
        ])
        permissions = await get_role_permissions(world.db, world.roles["employee"].id)
        assert [p.name for p in permissions] == ["accounting.read", "reports.read"]

    @pytest.mark.asyncio
    async def test_reassign_user_role(self, world):
        user = await reassign_user_role(
            world.db, world.users["employee"].id, world.roles["manager"].id, world.users["lead"].id
        )
        assert user.role_id == world.roles["manager"].id

    @pytest.mark.asyncio
    async def test_cannot_promote_above_own_authority(self, world):
        with pytest.raises(AuthorizationError):
            await reassign_user_role(
                world.db, world.users["employee"].id, world.roles["admin"].id, world.users["lead"].id
            )

    @pytest.mark.asyncio
    async def test_cannot_move_a_stronger_user(self, world):
        with pytest.raises(AuthorizationError):
            await reassign_user_role(
                world.db, world.users["admin"].id, world.roles["employee"].id, world.users["lead"].id
            )
