"""
Module-tree cascade expansion.
"""
import pytest

from app.features.permissions.cascade import (
    ModuleTree,
    PermissionIndex,
    ancestor_module_ids,
    descendant_module_ids,
    expand_with_grant_cascade,
    expand_with_revocation_cascade,
    grant_cascade,
    load_cascade_context,
    load_module_tree,
    module_path,
    revocation_cascade,
)


@pytest.fixture
def tree() -> ModuleTree:
    """
    root
    ├── a
    │   └── a1
    │       └── a1x
    └── b
    """
    t = ModuleTree()
    t.add("root", None, "root")
    t.add("a", "root", "a")
    t.add("a1", "a", "a1")
    t.add("a1x", "a1", "a1x")
    t.add("b", "root", "b")
    return t


@pytest.fixture
def index() -> PermissionIndex:
    idx = PermissionIndex()
    for module in ("root", "a", "a1", "a1x", "b"):
        for action in ("create", "read"):
            idx.add(f"{module}:{action}", module, action)
    # "a1" has no delete permission; the cascade skips over it
    idx.add("root:delete", "root", "delete")
    idx.add("a1x:delete", "a1x", "delete")
    return idx


class TestTreeWalks:

    def test_descendants_depth_first(self, tree):
        assert descendant_module_ids(tree, "root") == ["a", "a1", "a1x", "b"]

    def test_leaf_has_no_descendants(self, tree):
        assert descendant_module_ids(tree, "b") == []

    def test_ancestors_nearest_first(self, tree):
        assert ancestor_module_ids(tree, "a1x") == ["a1", "a", "root"]

    def test_module_path(self, tree):
        assert module_path(tree, "a1x") == "root.a.a1.a1x"
        assert module_path(tree, "root") == "root"

    def test_cycle_terminates(self):
        t = ModuleTree()
        t.add("x", "y", "x")
        t.add("y", "x", "y")
        assert ancestor_module_ids(t, "x") == ["y"]
        assert descendant_module_ids(t, "x") == ["y"]


class TestCascades:

    def test_grant_cascade_same_action_only(self, tree, index):
        assert grant_cascade("a:create", tree, index) == ["a1:create", "a1x:create"]

    def test_grant_cascade_skips_missing_permissions(self, tree, index):
        assert grant_cascade("root:delete", tree, index) == ["a1x:delete"]

    def test_revocation_cascade_walks_ancestors(self, tree, index):
        assert revocation_cascade("a1x:read", tree, index) == ["a1:read", "a:read", "root:read"]

    def test_unknown_permission_has_no_cascade(self, tree, index):
        assert grant_cascade("nope", tree, index) == []
        assert revocation_cascade("nope", tree, index) == []

    def test_expand_keeps_order_and_deduplicates(self, tree, index):
        expanded = expand_with_grant_cascade(["a1:read", "a:read", "b:read"], tree, index)
        assert expanded == ["a1:read", "a1x:read", "a:read", "b:read"]

    def test_expand_revocation(self, tree, index):
        expanded = expand_with_revocation_cascade(["a1:create", "b:create"], tree, index)
        assert expanded == ["a1:create", "a:create", "root:create", "b:create"]


class TestLoaders:

    @pytest.mark.asyncio
    async def test_load_cascade_context(self, world):
        tree, index = await load_cascade_context(world.db)
        accounting = world.modules["accounting"]
        invoices = world.modules["accounting.invoices"]

        assert set(tree.children[accounting.id]) == {
            invoices.id, world.modules["accounting.payments"].id
        }
        assert module_path(tree, invoices.id) == "accounting.invoices"
        assert index.by_module_action[(invoices.id, "read")] == world.perms["accounting.invoices.read"].id

    @pytest.mark.asyncio
    async def test_inactive_module_cuts_the_tree(self, world):
        employees = world.modules["people.employees"]
        employees.is_active = False
        await world.db.flush()

        tree = await load_module_tree(world.db)
        contracts = world.modules["people.employees.contracts"]
        assert employees.id not in tree
        assert tree.parents[contracts.id] is None
        assert descendant_module_ids(tree, world.modules["people"].id) == []

        full = await load_module_tree(world.db, include_inactive=True)
        assert module_path(full, contracts.id) == "people.employees.contracts"

    @pytest.mark.asyncio
    async def test_inactive_permissions_are_not_indexed(self, world):
        permission = world.perms["reports.read"]
        permission.is_active = False
        await world.db.flush()

        _tree, index = await load_cascade_context(world.db)
        assert permission.id not in index.by_id
