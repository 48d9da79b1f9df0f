"""
Module-tree cascade expansion.

Granting an action on a module also grants the same action on every
descendant module (top-down). Revoking or denying an action on a module also
revokes it on every ancestor (bottom-up).

The expansion functions are pure and work on a ModuleTree and a
PermissionIndex loaded up front. Every walk keeps a visited set, so a cycle in
the module data terminates instead of looping.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.modules.models import Module
from app.features.permissions.models import Permission


@dataclass
class ModuleTree:
    """Parent and children links for every known module."""
    parents: dict[str, Optional[str]] = field(default_factory=dict)
    children: dict[str, list[str]] = field(default_factory=dict)
    keys: dict[str, str] = field(default_factory=dict)

    def add(self, module_id: str, parent_id: Optional[str], key: str = "") -> None:
        self.parents[module_id] = parent_id
        self.keys[module_id] = key
        self.children.setdefault(module_id, [])
        if parent_id is not None:
            self.children.setdefault(parent_id, []).append(module_id)

    def __contains__(self, module_id: object) -> bool:
        return module_id in self.parents


@dataclass
class PermissionIndex:
    """Lookup from (module, action) to permission id and back."""
    by_module_action: dict[tuple[str, str], str] = field(default_factory=dict)
    by_id: dict[str, tuple[str, str]] = field(default_factory=dict)

    def add(self, permission_id: str, module_id: str, action: str) -> None:
        self.by_module_action[(module_id, action)] = permission_id
        self.by_id[permission_id] = (module_id, action)


def descendant_module_ids(tree: ModuleTree, module_id: str) -> list[str]:
    """All modules below module_id, at any depth, in depth-first order."""
    result: list[str] = []
    visited = {module_id}
    stack = list(reversed(tree.children.get(module_id, [])))
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        result.append(current)
        stack.extend(reversed(tree.children.get(current, [])))
    return result


def ancestor_module_ids(tree: ModuleTree, module_id: str) -> list[str]:
    """All modules above module_id, nearest parent first."""
    result: list[str] = []
    visited = {module_id}
    current = tree.parents.get(module_id)
    while current is not None and current not in visited:
        visited.add(current)
        result.append(current)
        current = tree.parents.get(current)
    return result


def module_path(tree: ModuleTree, module_id: str) -> str:
    """Dotted chain of module keys from the root down to module_id."""
    segments = [tree.keys.get(module_id, "")]
    segments.extend(tree.keys.get(ancestor, "") for ancestor in ancestor_module_ids(tree, module_id))
    return ".".join(reversed(segments))


def grant_cascade(permission_id: str, tree: ModuleTree, index: PermissionIndex) -> list[str]:
    """Permission ids for the same action on every descendant module."""
    entry = index.by_id.get(permission_id)
    if entry is None:
        return []
    module_id, action = entry
    cascaded = []
    for descendant in descendant_module_ids(tree, module_id):
        descendant_permission = index.by_module_action.get((descendant, action))
        if descendant_permission is not None:
            cascaded.append(descendant_permission)
    return cascaded


def revocation_cascade(permission_id: str, tree: ModuleTree, index: PermissionIndex) -> list[str]:
    """Permission ids for the same action on every ancestor module."""
    entry = index.by_id.get(permission_id)
    if entry is None:
        return []
    module_id, action = entry
    cascaded = []
    for ancestor in ancestor_module_ids(tree, module_id):
        ancestor_permission = index.by_module_action.get((ancestor, action))
        if ancestor_permission is not None:
            cascaded.append(ancestor_permission)
    return cascaded


def _expand(permission_ids: Iterable[str], step) -> list[str]:
    expanded: dict[str, None] = {}
    for permission_id in permission_ids:
        expanded.setdefault(permission_id, None)
        for cascaded in step(permission_id):
            expanded.setdefault(cascaded, None)
    return list(expanded)


def expand_with_grant_cascade(
    permission_ids: Iterable[str], tree: ModuleTree, index: PermissionIndex
) -> list[str]:
    """Union of the requested ids and their top-down cascades, order preserved."""
    return _expand(permission_ids, lambda pid: grant_cascade(pid, tree, index))


def expand_with_revocation_cascade(
    permission_ids: Iterable[str], tree: ModuleTree, index: PermissionIndex
) -> list[str]:
    """Union of the requested ids and their bottom-up cascades, order preserved."""
    return _expand(permission_ids, lambda pid: revocation_cascade(pid, tree, index))


async def load_module_tree(db: AsyncSession, include_inactive: bool = False) -> ModuleTree:
    """
    Load modules into a ModuleTree.

    Cascades only follow live modules. Key derivation passes
    include_inactive=True so a disabled parent still contributes its path
    segment.
    """
    stmt = select(Module.id, Module.parent_module_id, Module.key).where(
        Module.is_deleted == False  # noqa: E712
    )
    if not include_inactive:
        stmt = stmt.where(Module.is_active == True)  # noqa: E712
    result = await db.execute(stmt)
    tree = ModuleTree()
    rows = result.all()
    for module_id, parent_id, key in rows:
        tree.parents[module_id] = parent_id
        tree.keys[module_id] = key
        tree.children.setdefault(module_id, [])
    # A filtered-out parent cuts the tree; its children become roots
    for module_id, parent_id, _key in rows:
        if parent_id is not None and parent_id in tree:
            tree.children[parent_id].append(module_id)
        else:
            tree.parents[module_id] = None
    return tree


async def load_cascade_context(db: AsyncSession) -> tuple[ModuleTree, PermissionIndex]:
    """Load the module tree and the live permission catalog in two queries."""
    tree = await load_module_tree(db)
    result = await db.execute(
        select(Permission.id, Permission.module_id, Permission.action).where(
            Permission.is_active == True,  # noqa: E712
            Permission.is_deleted == False,  # noqa: E712
        )
    )
    index = PermissionIndex()
    for permission_id, module_id, action in result.all():
        index.add(permission_id, module_id, action)
    return tree, index
