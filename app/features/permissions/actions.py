"""
Action hierarchy and permission key helpers.

Actions form a small closed set where a coarser action satisfies requests for
finer ones on the same module path, e.g. a "manage" grant satisfies "create",
"read", "update" and "delete". The table is fixed configuration.
"""
from functools import lru_cache
from typing import Tuple


# Declaration order is the order in which coarser candidates are tried
ACTIONS: Tuple[str, ...] = ("manage", "create", "read", "update", "delete", "approve", "export")

ACTION_HIERARCHY: dict[str, Tuple[str, ...]] = {
    "manage": ("create", "read", "update", "delete"),
    "update": ("read",),
    "approve": ("read",),
    "export": ("read",),
    "create": (),
    "read": (),
    "delete": (),
}

KEY_SEPARATOR = "."


def is_valid_action(action: str) -> bool:
    return action in ACTION_HIERARCHY


@lru_cache(maxsize=None)
def expand_action(action: str) -> frozenset[str]:
    """Return the action plus every finer action it implies, transitively."""
    expanded = {action}
    stack = list(ACTION_HIERARCHY.get(action, ()))
    while stack:
        child = stack.pop()
        if child in expanded:
            continue
        expanded.add(child)
        stack.extend(ACTION_HIERARCHY.get(child, ()))
    return frozenset(expanded)


def action_satisfies(granted_action: str, required_action: str) -> bool:
    """True if holding granted_action is enough for required_action."""
    return required_action in expand_action(granted_action)


@lru_cache(maxsize=None)
def coarser_actions(required_action: str) -> Tuple[str, ...]:
    """
    Actions that would also satisfy required_action, excluding itself.

    Returned in ACTIONS declaration order, so "manage" is always tried first.
    Unknown actions have no coarser actions.
    """
    if required_action not in ACTION_HIERARCHY:
        return ()
    return tuple(
        action for action in ACTIONS
        if action != required_action and action_satisfies(action, required_action)
    )


def build_permission_key(module_path: str, action: str) -> str:
    """Build "accounting.invoices" + "delete" into "accounting.invoices.delete"."""
    return f"{module_path}{KEY_SEPARATOR}{action}"


def parse_permission_key(permission_key: str) -> Tuple[str, str]:
    """
    Split a permission key into (module_path, action) on the last separator.

    Raises:
        ValueError: If the key has no module path or no action
    """
    module_path, sep, action = permission_key.rpartition(KEY_SEPARATOR)
    if not sep or not module_path or not action:
        raise ValueError(f"Invalid permission key format: {permission_key!r}")
    return module_path, action


def coarser_permission_keys(permission_key: str) -> list[str]:
    """
    Candidate keys whose grant would also satisfy permission_key.

    Candidates share the module path of the requested key, e.g.
    "accounting.invoices.read" -> ["accounting.invoices.manage",
    "accounting.invoices.update", ...]. Malformed keys have no candidates.
    """
    try:
        module_path, action = parse_permission_key(permission_key)
    except ValueError:
        return []
    return [build_permission_key(module_path, coarser) for coarser in coarser_actions(action)]
