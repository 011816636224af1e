"""Permission hierarchy: parent grants cascade down to child permissions."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from fastapi_permguard.permissions import implies, match_wildcard
from fastapi_permguard.stores import PermissionRow


@dataclass
class PermissionHierarchyNode:
    name: str
    category: str | None = None
    parent_permission: str | None = None
    children: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class InheritanceChain:
    """What a permission inherits from (nearest first) and what it grants."""

    permission: str
    inherits_from: list[str]
    grants_to: list[str]


Hierarchy = dict[str, PermissionHierarchyNode]


def build_hierarchy(rows: Iterable[PermissionRow]) -> Hierarchy:
    """Build the node map, then derive each node's children in a second pass."""
    hierarchy: Hierarchy = {}
    for row in rows:
        if row.name in hierarchy:
            continue
        hierarchy[row.name] = PermissionHierarchyNode(
            name=row.name,
            category=row.category,
            parent_permission=row.parent_name,
        )

    for name, node in hierarchy.items():
        parent = hierarchy.get(node.parent_permission) if node.parent_permission else None
        if parent is not None and name not in parent.children:
            parent.children.append(name)

    return hierarchy


def find_cycles(hierarchy: Hierarchy) -> list[list[str]]:
    """Return every parent-link cycle in the hierarchy, each listed once."""
    cycles: list[list[str]] = []
    seen_members: set[str] = set()

    for start in hierarchy:
        path: list[str] = []
        position: dict[str, int] = {}
        current: str | None = start
        while current is not None and current in hierarchy and current not in seen_members:
            if current in position:
                cycles.append(path[position[current] :])
                break
            position[current] = len(path)
            path.append(current)
            current = hierarchy[current].parent_permission
        seen_members.update(path)

    return cycles


def resolve_via_hierarchy(
    hierarchy: Hierarchy,
    user_permissions: Sequence[str],
    target: str,
    max_hops: int | None = None,
) -> str | None:
    """Walk parent links above ``target`` looking for an ancestor the user holds.

    Each ancestor is tested by exact membership and then by wildcard match
    against the user's permissions.

    Args:
        hierarchy: Node map from :func:`build_hierarchy`.
        user_permissions: Permission names held by the user.
        target: The permission being checked.
        max_hops: Upper bound on ancestors visited. Defaults to the
            hierarchy size plus one.

    Returns:
        The name of the first granting ancestor, or None. A walk that
        revisits a node or exceeds ``max_hops`` is aborted and yields None.
    """
    node = hierarchy.get(target)
    if node is None or not node.parent_permission:
        return None

    held = set(user_permissions)
    limit = max_hops if max_hops is not None else len(hierarchy) + 1
    visited = {target}
    hops = 0
    current: str | None = node.parent_permission

    while current:
        if current in visited or hops >= limit:
            logger.warning(
                f"Permission hierarchy walk for '{target}' aborted at '{current}' after {hops} hops; "
                "check the hierarchy for cycles"
            )
            return None
        visited.add(current)
        hops += 1

        if current in held or match_wildcard(user_permissions, current):
            return current

        parent = hierarchy.get(current)
        current = parent.parent_permission if parent else None

    return None


def _descendants(hierarchy: Hierarchy, name: str) -> list[str]:
    result: list[str] = []
    visited = {name}
    stack = list(reversed(hierarchy[name].children)) if name in hierarchy else []
    while stack:
        child = stack.pop()
        if child in visited:
            continue
        visited.add(child)
        result.append(child)
        node = hierarchy.get(child)
        if node is not None:
            stack.extend(reversed(node.children))
    return result


def inheritance_chain(hierarchy: Hierarchy, name: str) -> InheritanceChain:
    node = hierarchy.get(name)
    if node is None:
        return InheritanceChain(permission=name, inherits_from=[], grants_to=[])

    ancestors: list[str] = []
    current = node.parent_permission
    while current and current != name and current not in ancestors:
        ancestors.append(current)
        parent = hierarchy.get(current)
        current = parent.parent_permission if parent else None

    return InheritanceChain(permission=name, inherits_from=ancestors, grants_to=_descendants(hierarchy, name))


def grants_access_to(hierarchy: Hierarchy, held: str, target: str) -> bool:
    """Check if holding ``held`` grants ``target`` directly, by wildcard, or by descent."""
    if implies(held, target):
        return True
    return target in _descendants(hierarchy, held)


def expand_permissions(hierarchy: Hierarchy, direct: Iterable[str]) -> list[str]:
    """Expand directly held permissions with everything they cascade to."""
    expanded: list[str] = []
    for name in direct:
        for granted in (name, *_descendants(hierarchy, name)):
            if granted not in expanded:
                expanded.append(granted)
    return expanded
