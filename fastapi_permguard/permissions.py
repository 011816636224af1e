from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

WILDCARD = "*"
SEPARATOR = "."
SYSTEM_ADMIN = "system.admin"


class MatchType(StrEnum):
    EXACT = "exact"
    WILDCARD = "wildcard"
    HIERARCHY = "hierarchy"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class PermissionCheckResult:
    """Outcome of a single permission check."""

    granted: bool
    matched_permission: str | None = None
    match_type: MatchType | None = None
    missing_permissions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AllCheckResult:
    """Outcome of an AND-check: every missing permission is reported."""

    granted: bool
    missing_permissions: list[str]


def contains_wildcard(permission: str) -> bool:
    """Check if a permission contains a wildcard."""
    return WILDCARD in permission


def is_valid_permission_name(name: str) -> bool:
    """Check that a name is a dotted namespace with at least two non-empty segments."""
    if not name:
        return False
    parts = name.split(SEPARATOR)
    return len(parts) >= 2 and all(parts)


def admin_override(user_permissions: Iterable[str]) -> str | None:
    """Return the universal override held by the user, if any.

    ``system.admin`` wins over the bare ``*`` when both are held.
    """
    held = set(user_permissions)
    if SYSTEM_ADMIN in held:
        return SYSTEM_ADMIN
    if WILDCARD in held:
        return WILDCARD
    return None


def match_pattern(pattern: str, target: str) -> bool:
    """Match a single wildcard pattern against a concrete permission name.

    ``*`` matches exactly one segment. A trailing ``*`` matches one or more
    remaining segments: 'users.*.view' matches 'users.profile.view' and
    'reports.export.*' matches 'reports.export.pdf.signed'.
    """
    if not pattern or not target:
        return False

    pattern_parts = pattern.split(SEPARATOR)
    target_parts = target.split(SEPARATOR)

    if pattern_parts[-1] == WILDCARD:
        if len(target_parts) < len(pattern_parts):
            return False
        prefix = pattern_parts[:-1]
    else:
        if len(pattern_parts) != len(target_parts):
            return False
        prefix = pattern_parts

    for i, part in enumerate(prefix):
        if part != WILDCARD and part != target_parts[i]:
            return False
    return True


def match_wildcard(user_permissions: Iterable[str], target: str) -> str | None:
    """Find the first wildcard permission held by the user that covers ``target``.

    Universal overrides (``system.admin``, ``*``) are not considered here;
    callers test them first via :func:`admin_override`.

    Args:
        user_permissions: Permission names held by the user.
        target: The concrete permission being checked.

    Returns:
        The matching wildcard permission, or None.
    """
    if not target:
        return None

    target_category = target.split(SEPARATOR, 1)[0]

    for held in user_permissions:
        if not held or not contains_wildcard(held):
            continue

        parts = held.split(SEPARATOR)

        # category.* covers the whole category at any depth
        if len(parts) == 2 and parts[1] == WILDCARD and parts[0] != WILDCARD:
            if parts[0] == target_category:
                return held
            continue

        if match_pattern(held, target):
            return held

    return None


def implies(held: str, required: str) -> bool:
    """Check if a held permission implies (grants) a required permission.

    Supports wildcards: 'report.*' implies 'report.read', 'report.export.pdf', etc.
    'system.admin' and '*' imply everything.
    """
    if not held or not required:
        return False
    if held == required:
        return True
    if held in (SYSTEM_ADMIN, WILDCARD):
        return True
    return match_wildcard((held,), required) is not None
