"""Role-based data scoping.

Admins see every row, managers see rows owned by members of the teams they
manage plus their own, everyone else sees only their own rows. The result is
a structured predicate; storage backends render it into their own query
language.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

from fastapi_permguard.stores import RoleLevel


class ScopeKind(StrEnum):
    ALL = "all"
    TEAM = "team"
    OWN = "own"


class ScopeOperator(StrEnum):
    ALWAYS_TRUE = "always-true"
    EQ = "eq"
    IN_TEAMS = "in-teams"
    OR = "or"


@dataclass(frozen=True, slots=True)
class ScopeCondition:
    """A filter node.

    ``EQ``: ``field`` equals ``values[0]``. ``IN_TEAMS``: the user in
    ``field`` is a member of any team in ``values``. ``OR``: any of
    ``operands`` holds.
    """

    op: ScopeOperator
    field: str | None = None
    values: tuple[Any, ...] = ()
    operands: tuple["ScopeCondition", ...] = ()

    @property
    def params(self) -> list[Any]:
        """Bound values in the order they appear in the predicate."""
        if self.op is ScopeOperator.OR:
            return [value for operand in self.operands for value in operand.params]
        return list(self.values)

    def matches(self, owner_id: Any, owner_team_ids: Iterable[Any] = ()) -> bool:
        """Evaluate the predicate for a single row.

        Args:
            owner_id: Value of the scoped column on the row.
            owner_team_ids: Teams the row's owner belongs to.
        """
        if self.op is ScopeOperator.ALWAYS_TRUE:
            return True
        if self.op is ScopeOperator.EQ:
            return bool(self.values) and owner_id == self.values[0]
        if self.op is ScopeOperator.IN_TEAMS:
            return any(team_id in self.values for team_id in owner_team_ids)
        team_ids = tuple(owner_team_ids)
        return any(operand.matches(owner_id, team_ids) for operand in self.operands)


ALWAYS_TRUE = ScopeCondition(ScopeOperator.ALWAYS_TRUE)


@dataclass(frozen=True, slots=True)
class DataLevelContext:
    user_id: Any
    user_role: RoleLevel
    team_ids: tuple[Any, ...] = ()
    department_id: Any | None = None


@dataclass(frozen=True, slots=True)
class DataScope:
    condition: ScopeCondition
    params: list[Any]
    description: str
    kind: ScopeKind
    user_id: Any
    team_ids: tuple[Any, ...] = ()


def _own_scope(context: DataLevelContext, field: str, description: str) -> DataScope:
    condition = ScopeCondition(ScopeOperator.EQ, field=field, values=(context.user_id,))
    return DataScope(
        condition=condition,
        params=condition.params,
        description=description,
        kind=ScopeKind.OWN,
        user_id=context.user_id,
    )


def build_scope(
    context: DataLevelContext,
    target_table: str = "",
    user_id_column: str = "user_id",
    include_own_in_team_scope: bool = True,
) -> DataScope:
    """Build the row filter a caller is restricted to.

    Args:
        context: The caller's role level and managed teams.
        target_table: Optional table or alias qualifying the column.
        user_id_column: Column holding the owning user's id.
        include_own_in_team_scope: Whether a manager's team scope also covers
            rows the manager owns.

    Returns:
        The data scope. A manager without teams gets the same own-rows
        predicate as a regular user.
    """
    field = f"{target_table}.{user_id_column}" if target_table else user_id_column

    if context.user_role == RoleLevel.ADMIN:
        logger.debug(f"Data scope for user {context.user_id}: full access")
        return DataScope(
            condition=ALWAYS_TRUE,
            params=[],
            description="Admin: full access to all records",
            kind=ScopeKind.ALL,
            user_id=context.user_id,
        )

    if context.user_role == RoleLevel.MANAGER:
        if context.team_ids:
            teams = ScopeCondition(ScopeOperator.IN_TEAMS, field=field, values=tuple(context.team_ids))
            if include_own_in_team_scope:
                own = ScopeCondition(ScopeOperator.EQ, field=field, values=(context.user_id,))
                condition = ScopeCondition(ScopeOperator.OR, operands=(teams, own))
                suffix = " and own data"
            else:
                condition = teams
                suffix = ""
            team_list = ", ".join(str(team_id) for team_id in context.team_ids)
            logger.debug(f"Data scope for user {context.user_id}: teams [{team_list}]")
            return DataScope(
                condition=condition,
                params=condition.params,
                description=f"Manager: access to team members (teams: {team_list}){suffix}",
                kind=ScopeKind.TEAM,
                user_id=context.user_id,
                team_ids=tuple(context.team_ids),
            )

        logger.debug(f"Data scope for user {context.user_id}: own data only (manager without teams)")
        return _own_scope(context, field, "Manager (no team): access to own data only")

    logger.debug(f"Data scope for user {context.user_id}: own data only")
    return _own_scope(context, field, "User: access to own data only")
