"""Team-scoped read/write visibility.

A master sees every record whose scope fields point at itself or one of its
team members. A plain user only sees records scoped directly to itself. A
missing principal sees nothing.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypedDict

from sqlalchemy import false, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from leadboard.identity.models import Profile
from leadboard.platform.security.context import Principal


class UserStats(TypedDict):
    total_users: int
    active_users: int
    administrators: int


def get_team_members(session: Session, principal: Principal | None) -> list[Profile]:
    if principal is None or not principal.is_master:
        return []
    stmt = (
        select(Profile)
        .where(Profile.master_account_id == principal.user_id)
        .order_by(Profile.created_at.asc(), Profile.id.asc())
    )
    return list(session.scalars(stmt).all())


def get_all_assignable_users(session: Session, principal: Principal | None) -> list[Profile]:
    if principal is None:
        return []
    own_profile = session.get(Profile, principal.user_id)
    assignable = [own_profile] if own_profile is not None else []
    return assignable + get_team_members(session, principal)


def get_team_ids(session: Session, principal: Principal | None) -> list[str]:
    """Ids a principal's scope covers: self plus members for masters, self for users."""

    if principal is None:
        return []
    if not principal.is_master:
        return [principal.user_id]
    return [principal.user_id] + [member.id for member in get_team_members(session, principal)]


def get_user_stats(session: Session, principal: Principal | None) -> UserStats:
    if principal is None or not principal.is_master:
        # Placeholder for non-masters; they are not shown their own team numbers.
        return {"total_users": 0, "active_users": 0, "administrators": 1}

    members = get_team_members(session, principal)
    return {
        "total_users": len(members) + 1,
        "active_users": sum(1 for member in members if member.is_active) + 1,
        "administrators": 1,
    }


def is_visible(scope_values: Sequence[str | None], principal: Principal | None, team_ids: Sequence[str]) -> bool:
    if principal is None:
        return False
    if principal.is_master:
        allowed = set(team_ids) | {principal.user_id}
        return any(value in allowed for value in scope_values if value is not None)
    return any(value == principal.user_id for value in scope_values)


def apply_visibility_filter(
    query: Select[Any],
    columns: Sequence[Any],
    principal: Principal | None,
    team_ids: Sequence[str],
) -> Select[Any]:
    if principal is None or not columns:
        return query.where(false())

    if principal.is_master:
        allowed = sorted(set(team_ids) | {principal.user_id})
        return query.where(or_(*[column.in_(allowed) for column in columns]))
    return query.where(or_(*[column == principal.user_id for column in columns]))
