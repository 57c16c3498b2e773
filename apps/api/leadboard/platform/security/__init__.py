from leadboard.platform.security.context import ROLE_MASTER, ROLE_USER, Principal
from leadboard.platform.security.repository import BaseRepository
from leadboard.platform.security.visibility import (
    UserStats,
    apply_visibility_filter,
    get_all_assignable_users,
    get_team_ids,
    get_team_members,
    get_user_stats,
    is_visible,
)

__all__ = [
    "ROLE_MASTER",
    "ROLE_USER",
    "Principal",
    "BaseRepository",
    "UserStats",
    "apply_visibility_filter",
    "get_all_assignable_users",
    "get_team_ids",
    "get_team_members",
    "get_user_stats",
    "is_visible",
]
