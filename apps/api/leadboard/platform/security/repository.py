from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import apply_visibility_filter, is_visible


class BaseRepository:
    resource = ""
    # attribute names compared against the principal's team
    scope_fields: tuple[str, ...] = ()

    def __init__(self, model: Any) -> None:
        self.model = model

    def apply_scope_query(self, query: Select[Any], principal: Principal | None, team_ids: list[str]) -> Select[Any]:
        columns = [getattr(self.model, name) for name in self.scope_fields]
        return apply_visibility_filter(query, columns, principal, team_ids)

    def can_view(self, record: Any, principal: Principal | None, team_ids: list[str]) -> bool:
        values = [getattr(record, name) for name in self.scope_fields]
        return is_visible(values, principal, team_ids)
