from __future__ import annotations

from typing import Any

from sqlalchemy import Select, or_

from leadboard.crm.models import CRMLead, CRMSale
from leadboard.platform.security.repository import BaseRepository


class LeadRepository(BaseRepository):
    resource = "crm.lead"
    scope_fields = ("assigned_to", "owner_user_id")

    def __init__(self) -> None:
        super().__init__(CRMLead)

    def apply_filters(self, query: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        if filters.get("status"):
            query = query.where(CRMLead.status == filters["status"])
        if filters.get("assigned_user"):
            user_id = str(filters["assigned_user"])
            query = query.where(or_(CRMLead.assigned_to == user_id, CRMLead.owner_user_id == user_id))
        if filters.get("source"):
            query = query.where(CRMLead.source == filters["source"])
        if filters.get("q"):
            term = f"%{filters['q']}%"
            query = query.where(
                or_(
                    CRMLead.name.ilike(term),
                    CRMLead.email.ilike(term),
                    CRMLead.phone.ilike(term),
                    CRMLead.company.ilike(term),
                )
            )
        return query


class SaleRepository(BaseRepository):
    """Sales are partitioned by author; a team view is the union of visible partitions."""

    resource = "crm.sale"
    scope_fields = ("user_id",)

    def __init__(self) -> None:
        super().__init__(CRMSale)

    def partition_query(self, query: Select[Any], author_id: str) -> Select[Any]:
        return query.where(CRMSale.user_id == author_id)
