"""Sale records partitioned by author.

Nothing is stored twice: the team view a master sees is computed at read time
from the partitions of every author in its team.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadboard import audit
from leadboard.core.errors import NotFound, PermissionDenied, PersistenceError, ValidationError
from leadboard.crm.models import CRMSale, time_based_id, utcnow
from leadboard.crm.repositories import SaleRepository
from leadboard.crm.schemas import SaleCreate, SaleListRead, SaleRead, SalesSummary
from leadboard.crm.store import LeadStore, lead_store
from leadboard.metrics import observe_persistence_failure, observe_sale_recorded, observe_visibility_denied
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_team_ids


logger = logging.getLogger("leadboard.crm.sales")

CENT = Decimal("0.01")


def _money(value: Decimal | int | float | None) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def summarize(sales: Iterable[SaleRead | CRMSale]) -> SalesSummary:
    """Completed and entry values are reported apart; only the ticket uses both."""

    total_revenue = Decimal("0")
    total_entries = Decimal("0")
    count = 0
    for sale in sales:
        count += 1
        if sale.status == "completed":
            total_revenue += _money(sale.value)
        elif sale.status == "entry":
            total_entries += _money(sale.value)
    combined_total = total_revenue + total_entries
    average_ticket = (combined_total / count).quantize(CENT, rounding=ROUND_HALF_UP) if count else Decimal("0.00")
    return SalesSummary(
        total_revenue=total_revenue.quantize(CENT),
        total_entries=total_entries.quantize(CENT),
        combined_total=combined_total.quantize(CENT),
        count=count,
        average_ticket=average_ticket,
    )


class SalesLedger:
    entity_type = "crm.sale"

    def __init__(self, store: LeadStore | None = None) -> None:
        self.repository = SaleRepository()
        self.lead_store = store or lead_store

    def record_sale(self, session: Session, principal: Principal | None, dto: SaleCreate) -> SaleRead:
        principal = self._require_principal(principal, "create")
        self._validate(dto)
        self._ensure_lead_visible(session, principal, dto)

        now = utcnow()
        sale = CRMSale(
            id=time_based_id(),
            customer_name=dto.customer_name.strip(),
            customer_email=dto.customer_email.strip(),
            customer_phone=dto.customer_phone.strip(),
            product=dto.product.strip(),
            value=dto.value,
            status=dto.status,
            tags=list(dict.fromkeys(tag.strip() for tag in dto.tags if tag.strip())),
            appointment_date=dto.appointment_date,
            completed_at=now,
            user_id=principal.user_id,
            team_owner_id=principal.team_owner_id,
            lead_id=dto.lead_id,
            notes=dto.notes,
        )
        try:
            session.add(sale)
            session.commit()
            session.refresh(sale)
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure(self.entity_type, "insert")
            raise PersistenceError("Failed to save sale", details=str(getattr(exc, "orig", None) or exc)) from exc

        created = SaleRead.model_validate(sale)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=str(sale.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=principal.correlation_id,
        )
        observe_sale_recorded(sale.status)
        logger.info("crm.sale_recorded", extra={"sale_id": str(sale.id), "user_id": principal.user_id, "status": sale.status})
        return created

    def update_sale(self, session: Session, principal: Principal | None, sale_id: int, dto: SaleCreate) -> SaleRead:
        principal = self._require_principal(principal, "update")
        self._validate(dto)
        sale = self._get_visible(session, principal, sale_id)
        self._ensure_lead_visible(session, principal, dto)

        before = SaleRead.model_validate(sale).model_dump(mode="json")
        # author and completion time belong to the original record
        sale.customer_name = dto.customer_name.strip()
        sale.customer_email = dto.customer_email.strip()
        sale.customer_phone = dto.customer_phone.strip()
        sale.product = dto.product.strip()
        sale.value = dto.value
        sale.status = dto.status
        sale.tags = list(dict.fromkeys(tag.strip() for tag in dto.tags if tag.strip()))
        sale.appointment_date = dto.appointment_date
        sale.lead_id = dto.lead_id
        sale.notes = dto.notes
        try:
            session.commit()
            session.refresh(sale)
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure(self.entity_type, "update")
            raise PersistenceError("Failed to update sale", details=str(getattr(exc, "orig", None) or exc)) from exc

        updated = SaleRead.model_validate(sale)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=str(sale.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=principal.correlation_id,
        )
        return updated

    def delete_sale(self, session: Session, principal: Principal | None, sale_id: int) -> None:
        if principal is None or not principal.is_master:
            observe_visibility_denied(self.entity_type, "delete")
            raise PermissionDenied("Only masters can delete sales")
        sale = self._get_visible(session, principal, sale_id)

        before = SaleRead.model_validate(sale).model_dump(mode="json")
        try:
            session.delete(sale)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure(self.entity_type, "delete")
            raise PersistenceError("Failed to delete sale", details=str(getattr(exc, "orig", None) or exc)) from exc

        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=str(sale_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=principal.correlation_id,
        )

    def author_partition(self, session: Session, author_id: str) -> list[SaleRead]:
        stmt = self.repository.partition_query(select(CRMSale), author_id).order_by(CRMSale.completed_at.desc())
        return [SaleRead.model_validate(sale) for sale in self._scalars(session, stmt)]

    def team_sales(self, session: Session, principal: Principal | None, *, status: str | None = None) -> list[SaleRead]:
        if principal is None:
            return []
        team_ids = get_team_ids(session, principal)
        stmt = self.repository.apply_scope_query(select(CRMSale), principal, team_ids)
        if status:
            stmt = stmt.where(CRMSale.status == status)
        stmt = stmt.order_by(CRMSale.completed_at.desc(), CRMSale.id.desc())
        return [SaleRead.model_validate(sale) for sale in self._scalars(session, stmt)]

    def list_sales(self, session: Session, principal: Principal | None, *, status: str | None = None) -> SaleListRead:
        items = self.team_sales(session, principal, status=status)
        return SaleListRead(items=items, summary=summarize(items))

    def _scalars(self, session: Session, stmt) -> list[CRMSale]:  # type: ignore[no-untyped-def]
        try:
            return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            observe_persistence_failure(self.entity_type, "query")
            raise PersistenceError("Failed to load sales", details=str(getattr(exc, "orig", None) or exc)) from exc

    def _get_visible(self, session: Session, principal: Principal, sale_id: int) -> CRMSale:
        sale = session.get(CRMSale, sale_id)
        if sale is None or not self.repository.can_view(sale, principal, get_team_ids(session, principal)):
            raise NotFound("Sale not found")
        return sale

    def _ensure_lead_visible(self, session: Session, principal: Principal, dto: SaleCreate) -> None:
        if dto.lead_id is None:
            return
        lead = self.lead_store.get_visible(session, principal, get_team_ids(session, principal), dto.lead_id)
        if lead is None:
            raise ValidationError("Linked lead not found", details={"lead_id": str(dto.lead_id)})

    @staticmethod
    def _validate(dto: SaleCreate) -> None:
        missing = [
            name
            for name in ("customer_name", "customer_email", "product")
            if not str(getattr(dto, name) or "").strip()
        ]
        if dto.value is None or dto.value <= 0:
            missing.append("value")
        if missing:
            raise ValidationError("Missing required fields", details={"required": missing})

    @staticmethod
    def _require_principal(principal: Principal | None, operation: str) -> Principal:
        if principal is None:
            observe_visibility_denied("crm.sale", operation)
            raise PermissionDenied("Authentication required")
        return principal


sales_ledger = SalesLedger()
