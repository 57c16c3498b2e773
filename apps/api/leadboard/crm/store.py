"""Lead persistence with a change feed.

Every committed insert, update or delete publishes a ``crm.lead.changed``
envelope on the in-process bus. Subscribers get a :class:`LeadChange` and are
expected to re-fetch whatever they display rather than patch it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadboard import events
from leadboard.core.errors import PersistenceError
from leadboard.core.events import InProcessEventBus, InternalEvent, event_bus
from leadboard.crm.models import CRMLead, utcnow
from leadboard.crm.repositories import LeadRepository
from leadboard.metrics import observe_persistence_failure
from leadboard.platform.security.context import Principal


logger = logging.getLogger("leadboard.crm.store")

LEAD_CHANGED_EVENT = "crm.lead.changed"
TRACKED_FIELDS = ("name", "email", "phone", "company", "value", "status", "tags", "assigned_to", "notes", "source")


@dataclass
class LeadChange:
    operation: str
    lead_id: str
    tenant_id: str | None
    actor_user_id: str | None
    assigned_to: str | None
    owner_user_id: str | None
    status: str | None
    changed_fields: list[str] = field(default_factory=list)
    lead: dict[str, Any] | None = None

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> LeadChange:
        payload = envelope.get("payload") or {}
        return cls(
            operation=str(payload.get("operation")),
            lead_id=str(payload.get("lead_id")),
            tenant_id=envelope.get("tenant_id"),
            actor_user_id=envelope.get("actor_user_id"),
            assigned_to=payload.get("assigned_to"),
            owner_user_id=payload.get("owner_user_id"),
            status=payload.get("status"),
            changed_fields=list(payload.get("changed_fields") or []),
            lead=payload.get("lead"),
        )


LeadChangeHandler = Callable[[LeadChange], None]


class Subscription:
    def __init__(self, bus: InProcessEventBus, handler: LeadChangeHandler) -> None:
        self._bus = bus
        self._handler = handler
        self.active = True
        bus.subscribe(LEAD_CHANGED_EVENT, self._dispatch)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self._bus.unsubscribe(LEAD_CHANGED_EVENT, self._dispatch)
        self.active = False

    def _dispatch(self, event: InternalEvent) -> None:
        try:
            self._handler(LeadChange.from_envelope(event.payload))
        except Exception as exc:
            logger.exception("lead_store.subscriber_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def lead_snapshot(lead: CRMLead) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "value": str(lead.value) if lead.value is not None else "0",
        "status": lead.status,
        "tags": list(lead.tags or []),
        "assigned_to": lead.assigned_to,
        "owner_user_id": lead.owner_user_id,
        "notes": lead.notes,
        "source": lead.source,
        "created_at": lead.created_at.isoformat() if lead.created_at else None,
        "updated_at": lead.updated_at.isoformat() if lead.updated_at else None,
    }


def _store_diagnostic(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original) if original is not None else str(exc)


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, Decimal) or isinstance(right, Decimal):
        try:
            return Decimal(str(left)) == Decimal(str(right))
        except ArithmeticError:
            return False
    return left == right


class LeadStore:
    def __init__(self, repository: LeadRepository | None = None, bus: InProcessEventBus | None = None) -> None:
        self.repository = repository or LeadRepository()
        self.bus = bus or event_bus

    def get(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        try:
            return session.get(CRMLead, lead_id)
        except SQLAlchemyError as exc:
            observe_persistence_failure("crm.lead", "read")
            raise PersistenceError("Failed to load lead", details=_store_diagnostic(exc)) from exc

    def get_visible(
        self,
        session: Session,
        principal: Principal | None,
        team_ids: list[str],
        lead_id: uuid.UUID,
    ) -> CRMLead | None:
        lead = self.get(session, lead_id)
        if lead is None or not self.repository.can_view(lead, principal, team_ids):
            return None
        return lead

    def query(
        self,
        session: Session,
        principal: Principal | None,
        team_ids: list[str],
        *,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CRMLead]:
        if principal is None:
            return []
        filters = dict(filters or {})
        tag = filters.pop("tag", None)
        stmt = self.repository.apply_scope_query(select(CRMLead), principal, team_ids)
        stmt = self.repository.apply_filters(stmt, filters)
        stmt = stmt.order_by(CRMLead.created_at.desc(), CRMLead.id.asc())
        if not tag:
            stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
        try:
            leads = list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            observe_persistence_failure("crm.lead", "query")
            raise PersistenceError("Failed to load leads", details=_store_diagnostic(exc)) from exc
        if not tag:
            return leads
        # tag membership is matched on the decoded list; JSON text encodings differ per dialect
        tagged = [lead for lead in leads if tag in (lead.tags or [])]
        end = offset + limit if limit is not None else None
        return tagged[offset:end]

    def insert(
        self,
        session: Session,
        values: dict[str, Any],
        *,
        actor_user_id: str | None,
        tenant_id: str | None,
    ) -> CRMLead:
        lead = CRMLead(**values)
        try:
            session.add(lead)
            session.commit()
            session.refresh(lead)
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("crm.lead", "insert")
            raise PersistenceError("Failed to save lead", details=_store_diagnostic(exc)) from exc

        changed = [name for name in TRACKED_FIELDS if getattr(lead, name) not in (None, "", [])]
        self._publish("insert", lead, changed, actor_user_id=actor_user_id, tenant_id=tenant_id)
        return lead

    def update(
        self,
        session: Session,
        lead: CRMLead,
        values: dict[str, Any],
        *,
        actor_user_id: str | None,
        tenant_id: str | None,
    ) -> CRMLead:
        return self.update_many(session, [lead], values, actor_user_id=actor_user_id, tenant_id=tenant_id)[0]

    def update_many(
        self,
        session: Session,
        leads: list[CRMLead],
        values: dict[str, Any],
        *,
        actor_user_id: str | None,
        tenant_id: str | None,
    ) -> list[CRMLead]:
        changes: list[tuple[CRMLead, list[str]]] = []
        try:
            for lead in leads:
                changed = [
                    name for name, value in values.items() if name in TRACKED_FIELDS and not _same(getattr(lead, name), value)
                ]
                for name, value in values.items():
                    setattr(lead, name, value)
                if "updated_at" not in values:
                    lead.updated_at = utcnow()
                changes.append((lead, changed))
            session.commit()
            for lead in leads:
                session.refresh(lead)
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("crm.lead", "update")
            raise PersistenceError("Failed to update lead", details=_store_diagnostic(exc)) from exc

        for lead, changed in changes:
            self._publish("update", lead, changed, actor_user_id=actor_user_id, tenant_id=tenant_id)
        return leads

    def delete(
        self,
        session: Session,
        leads: list[CRMLead],
        *,
        actor_user_id: str | None,
        tenant_id: str | None,
    ) -> list[uuid.UUID]:
        snapshots = [lead_snapshot(lead) for lead in leads]
        deleted_ids = [lead.id for lead in leads]
        try:
            for lead in leads:
                session.delete(lead)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("crm.lead", "delete")
            raise PersistenceError("Failed to delete leads", details=_store_diagnostic(exc)) from exc

        for snapshot in snapshots:
            self._publish_payload(
                {
                    "operation": "delete",
                    "lead_id": snapshot["id"],
                    "assigned_to": snapshot["assigned_to"],
                    "owner_user_id": snapshot["owner_user_id"],
                    "status": snapshot["status"],
                    "changed_fields": [],
                    "lead": snapshot,
                },
                actor_user_id=actor_user_id,
                tenant_id=tenant_id,
            )
        return deleted_ids

    def subscribe(self, handler: LeadChangeHandler) -> Subscription:
        return Subscription(self.bus, handler)

    def _publish(
        self,
        operation: str,
        lead: CRMLead,
        changed_fields: list[str],
        *,
        actor_user_id: str | None,
        tenant_id: str | None,
    ) -> None:
        self._publish_payload(
            {
                "operation": operation,
                "lead_id": str(lead.id),
                "assigned_to": lead.assigned_to,
                "owner_user_id": lead.owner_user_id,
                "status": lead.status,
                "changed_fields": changed_fields,
                "lead": lead_snapshot(lead),
            },
            actor_user_id=actor_user_id,
            tenant_id=tenant_id,
        )

    def _publish_payload(self, payload: dict[str, Any], *, actor_user_id: str | None, tenant_id: str | None) -> None:
        events.publish(events.build_envelope(LEAD_CHANGED_EVENT, actor_user_id, tenant_id, payload), self.bus)


lead_store = LeadStore()
