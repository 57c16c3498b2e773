from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from leadboard import audit
from leadboard.core.errors import NotFound, PermissionDenied, ValidationError
from leadboard.crm.models import CRMLead, utcnow
from leadboard.crm.pipeline import authorize_transition, validate_status
from leadboard.crm.schemas import LeadBulkResult, LeadCreate, LeadRead, LeadUpdate
from leadboard.crm.store import LeadStore, lead_store
from leadboard.metrics import observe_visibility_denied
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_all_assignable_users, get_team_ids


logger = logging.getLogger("leadboard.crm.leads")


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Trimmed, blank-free, first occurrence wins."""

    seen: set[str] = set()
    normalized: list[str] = []
    for raw in tags or []:
        tag = str(raw).strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        normalized.append(tag)
    return normalized


class LeadService:
    entity_type = "crm.lead"

    def __init__(self, store: LeadStore | None = None) -> None:
        self.store = store or lead_store

    def create_lead(self, session: Session, principal: Principal | None, dto: LeadCreate) -> LeadRead:
        principal = self._require_principal(principal, "create")
        assigned_to = dto.assigned_to or principal.user_id
        self._ensure_assignable(session, principal, assigned_to)

        lead = self.store.insert(
            session,
            {
                "name": dto.name.strip(),
                "email": str(dto.email),
                "phone": dto.phone.strip(),
                "company": dto.company,
                "value": dto.value,
                "status": "new",
                "tags": normalize_tags(dto.tags),
                "assigned_to": assigned_to,
                "owner_user_id": principal.user_id,
                "notes": dto.notes,
                "source": dto.source,
            },
            actor_user_id=principal.user_id,
            tenant_id=principal.team_owner_id,
        )
        created = LeadRead.model_validate(lead)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=principal.correlation_id,
        )
        logger.info("crm.lead_created", extra={"lead_id": str(lead.id), "user_id": principal.user_id})
        return created

    def list_leads(
        self,
        session: Session,
        principal: Principal | None,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        if principal is None:
            return []
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        team_ids = get_team_ids(session, principal)
        leads = self.store.query(session, principal, team_ids, filters=filters, offset=offset, limit=limit)
        return [LeadRead.model_validate(lead) for lead in leads]

    def get_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get_visible(session, principal, lead_id))

    def update_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        principal = self._require_principal(principal, "update")
        lead = self._get_visible(session, principal, lead_id)

        payload = dto.model_dump(exclude_unset=True)
        for required in ("name", "email", "phone"):
            if required in payload and payload[required] is None:
                raise ValidationError(f"{required} cannot be empty")
        if payload.get("value") is None:
            payload.pop("value", None)

        requested_status = payload.get("status")
        if requested_status is not None and requested_status != lead.status:
            authorize_transition(principal)
            validate_status(requested_status)
        elif "status" in payload:
            payload.pop("status")

        if payload.get("assigned_to"):
            self._ensure_assignable(session, principal, payload["assigned_to"])
        elif "assigned_to" in payload:
            payload.pop("assigned_to")
        if "email" in payload:
            payload["email"] = str(payload["email"])
        if "tags" in payload:
            payload["tags"] = normalize_tags(payload["tags"])
        if not payload:
            return LeadRead.model_validate(lead)

        return self._apply_update(session, principal, lead, payload, "update")

    def add_tag(self, session: Session, principal: Principal | None, lead_id: uuid.UUID, tag: str) -> LeadRead:
        principal = self._require_principal(principal, "update")
        lead = self._get_visible(session, principal, lead_id)
        tags = normalize_tags([*(lead.tags or []), tag])
        if tags == list(lead.tags or []):
            return LeadRead.model_validate(lead)
        return self._apply_update(session, principal, lead, {"tags": tags}, "add_tag")

    def remove_tag(self, session: Session, principal: Principal | None, lead_id: uuid.UUID, tag: str) -> LeadRead:
        principal = self._require_principal(principal, "update")
        lead = self._get_visible(session, principal, lead_id)
        current = list(lead.tags or [])
        tags = [item for item in current if item != tag.strip()]
        if tags == current:
            return LeadRead.model_validate(lead)
        return self._apply_update(session, principal, lead, {"tags": tags}, "remove_tag")

    def bulk_assign(
        self,
        session: Session,
        principal: Principal | None,
        lead_ids: list[uuid.UUID],
        assigned_to: str,
    ) -> LeadBulkResult:
        principal = self._require_principal(principal, "assign")
        self._ensure_assignable(session, principal, assigned_to)
        leads = self._visible_many(session, principal, lead_ids)
        if not leads:
            return LeadBulkResult(affected=0, lead_ids=[])

        befores = {lead.id: LeadRead.model_validate(lead).model_dump(mode="json") for lead in leads}
        updated = self.store.update_many(
            session,
            leads,
            {"assigned_to": assigned_to},
            actor_user_id=principal.user_id,
            tenant_id=principal.team_owner_id,
        )
        for lead in updated:
            audit.record(
                actor_user_id=principal.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="assign",
                before=befores[lead.id],
                after=LeadRead.model_validate(lead).model_dump(mode="json"),
                correlation_id=principal.correlation_id,
            )
        return LeadBulkResult(affected=len(updated), lead_ids=[lead.id for lead in updated])

    def delete_leads(self, session: Session, principal: Principal | None, lead_ids: list[uuid.UUID]) -> LeadBulkResult:
        principal = self._require_principal(principal, "delete")
        leads = self._visible_many(session, principal, lead_ids)
        if not leads:
            return LeadBulkResult(affected=0, lead_ids=[])

        befores = {lead.id: LeadRead.model_validate(lead).model_dump(mode="json") for lead in leads}
        deleted = self.store.delete(
            session,
            leads,
            actor_user_id=principal.user_id,
            tenant_id=principal.team_owner_id,
        )
        for lead_id in deleted:
            audit.record(
                actor_user_id=principal.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead_id),
                action="delete",
                before=befores[lead_id],
                after=None,
                correlation_id=principal.correlation_id,
            )
        logger.info("crm.leads_deleted", extra={"user_id": principal.user_id, "status": str(len(deleted))})
        return LeadBulkResult(affected=len(deleted), lead_ids=deleted)

    def _apply_update(
        self,
        session: Session,
        principal: Principal,
        lead: CRMLead,
        payload: dict[str, Any],
        action: str,
    ) -> LeadRead:
        before = LeadRead.model_validate(lead).model_dump(mode="json")
        payload["updated_at"] = utcnow()
        updated_lead = self.store.update(
            session,
            lead,
            payload,
            actor_user_id=principal.user_id,
            tenant_id=principal.team_owner_id,
        )
        updated = LeadRead.model_validate(updated_lead)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action=action,
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=principal.correlation_id,
        )
        return updated

    def _get_visible(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> CRMLead:
        team_ids = get_team_ids(session, principal)
        lead = self.store.get_visible(session, principal, team_ids, lead_id)
        if lead is None:
            raise NotFound("Lead not found")
        return lead

    def _visible_many(self, session: Session, principal: Principal, lead_ids: list[uuid.UUID]) -> list[CRMLead]:
        team_ids = get_team_ids(session, principal)
        leads: list[CRMLead] = []
        for lead_id in dict.fromkeys(lead_ids):
            lead = self.store.get_visible(session, principal, team_ids, lead_id)
            if lead is not None:
                leads.append(lead)
        return leads

    def _ensure_assignable(self, session: Session, principal: Principal, user_id: str) -> None:
        assignable = {profile.id for profile in get_all_assignable_users(session, principal)}
        if user_id not in assignable:
            raise ValidationError("User cannot be assigned", details={"assigned_to": user_id})

    @staticmethod
    def _require_principal(principal: Principal | None, operation: str) -> Principal:
        if principal is None:
            observe_visibility_denied("crm.lead", operation)
            raise PermissionDenied("Authentication required")
        return principal


lead_service = LeadService()
