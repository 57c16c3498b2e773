"""Inbound webhook lead ingestion, webhook configuration and outgoing relay."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from leadboard import audit, events
from leadboard.core.config import get_settings
from leadboard.core.errors import NotFound, PermissionDenied, PersistenceError, ValidationError
from leadboard.core.events import InternalEvent
from leadboard.crm.models import time_based_id, utcnow
from leadboard.crm.schemas import WebhookCreate, WebhookRead
from leadboard.crm.settings import WEBHOOKS_KEY, TenantSettingStore, tenant_settings
from leadboard.crm.store import LeadChange, LeadStore, lead_snapshot, lead_store
from leadboard.identity.models import Profile
from leadboard.metrics import observe_outgoing_delivery, observe_visibility_denied, observe_webhook_lead
from leadboard.otel import get_tracer
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_team_ids


logger = logging.getLogger("leadboard.crm.webhooks")
tracer = get_tracer("leadboard.crm.webhooks")

REQUIRED_LEAD_FIELDS = ("name", "email", "phone")
REQUIRED_OUTGOING_FIELDS = ("event", "userId")
OUTGOING_REQUESTED_EVENT = "crm.webhook.outgoing_requested"
WEBHOOK_SOURCE_RE = re.compile(r"Webhook\s#(\d+)")
LIFECYCLE_EVENTS = {"insert": "lead.created", "update": "lead.updated", "delete": "lead.deleted"}
# Numeric(14, 2) upper bound of crm_lead.value
MAX_LEAD_VALUE = Decimal("999999999999.99")


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any]


def coerce_value(raw: Any) -> Decimal:
    if raw is None or raw == "" or isinstance(raw, bool):
        return Decimal("0")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not value.is_finite() or value < 0 or value > MAX_LEAD_VALUE:
        return Decimal("0")
    try:
        return value.quantize(Decimal("0.01"))
    except InvalidOperation:
        return Decimal("0")


def split_tags(raw: Any) -> list[str]:
    if raw is None:
        return []
    items: Iterable[Any] = raw.split(",") if isinstance(raw, str) else raw if isinstance(raw, list) else [raw]
    tags: list[str] = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def normalize_query(params: Iterable[tuple[str, str]]) -> dict[str, Any]:
    """Map query-string pairs onto the POST body shape; the last repeated key wins."""

    body: dict[str, Any] = {}
    for key, value in params:
        body[key] = value
    if isinstance(body.get("tags"), str):
        body["tags"] = split_tags(body["tags"])
    if isinstance(body.get("value"), str):
        body["value"] = coerce_value(body["value"])
    if isinstance(body.get("data"), str):
        try:
            body["data"] = json.loads(body["data"])
        except ValueError:
            pass
    return body


def _first_present(*candidates: Any) -> str | None:
    for candidate in candidates:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    return None


class WebhookGateway:
    def __init__(self, store: LeadStore | None = None) -> None:
        self.store = store or lead_store

    def resolve_owner(self, body: Mapping[str, Any], query_user_id: str | None) -> str:
        owner = _first_present(body.get("userId"), body.get("user_id"), query_user_id, body.get("assignedTo"))
        return owner or get_settings().webhook_owner_sentinel

    def resolve_tenant(self, session: Session, owner_id: str) -> str:
        """Team members file their leads under their master's tenant."""
        profile = session.get(Profile, owner_id)
        if profile is not None and profile.master_account_id:
            return profile.master_account_id
        return owner_id

    def build_lead_values(self, body: Mapping[str, Any], *, webhook_id: str | None, owner_id: str) -> dict[str, Any]:
        payload_data = body.get("data")
        notes = _first_present(body.get("notes"))
        if notes is None:
            notes = f"Lead received via webhook (ID: {webhook_id})" if webhook_id else "Lead received via webhook"
        if payload_data not in (None, "", {}, []):
            rendered = payload_data if isinstance(payload_data, str) else json.dumps(payload_data, default=str)
            notes = f"{notes} | Data: {rendered}"

        source = _first_present(body.get("source"))
        if source is None:
            source = f"Webhook #{webhook_id}" if webhook_id else "Webhook"

        return {
            "name": str(body["name"]).strip(),
            "email": str(body["email"]).strip(),
            "phone": str(body["phone"]).strip(),
            "company": _first_present(body.get("company")),
            "value": coerce_value(body.get("value")),
            # webhook leads always enter the first column
            "status": "new",
            "tags": split_tags(body.get("tags")),
            "assigned_to": owner_id,
            "owner_user_id": owner_id,
            "notes": notes,
            "source": source,
        }

    def ingest(
        self,
        session: Session,
        body: Mapping[str, Any],
        *,
        webhook_id: str | None,
        query_user_id: str | None,
        method: str = "POST",
    ) -> WebhookResult:
        missing = [name for name in REQUIRED_LEAD_FIELDS if _first_present(body.get(name)) is None]
        if missing:
            observe_webhook_lead(method, "rejected")
            logger.info("webhook.lead_rejected", extra={"webhook_id": webhook_id, "error": ",".join(missing)})
            return WebhookResult(400, {"error": "Missing required fields", "required": list(REQUIRED_LEAD_FIELDS)})

        owner_id = self.resolve_owner(body, query_user_id)
        tenant_id = self.resolve_tenant(session, owner_id)
        values = self.build_lead_values(body, webhook_id=webhook_id, owner_id=owner_id)

        with tracer.start_as_current_span("crm.webhook.ingest") as span:
            span.set_attribute("leadboard.webhook_id", webhook_id or "")
            span.set_attribute("leadboard.tenant_id", tenant_id)
            try:
                lead = self.store.insert(
                    session,
                    values,
                    actor_user_id=f"webhook:{webhook_id}" if webhook_id else "webhook",
                    tenant_id=tenant_id,
                )
            except PersistenceError as exc:
                observe_webhook_lead(method, "failed")
                logger.error(
                    "webhook.lead_save_failed",
                    extra={"webhook_id": webhook_id, "tenant_id": tenant_id, "error": str(exc.details)[:500]},
                )
                return WebhookResult(500, {"error": "Failed to save lead", "details": exc.details})
            span.set_attribute("leadboard.lead_id", str(lead.id))

        lead_data = lead_snapshot(lead)
        audit.record(
            actor_user_id=f"webhook:{webhook_id}" if webhook_id else "webhook",
            entity_type="crm.lead",
            entity_id=str(lead.id),
            action="webhook_ingest",
            before=None,
            after=lead_data,
        )
        observe_webhook_lead(method, "created")
        logger.info(
            "webhook.lead_ingested",
            extra={"webhook_id": webhook_id, "lead_id": str(lead.id), "tenant_id": tenant_id},
        )
        return WebhookResult(
            200,
            {
                "success": True,
                "message": "Lead received successfully",
                "leadId": str(lead.id),
                "leadData": lead_data,
            },
        )

    def relay_outgoing(self, body: Mapping[str, Any]) -> WebhookResult:
        missing = [name for name in REQUIRED_OUTGOING_FIELDS if _first_present(body.get(name)) is None]
        if missing:
            return WebhookResult(400, {"error": "Missing required fields", "required": list(REQUIRED_OUTGOING_FIELDS)})

        event_name = str(body["event"])
        envelope = {
            "event": event_name,
            "timestamp": utcnow().isoformat(),
            "data": {
                "leadId": body.get("leadId"),
                "leadData": body.get("leadData"),
                "userId": body.get("userId"),
                **dict(body),
            },
        }
        events.publish(
            events.build_envelope(
                OUTGOING_REQUESTED_EVENT,
                actor_user_id=str(body["userId"]),
                tenant_id=str(body["userId"]),
                payload=envelope,
            )
        )
        logger.info("webhook.outgoing_prepared", extra={"event_name": event_name, "tenant_id": str(body["userId"])})
        return WebhookResult(
            200,
            {"success": True, "message": "Outgoing webhook processed successfully", "data": envelope},
        )


def count_received(sources: Iterable[str | None]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for source in sources:
        match = WEBHOOK_SOURCE_RE.search(source or "")
        if match is not None:
            counts[match.group(1)] = counts.get(match.group(1), 0) + 1
    return counts


class WebhookConfigService:
    entity_type = "crm.webhook"

    def __init__(self, settings_store: TenantSettingStore | None = None, store: LeadStore | None = None) -> None:
        self.settings_store = settings_store or tenant_settings
        self.store = store or lead_store

    def incoming_url(self, webhook_id: str, tenant_id: str) -> str:
        base = get_settings().webhook_public_base_url.rstrip("/")
        return f"{base}/webhook-lead?webhook_id={webhook_id}&user_id={tenant_id}"

    def list_webhooks(self, session: Session, principal: Principal | None) -> list[WebhookRead]:
        if principal is None:
            return []
        stored = self._load(session, principal.team_owner_id)
        team_ids = get_team_ids(session, principal)
        counts = count_received(lead.source for lead in self.store.query(session, principal, team_ids))
        return [
            WebhookRead.model_validate({**item, "received_count": counts.get(item["id"], 0)})
            for item in stored
        ]

    def create_webhook(self, session: Session, principal: Principal | None, dto: WebhookCreate) -> WebhookRead:
        principal = self._require_master(principal, "create")
        webhook_id = str(time_based_id())
        if dto.type == "incoming":
            url = self.incoming_url(webhook_id, principal.user_id)
        else:
            url = (dto.url or "").strip()
            if not url:
                raise ValidationError("Destination URL is required for outgoing webhooks")
            if not url.startswith(("http://", "https://")):
                raise ValidationError("Destination URL must be http or https", details={"url": url})

        item = {
            "id": webhook_id,
            "name": dto.name.strip(),
            "type": dto.type,
            "url": url,
            "method": dto.method,
            "events": split_tags(dto.events),
            "is_active": True,
            "created_at": utcnow().isoformat(),
        }
        stored = self._load(session, principal.user_id)
        stored.append(item)
        self._save(session, principal, stored, webhook_id, "create", before=None, after=item)
        return WebhookRead.model_validate(item)

    def toggle_webhook(self, session: Session, principal: Principal | None, webhook_id: str, is_active: bool) -> WebhookRead:
        principal = self._require_master(principal, "update")
        stored = self._load(session, principal.user_id)
        item = self._find(stored, webhook_id)
        before = dict(item)
        # only the active flag is mutable once created
        item["is_active"] = is_active
        self._save(session, principal, stored, webhook_id, "toggle", before=before, after=item)
        return WebhookRead.model_validate(item)

    def delete_webhook(self, session: Session, principal: Principal | None, webhook_id: str) -> None:
        principal = self._require_master(principal, "delete")
        stored = self._load(session, principal.user_id)
        item = self._find(stored, webhook_id)
        remaining = [entry for entry in stored if entry["id"] != webhook_id]
        self._save(session, principal, remaining, webhook_id, "delete", before=item, after=None)

    def active_outgoing(self, session: Session, tenant_id: str, event_names: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(event_names)
        return [
            item
            for item in self._load(session, tenant_id)
            if item.get("type") == "outgoing" and item.get("is_active") and wanted & set(item.get("events") or [])
        ]

    def _load(self, session: Session, tenant_id: str) -> list[dict[str, Any]]:
        stored = self.settings_store.get(session, tenant_id, WEBHOOKS_KEY, default=[])
        return [dict(item) for item in stored] if isinstance(stored, list) else []

    def _save(
        self,
        session: Session,
        principal: Principal,
        stored: list[dict[str, Any]],
        webhook_id: str,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self.settings_store.put(session, principal.user_id, WEBHOOKS_KEY, stored)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=webhook_id,
            action=action,
            before=before,
            after=after,
            correlation_id=principal.correlation_id,
        )

    @staticmethod
    def _find(stored: list[dict[str, Any]], webhook_id: str) -> dict[str, Any]:
        for item in stored:
            if item["id"] == webhook_id:
                return item
        raise NotFound("Webhook not found")

    @staticmethod
    def _require_master(principal: Principal | None, operation: str) -> Principal:
        if principal is None or not principal.is_master:
            observe_visibility_denied("crm.webhook", operation)
            raise PermissionDenied("Only masters can manage webhooks")
        return principal


Dispatcher = Callable[[str, str, dict[str, Any]], None]
SessionScope = Callable[[], AbstractContextManager[Session]]


class OutgoingWebhookRelay:
    """Hands lead change envelopes to every active outgoing webhook that wants them.

    A lead change matches ``lead.created``, ``lead.updated`` or ``lead.deleted``.
    Updates also match one ``lead.<field>`` name per changed field. Delivery
    belongs to the dispatcher and is never retried here.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        dispatcher: Dispatcher,
        config: WebhookConfigService | None = None,
    ) -> None:
        self.session_scope = session_scope
        self.dispatcher = dispatcher
        self.config = config or webhook_config_service

    def handle_lead_change(self, change: LeadChange) -> None:
        if not get_settings().outgoing_webhooks_enabled or change.tenant_id is None:
            return
        lifecycle_event = LIFECYCLE_EVENTS.get(change.operation, "lead.updated")
        event_names = [lifecycle_event]
        if change.operation == "update":
            event_names += [f"lead.{name}" for name in change.changed_fields]
        envelope = {
            "event": lifecycle_event,
            "timestamp": utcnow().isoformat(),
            "data": {
                "leadId": change.lead_id,
                "leadData": change.lead,
                "userId": change.tenant_id,
                "changedFields": change.changed_fields,
            },
        }
        self._dispatch(change.tenant_id, event_names, envelope)

    def handle_outgoing_request(self, event: InternalEvent) -> None:
        if not get_settings().outgoing_webhooks_enabled:
            return
        try:
            envelope = event.payload.get("payload") or {}
            tenant_id = event.payload.get("tenant_id")
            if tenant_id:
                self._dispatch(str(tenant_id), [str(envelope.get("event"))], envelope)
        except Exception as exc:
            logger.exception("webhook.outgoing_relay_failed", extra={"event_name": event.name, "error": str(exc)[:500]})

    def _dispatch(self, tenant_id: str, event_names: list[str], envelope: dict[str, Any]) -> None:
        with self.session_scope() as session:
            targets = self.config.active_outgoing(session, tenant_id, event_names)
        for target in targets:
            self.dispatcher(target["url"], target.get("method") or "POST", envelope)
            observe_outgoing_delivery("dispatched")
            logger.info(
                "webhook.outgoing_dispatched",
                extra={"webhook_id": target["id"], "tenant_id": tenant_id, "event_name": envelope.get("event")},
            )


webhook_gateway = WebhookGateway()
webhook_config_service = WebhookConfigService()
