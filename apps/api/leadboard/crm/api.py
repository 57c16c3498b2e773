from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from leadboard.api.errors import crm_error_response
from leadboard.core.database import get_db
from leadboard.core.errors import CRMError, NotFound
from leadboard.crm.analytics import load_analytics
from leadboard.crm.pipeline import pipeline_service
from leadboard.crm.sales import sales_ledger
from leadboard.crm.schemas import (
    AnalyticsRead,
    BoardRead,
    KanbanStage,
    KanbanStageCreate,
    KanbanStageReorder,
    KanbanStageUpdate,
    LeadBulkAssignRequest,
    LeadBulkDeleteRequest,
    LeadBulkResult,
    LeadCreate,
    LeadRead,
    LeadTagRequest,
    LeadUpdate,
    PipelineMoveRequest,
    PipelineMoveResult,
    PreferencesRead,
    SaleCreate,
    SaleListRead,
    SaleRead,
    WebhookCreate,
    WebhookRead,
    WebhookToggle,
)
from leadboard.crm.service import lead_service
from leadboard.crm.settings import kanban_stage_service, preferences_service
from leadboard.crm.store import LeadChange, lead_store
from leadboard.crm.webhooks import normalize_query, webhook_config_service, webhook_gateway
from leadboard.identity.api import get_principal, get_ws_principal, require_principal
from leadboard.identity.presence import PresenceHeartbeat
from leadboard.identity.service import identity_service
from leadboard.metrics import observe_webhook_lead
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_team_ids, is_visible


logger = logging.getLogger("leadboard.crm.api")

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
pipeline_router = APIRouter(prefix="/api/crm/pipeline", tags=["crm.pipeline"])
sales_router = APIRouter(prefix="/api/crm", tags=["crm.sales"])
analytics_router = APIRouter(prefix="/api/crm", tags=["crm.analytics"])
webhooks_router = APIRouter(prefix="/api/crm", tags=["crm.webhooks"])
settings_router = APIRouter(prefix="/api/crm/settings", tags=["crm.settings"])
public_webhooks_router = APIRouter(tags=["webhooks"])

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_user: str | None = Query(default=None),
    source: str | None = Query(default=None),
    tag: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            principal,
            filters={"status": status_filter, "assigned_user": assigned_user, "source": source, "tag": tag, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, principal, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_create_failed")


@leads_router.post("/leads/bulk-assign", response_model=LeadBulkResult)
def bulk_assign_leads(
    request: Request,
    dto: LeadBulkAssignRequest,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadBulkResult | JSONResponse:
    try:
        return lead_service.bulk_assign(db, principal, dto.lead_ids, dto.assigned_to)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_assign_failed")


@leads_router.post("/leads/bulk-delete", response_model=LeadBulkResult)
def bulk_delete_leads(
    request: Request,
    dto: LeadBulkDeleteRequest,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadBulkResult | JSONResponse:
    try:
        return lead_service.delete_leads(db, principal, dto.lead_ids)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_delete_failed")


@leads_router.websocket("/leads/changes")
async def lead_changes(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_ws_principal),
) -> None:
    if principal is None:
        await websocket.close(code=1008)
        return

    team_ids = await run_in_threadpool(get_team_ids, db, principal)
    await run_in_threadpool(identity_service.touch_presence, db, principal.user_id)
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[LeadChange] = asyncio.Queue()

    def on_change(change: LeadChange) -> None:
        if is_visible([change.assigned_to, change.owner_user_id], principal, team_ids):
            loop.call_soon_threadsafe(queue.put_nowait, change)

    async def forward() -> None:
        while True:
            change = await queue.get()
            await websocket.send_json(
                {
                    "type": "lead.changed",
                    "operation": change.operation,
                    "lead_id": change.lead_id,
                    "status": change.status,
                }
            )

    subscription = lead_store.subscribe(on_change)
    heartbeat = PresenceHeartbeat(
        lambda: identity_service.touch_presence(db, principal.user_id),
        ping_on_start=False,
    )
    heartbeat.start()
    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        sender.cancel()
        await heartbeat.stop()


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, principal, lead_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, principal, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> dict[str, str] | JSONResponse:
    try:
        result = lead_service.delete_leads(db, principal, [lead_id])
        if result.affected == 0:
            raise NotFound("Lead not found")
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/tags", response_model=LeadRead)
def add_lead_tag(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadTagRequest,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.add_tag(db, principal, lead_id, dto.tag)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_tag_failed")


@leads_router.delete("/leads/{lead_id}/tags/{tag}", response_model=LeadRead)
def remove_lead_tag(
    request: Request,
    lead_id: uuid.UUID,
    tag: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.remove_tag(db, principal, lead_id, tag)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_tag_failed")


@pipeline_router.get("/board", response_model=BoardRead)
def get_board(
    request: Request,
    filter_user: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> BoardRead | JSONResponse:
    try:
        return pipeline_service.get_board(db, principal, filter_user=filter_user, search=search)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_pipeline_board_failed")


@pipeline_router.post("/moves", response_model=PipelineMoveResult)
def move_lead(
    request: Request,
    dto: PipelineMoveRequest,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> PipelineMoveResult | JSONResponse:
    try:
        return pipeline_service.move_lead(
            db,
            principal,
            dto.lead_id,
            dto.from_status,
            dto.to_status,
            from_position=dto.from_position,
            to_position=dto.to_position,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_pipeline_move_failed")


@pipeline_router.get("/stages", response_model=list[KanbanStage])
def list_stages(
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage]:
    return kanban_stage_service.get_stages(db, principal)


@pipeline_router.post("/stages", response_model=list[KanbanStage], status_code=status.HTTP_201_CREATED)
def add_stage(
    request: Request,
    dto: KanbanStageCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage] | JSONResponse:
    try:
        return kanban_stage_service.add_stage(db, principal, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_stage_create_failed")


@pipeline_router.put("/stages/order", response_model=list[KanbanStage])
def reorder_stages(
    request: Request,
    dto: KanbanStageReorder,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage] | JSONResponse:
    try:
        return kanban_stage_service.reorder_stages(db, principal, dto.stage_ids)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_stage_reorder_failed")


@pipeline_router.post("/stages/reset", response_model=list[KanbanStage])
def reset_stages(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage] | JSONResponse:
    try:
        return kanban_stage_service.reset_stages(db, principal)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_stage_reset_failed")


@pipeline_router.patch("/stages/{stage_id}", response_model=list[KanbanStage])
def update_stage(
    request: Request,
    stage_id: str,
    dto: KanbanStageUpdate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage] | JSONResponse:
    try:
        return kanban_stage_service.rename_stage(db, principal, stage_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_stage_update_failed")


@pipeline_router.delete("/stages/{stage_id}", response_model=list[KanbanStage])
def delete_stage(
    request: Request,
    stage_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[KanbanStage] | JSONResponse:
    try:
        return kanban_stage_service.delete_stage(db, principal, stage_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_stage_delete_failed")


@sales_router.get("/sales", response_model=SaleListRead)
def list_sales(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> SaleListRead | JSONResponse:
    try:
        return sales_ledger.list_sales(db, principal, status=status_filter)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_sale_list_failed")


@sales_router.get("/sales/authors/{author_id}", response_model=list[SaleRead])
def list_author_sales(
    request: Request,
    author_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[SaleRead] | JSONResponse:
    try:
        if author_id not in get_team_ids(db, principal):
            raise NotFound("Author not found")
        return sales_ledger.author_partition(db, author_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_sale_list_failed")


@sales_router.post("/sales", response_model=SaleRead, status_code=status.HTTP_201_CREATED)
def record_sale(
    request: Request,
    dto: SaleCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> SaleRead | JSONResponse:
    try:
        return sales_ledger.record_sale(db, principal, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_sale_create_failed")


@sales_router.put("/sales/{sale_id}", response_model=SaleRead)
def update_sale(
    request: Request,
    sale_id: int,
    dto: SaleCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> SaleRead | JSONResponse:
    try:
        return sales_ledger.update_sale(db, principal, sale_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_sale_update_failed")


@sales_router.delete("/sales/{sale_id}", response_model=None)
def delete_sale(
    request: Request,
    sale_id: int,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> dict[str, str] | JSONResponse:
    try:
        sales_ledger.delete_sale(db, principal, sale_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_sale_delete_failed")


@analytics_router.get("/analytics", response_model=AnalyticsRead)
def get_analytics(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> AnalyticsRead | JSONResponse:
    try:
        return load_analytics(db, principal)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_analytics_failed")


@webhooks_router.get("/webhooks", response_model=list[WebhookRead])
def list_webhooks(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[WebhookRead] | JSONResponse:
    try:
        return webhook_config_service.list_webhooks(db, principal)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_webhook_list_failed")


@webhooks_router.post("/webhooks", response_model=WebhookRead, status_code=status.HTTP_201_CREATED)
def create_webhook(
    request: Request,
    dto: WebhookCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> WebhookRead | JSONResponse:
    try:
        return webhook_config_service.create_webhook(db, principal, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_webhook_create_failed")


@webhooks_router.patch("/webhooks/{webhook_id}", response_model=WebhookRead)
def toggle_webhook(
    request: Request,
    webhook_id: str,
    dto: WebhookToggle,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> WebhookRead | JSONResponse:
    try:
        return webhook_config_service.toggle_webhook(db, principal, webhook_id, dto.is_active)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_webhook_update_failed")


@webhooks_router.delete("/webhooks/{webhook_id}", response_model=None)
def delete_webhook(
    request: Request,
    webhook_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> dict[str, str] | JSONResponse:
    try:
        webhook_config_service.delete_webhook(db, principal, webhook_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_webhook_delete_failed")


@settings_router.get("/preferences", response_model=PreferencesRead)
def get_preferences(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> PreferencesRead | JSONResponse:
    try:
        return PreferencesRead(preferences=preferences_service.get(db, require_principal(principal)))
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_preferences_failed")


@settings_router.put("/preferences", response_model=PreferencesRead)
def put_preferences(
    request: Request,
    preferences: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> PreferencesRead | JSONResponse:
    try:
        return PreferencesRead(preferences=preferences_service.replace(db, require_principal(principal), preferences))
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_preferences_failed")


def _webhook_json(status_code: int, body: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


async def _read_json_object(request: Request) -> dict[str, Any] | None:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


@public_webhooks_router.api_route("/webhook-lead", methods=ALL_METHODS)
async def webhook_lead(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    method = request.method.upper()
    if method not in {"GET", "POST"}:
        observe_webhook_lead(method, "method_not_allowed")
        return _webhook_json(405, {"error": "Method not allowed"})

    try:
        if method == "GET":
            body = normalize_query(request.query_params.multi_items())
        else:
            parsed = await _read_json_object(request)
            if parsed is None:
                observe_webhook_lead(method, "rejected")
                return _webhook_json(400, {"error": "Invalid JSON body"})
            body = parsed

        result = await run_in_threadpool(
            webhook_gateway.ingest,
            db,
            body,
            webhook_id=request.query_params.get("webhook_id"),
            query_user_id=request.query_params.get("user_id"),
            method=method,
        )
        return _webhook_json(result.status_code, result.body)
    except Exception as exc:
        logger.exception("webhook.lead_unexpected_error", extra={"error": str(exc)[:500]})
        observe_webhook_lead(method, "error")
        return _webhook_json(500, {"error": "Internal server error", "message": str(exc)})


@public_webhooks_router.api_route("/webhook-outgoing", methods=ALL_METHODS)
async def webhook_outgoing(request: Request) -> JSONResponse:
    if request.method.upper() != "POST":
        return _webhook_json(405, {"error": "Method not allowed"})
    try:
        body = await _read_json_object(request)
        if body is None:
            return _webhook_json(400, {"error": "Invalid JSON body"})
        result = await run_in_threadpool(webhook_gateway.relay_outgoing, body)
        return _webhook_json(result.status_code, result.body)
    except Exception as exc:
        logger.exception("webhook.outgoing_unexpected_error", extra={"error": str(exc)[:500]})
        return _webhook_json(500, {"error": "Internal server error", "message": str(exc)})
