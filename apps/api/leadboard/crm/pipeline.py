"""Lead status transitions and the per-session kanban view.

Any status can follow any other; ``won`` and ``lost`` are terminal only by
convention. Who may move a lead is the constraint: masters only.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from leadboard.core.errors import NotFound, PermissionDenied, PersistenceError, ValidationError
from leadboard.crm.models import LEAD_STATUSES, utcnow
from leadboard.crm.schemas import BoardColumn, BoardRead, KanbanStage, LeadRead, PipelineMoveResult
from leadboard.crm.settings import KanbanStageService, kanban_stage_service
from leadboard.crm.store import LeadChange, LeadStore, Subscription, lead_store
from leadboard.metrics import observe_pipeline_move, observe_visibility_denied
from leadboard.otel import get_tracer
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_team_ids


logger = logging.getLogger("leadboard.crm.pipeline")
tracer = get_tracer("leadboard.crm.pipeline")


def authorize_transition(principal: Principal | None) -> Principal:
    if principal is None or not principal.is_master:
        observe_visibility_denied("crm.lead", "transition")
        raise PermissionDenied("Only masters can move leads between stages")
    return principal


def validate_status(status: str) -> str:
    if status not in LEAD_STATUSES:
        raise ValidationError(
            f"Unknown lead status: {status}",
            details={"allowed": list(LEAD_STATUSES)},
        )
    return status


class PipelineBoard:
    """Leads as one session currently sees them.

    Moves are applied here first. The board is never patched back after a
    failed write; it reloads from the store instead.
    """

    def __init__(self, session: Session, principal: Principal | None, store: LeadStore | None = None) -> None:
        self.session = session
        self.principal = principal
        self.store = store or lead_store
        self.leads: list[LeadRead] = []
        self.reloads = 0
        self._subscription: Subscription | None = None

    def load(self) -> list[LeadRead]:
        team_ids = get_team_ids(self.session, self.principal)
        rows = self.store.query(self.session, self.principal, team_ids)
        self.leads = [LeadRead.model_validate(row) for row in rows]
        self.reloads += 1
        return self.leads

    def attach(self) -> Subscription:
        if self._subscription is None or not self._subscription.active:
            self._subscription = self.store.subscribe(self._on_change)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def find(self, lead_id: uuid.UUID) -> LeadRead | None:
        for lead in self.leads:
            if lead.id == lead_id:
                return lead
        return None

    def apply_move(self, lead_id: uuid.UUID, to_status: str, to_position: int | None = None) -> None:
        current = self.find(lead_id)
        if current is None:
            return
        moved = current.model_copy(update={"status": to_status, "updated_at": utcnow()})
        remaining = [lead for lead in self.leads if lead.id != lead_id]
        column_indexes = [index for index, lead in enumerate(remaining) if lead.status == to_status]
        if to_position is None or to_position >= len(column_indexes):
            insert_at = column_indexes[-1] + 1 if column_indexes else len(remaining)
        else:
            insert_at = column_indexes[max(to_position, 0)]
        remaining.insert(insert_at, moved)
        self.leads = remaining

    def columns(
        self,
        stages: list[KanbanStage],
        *,
        filter_user: str | None = None,
        search: str | None = None,
    ) -> list[BoardColumn]:
        leads = self.leads
        if filter_user:
            leads = [lead for lead in leads if filter_user in (lead.assigned_to, lead.owner_user_id)]
        if search:
            term = search.lower()
            leads = [
                lead
                for lead in leads
                if term in lead.name.lower()
                or term in lead.email.lower()
                or term in (lead.company or "").lower()
            ]

        columns: list[BoardColumn] = []
        for stage in stages:
            # custom stage ids never match a lead status
            stage_leads = [lead for lead in leads if lead.status == stage.id]
            columns.append(
                BoardColumn(
                    stage=stage,
                    leads=stage_leads,
                    count=len(stage_leads),
                    total_value=sum((lead.value for lead in stage_leads), Decimal("0")),
                )
            )
        return columns

    def _on_change(self, change: LeadChange) -> None:
        logger.debug("pipeline.board_refetch", extra={"lead_id": change.lead_id, "status": change.operation})
        self.load()


class PipelineService:
    entity_type = "crm.lead"

    def __init__(self, store: LeadStore | None = None, stages: KanbanStageService | None = None) -> None:
        self.store = store or lead_store
        self.stages = stages or kanban_stage_service

    def get_board(
        self,
        session: Session,
        principal: Principal | None,
        *,
        filter_user: str | None = None,
        search: str | None = None,
    ) -> BoardRead:
        board = PipelineBoard(session, principal, self.store)
        board.load()
        columns = board.columns(self.stages.get_stages(session, principal), filter_user=filter_user, search=search)
        return BoardRead(columns=columns, total_leads=sum(column.count for column in columns))

    def move_lead(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        from_status: str,
        to_status: str,
        from_position: int | None = None,
        to_position: int | None = None,
        board: PipelineBoard | None = None,
    ) -> PipelineMoveResult:
        try:
            principal = authorize_transition(principal)
        except PermissionDenied:
            observe_pipeline_move("denied")
            logger.info("pipeline.move_denied", extra={"lead_id": str(lead_id), "to_status": to_status})
            raise

        if from_status == to_status and from_position == to_position:
            observe_pipeline_move("skipped")
            return PipelineMoveResult(moved=False, message="Lead is already in this position")

        try:
            validate_status(to_status)
        except ValidationError:
            observe_pipeline_move("invalid")
            raise

        team_ids = get_team_ids(session, principal)
        lead = self.store.get_visible(session, principal, team_ids, lead_id)
        if lead is None:
            observe_pipeline_move("not_found")
            raise NotFound("Lead not found")

        with tracer.start_as_current_span("crm.pipeline.move") as span:
            span.set_attribute("leadboard.lead_id", str(lead_id))
            span.set_attribute("leadboard.from_status", from_status)
            span.set_attribute("leadboard.to_status", to_status)

            if board is not None:
                board.apply_move(lead_id, to_status, to_position)

            try:
                updated = self.store.update(
                    session,
                    lead,
                    {"status": to_status, "updated_at": utcnow()},
                    actor_user_id=principal.user_id,
                    tenant_id=principal.team_owner_id,
                )
            except PersistenceError as exc:
                span.set_status(Status(StatusCode.ERROR, exc.message))
                observe_pipeline_move("failed")
                logger.warning(
                    "pipeline.move_failed",
                    extra={"lead_id": str(lead_id), "to_status": to_status, "error": str(exc.details)[:500]},
                )
                if board is not None:
                    board.load()
                raise

        stage_name = self.stages.stage_name(session, principal, to_status)
        observe_pipeline_move("moved")
        logger.info(
            "pipeline.move",
            extra={
                "lead_id": str(lead_id),
                "from_status": from_status,
                "to_status": to_status,
                "user_id": principal.user_id,
            },
        )
        return PipelineMoveResult(
            moved=True,
            message=f"Lead moved to {stage_name}",
            lead=LeadRead.model_validate(updated),
        )


pipeline_service = PipelineService()
