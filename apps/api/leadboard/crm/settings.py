from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadboard import audit
from leadboard.core.errors import ConflictError, NotFound, PermissionDenied, PersistenceError, ValidationError
from leadboard.crm.models import CRMTenantSetting, time_based_id, utcnow
from leadboard.crm.schemas import KanbanStage, KanbanStageCreate, KanbanStageUpdate
from leadboard.metrics import observe_persistence_failure, observe_visibility_denied
from leadboard.platform.security.context import Principal


logger = logging.getLogger("leadboard.crm.settings")

KANBAN_STAGES_KEY = "kanban_stages"
WEBHOOKS_KEY = "webhooks"
PREFERENCES_KEY = "preferences"
MIN_STAGES = 2

DEFAULT_STAGES: tuple[dict[str, str], ...] = (
    {"id": "new", "name": "New Leads", "color": "#3B82F6"},
    {"id": "contacted", "name": "Contacted", "color": "#EAB308"},
    {"id": "qualified", "name": "Qualified", "color": "#8B5CF6"},
    {"id": "proposal", "name": "Proposal", "color": "#F97316"},
    {"id": "won", "name": "Won", "color": "#22C55E"},
    {"id": "lost", "name": "Lost", "color": "#EF4444"},
)


class TenantSettingStore:
    """Opaque JSON blobs keyed by ``(tenant_id, key)``."""

    def get(self, session: Session, tenant_id: str, key: str, default: Any = None) -> Any:
        try:
            row = session.scalar(
                select(CRMTenantSetting).where(CRMTenantSetting.tenant_id == tenant_id, CRMTenantSetting.key == key)
            )
        except SQLAlchemyError as exc:
            observe_persistence_failure("crm.tenant_setting", "read")
            raise PersistenceError("Failed to load settings", details=str(exc)) from exc
        if row is None or row.value_json is None:
            return default
        return row.value_json

    def put(self, session: Session, tenant_id: str, key: str, value: Any) -> Any:
        try:
            row = session.scalar(
                select(CRMTenantSetting).where(CRMTenantSetting.tenant_id == tenant_id, CRMTenantSetting.key == key)
            )
            if row is None:
                row = CRMTenantSetting(tenant_id=tenant_id, key=key, value_json=value)
                session.add(row)
            else:
                row.value_json = value
                row.updated_at = utcnow()
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("crm.tenant_setting", "write")
            raise PersistenceError("Failed to save settings", details=str(exc)) from exc
        return value


tenant_settings = TenantSettingStore()


def _require_master(principal: Principal | None, operation: str) -> Principal:
    if principal is None or not principal.is_master:
        observe_visibility_denied("crm.kanban_stage", operation)
        raise PermissionDenied("Only masters can change pipeline stages")
    return principal


class KanbanStageService:
    entity_type = "crm.kanban_stage"

    def __init__(self, settings_store: TenantSettingStore | None = None) -> None:
        self.settings_store = settings_store or tenant_settings

    def get_stages(self, session: Session, principal: Principal | None) -> list[KanbanStage]:
        if principal is None:
            return [KanbanStage(**item) for item in DEFAULT_STAGES]
        stored = self.settings_store.get(session, principal.team_owner_id, KANBAN_STAGES_KEY)
        if not stored:
            return [KanbanStage(**item) for item in DEFAULT_STAGES]
        return [KanbanStage.model_validate(item) for item in stored]

    def stage_name(self, session: Session, principal: Principal | None, stage_id: str) -> str:
        for stage in self.get_stages(session, principal):
            if stage.id == stage_id:
                return stage.name
        return stage_id

    def add_stage(self, session: Session, principal: Principal | None, dto: KanbanStageCreate) -> list[KanbanStage]:
        principal = _require_master(principal, "add")
        stages = self.get_stages(session, principal)
        stage_id = (dto.id or "").strip() or str(time_based_id())
        if any(stage.id == stage_id for stage in stages):
            raise ConflictError("Stage id already exists", details={"id": stage_id})
        stages.append(KanbanStage(id=stage_id, name=dto.name.strip(), color=dto.color))
        return self._save(session, principal, stages, "add")

    def rename_stage(
        self,
        session: Session,
        principal: Principal | None,
        stage_id: str,
        dto: KanbanStageUpdate,
    ) -> list[KanbanStage]:
        principal = _require_master(principal, "update")
        stages = self.get_stages(session, principal)
        stage = self._find(stages, stage_id)
        if dto.name is not None:
            if not dto.name.strip():
                raise ValidationError("Stage name cannot be empty")
            stage.name = dto.name.strip()
        if dto.color is not None:
            stage.color = dto.color
        return self._save(session, principal, stages, "update")

    def recolor_stage(self, session: Session, principal: Principal | None, stage_id: str, color: str) -> list[KanbanStage]:
        return self.rename_stage(session, principal, stage_id, KanbanStageUpdate(color=color))

    def reorder_stages(self, session: Session, principal: Principal | None, stage_ids: list[str]) -> list[KanbanStage]:
        principal = _require_master(principal, "reorder")
        stages = self.get_stages(session, principal)
        by_id = {stage.id: stage for stage in stages}
        if sorted(stage_ids) != sorted(by_id) or len(set(stage_ids)) != len(stage_ids):
            raise ValidationError("Reorder must list every stage exactly once", details={"expected": list(by_id)})
        return self._save(session, principal, [by_id[stage_id] for stage_id in stage_ids], "reorder")

    def delete_stage(self, session: Session, principal: Principal | None, stage_id: str) -> list[KanbanStage]:
        principal = _require_master(principal, "delete")
        stages = self.get_stages(session, principal)
        self._find(stages, stage_id)
        if len(stages) <= MIN_STAGES:
            raise ValidationError(f"A pipeline needs at least {MIN_STAGES} stages")
        return self._save(session, principal, [stage for stage in stages if stage.id != stage_id], "delete")

    def reset_stages(self, session: Session, principal: Principal | None) -> list[KanbanStage]:
        principal = _require_master(principal, "reset")
        return self._save(session, principal, [KanbanStage(**item) for item in DEFAULT_STAGES], "reset")

    @staticmethod
    def _find(stages: list[KanbanStage], stage_id: str) -> KanbanStage:
        for stage in stages:
            if stage.id == stage_id:
                return stage
        raise NotFound("Stage not found")

    def _save(self, session: Session, principal: Principal, stages: list[KanbanStage], action: str) -> list[KanbanStage]:
        before = self.settings_store.get(session, principal.user_id, KANBAN_STAGES_KEY)
        after = [stage.model_dump() for stage in stages]
        self.settings_store.put(session, principal.user_id, KANBAN_STAGES_KEY, after)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=principal.user_id,
            action=action,
            before={"stages": before} if before is not None else None,
            after={"stages": after},
            correlation_id=principal.correlation_id,
        )
        return stages


class PreferencesService:
    def get(self, session: Session, principal: Principal) -> dict[str, Any]:
        stored = tenant_settings.get(session, principal.user_id, PREFERENCES_KEY, default={})
        return dict(stored) if isinstance(stored, dict) else {}

    def replace(self, session: Session, principal: Principal, preferences: dict[str, Any]) -> dict[str, Any]:
        tenant_settings.put(session, principal.user_id, PREFERENCES_KEY, dict(preferences))
        return dict(preferences)


kanban_stage_service = KanbanStageService()
preferences_service = PreferencesService()
