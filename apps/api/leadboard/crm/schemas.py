from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


LeadStatus = Literal["new", "contacted", "qualified", "proposal", "won", "lost"]
SaleStatus = Literal["entry", "completed"]
WebhookType = Literal["incoming", "outgoing"]
WebhookMethod = Literal["GET", "POST", "PUT", "DELETE"]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str = Field(min_length=1)
    company: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    source: str = "manual"
    assigned_to: str | None = None


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=1)
    company: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    status: str | None = None
    tags: list[str] | None = None
    notes: str | None = None
    source: str | None = None
    assigned_to: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str
    phone: str
    company: str | None
    value: Decimal
    status: str
    tags: list[str]
    assigned_to: str
    owner_user_id: str
    notes: str
    source: str
    created_at: datetime
    updated_at: datetime


class LeadTagRequest(BaseModel):
    tag: str = Field(min_length=1)


class LeadBulkAssignRequest(BaseModel):
    lead_ids: list[uuid.UUID] = Field(min_length=1)
    assigned_to: str = Field(min_length=1)


class LeadBulkDeleteRequest(BaseModel):
    lead_ids: list[uuid.UUID] = Field(min_length=1)


class LeadBulkResult(BaseModel):
    affected: int
    lead_ids: list[uuid.UUID]


class KanbanStage(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    color: str = "#6B7280"


class KanbanStageCreate(BaseModel):
    name: str = Field(min_length=1)
    color: str = "#6B7280"
    id: str | None = None


class KanbanStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    color: str | None = None


class KanbanStageReorder(BaseModel):
    stage_ids: list[str] = Field(min_length=2)


class PipelineMoveRequest(BaseModel):
    lead_id: uuid.UUID
    from_status: str
    to_status: str
    from_position: int | None = None
    to_position: int | None = None


class PipelineMoveResult(BaseModel):
    moved: bool
    message: str
    lead: LeadRead | None = None


class BoardColumn(BaseModel):
    stage: KanbanStage
    leads: list[LeadRead]
    count: int
    total_value: Decimal


class BoardRead(BaseModel):
    columns: list[BoardColumn]
    total_leads: int


class SaleCreate(BaseModel):
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    product: str = ""
    value: Decimal = Decimal("0")
    status: SaleStatus = "completed"
    tags: list[str] = Field(default_factory=list)
    appointment_date: date | None = None
    notes: str = ""
    lead_id: uuid.UUID | None = None


class SaleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_name: str
    customer_email: str
    customer_phone: str
    product: str
    value: Decimal
    status: str
    tags: list[str]
    appointment_date: date | None
    completed_at: datetime
    user_id: str
    team_owner_id: str
    lead_id: uuid.UUID | None
    notes: str


class SalesSummary(BaseModel):
    total_revenue: Decimal
    total_entries: Decimal
    combined_total: Decimal
    count: int
    average_ticket: Decimal


class SaleListRead(BaseModel):
    items: list[SaleRead]
    summary: SalesSummary


class StatusCount(BaseModel):
    status: str
    count: int


class MonthlyPoint(BaseModel):
    year: int
    month: int
    label: str
    count: int
    revenue: Decimal
    entries: Decimal


class ProductRank(BaseModel):
    product: str
    count: int
    revenue: Decimal


class AnalyticsRead(BaseModel):
    total_leads: int
    won_leads: int
    status_counts: list[StatusCount]
    conversion_rate: float
    total_revenue: Decimal
    total_entries: Decimal
    average_ticket: Decimal
    sales_count: int
    monthly: list[MonthlyPoint]
    top_products: list[ProductRank]


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1)
    type: WebhookType
    method: WebhookMethod = "POST"
    url: str | None = None
    events: list[str] = Field(default_factory=list)


class WebhookToggle(BaseModel):
    is_active: bool


class WebhookRead(BaseModel):
    id: str
    name: str
    type: WebhookType
    url: str
    method: str
    events: list[str]
    is_active: bool
    created_at: datetime
    received_count: int = 0


class PreferencesRead(BaseModel):
    preferences: dict[str, Any]
