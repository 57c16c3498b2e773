from __future__ import annotations

import threading
import time
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from leadboard.core.database import Base


LEAD_STATUSES = ("new", "contacted", "qualified", "proposal", "won", "lost")
SALE_STATUSES = ("entry", "completed")

_id_lock = threading.Lock()
_last_id = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def time_based_id() -> int:
    """Microsecond timestamp, bumped by one when two calls land on the same tick."""

    global _last_id
    with _id_lock:
        candidate = time.time_ns() // 1000
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return candidate


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new", server_default="new")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    assigned_to: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    source: Mapped[str] = mapped_column(String(128), nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_crm_lead_value_non_negative"),
        CheckConstraint(
            "status IN ('new', 'contacted', 'qualified', 'proposal', 'won', 'lost')",
            name="ck_crm_lead_status",
        ),
        Index("ix_crm_lead_owner_user_id", "owner_user_id"),
        Index("ix_crm_lead_assigned_to", "assigned_to"),
        Index("ix_crm_lead_status", "status"),
    )


class CRMSale(Base):
    __tablename__ = "crm_sale"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False, default=time_based_id)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str] = mapped_column(Text, nullable=False)
    customer_phone: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    product: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed", server_default="completed")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    appointment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="SET NULL"),
        nullable=True,
    )
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("status IN ('entry', 'completed')", name="ck_crm_sale_status"),
        Index("ix_crm_sale_user_id", "user_id"),
        Index("ix_crm_sale_team_owner_id", "team_owner_id"),
    )


class CRMTenantSetting(Base):
    __tablename__ = "crm_tenant_setting"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    value_json: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_crm_tenant_setting_key"),)
