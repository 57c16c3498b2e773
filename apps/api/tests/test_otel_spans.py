from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadboard import audit, events
from leadboard.core.database import Base
from leadboard.core.events import InProcessEventBus
from leadboard.crm.models import CRMLead
from leadboard.crm.pipeline import PipelineService
from leadboard.crm.settings import KanbanStageService
from leadboard.crm.store import LeadStore
from leadboard.crm.webhooks import WebhookGateway
from leadboard.identity.models import Profile
from leadboard.otel import setup_inmemory_otel
from leadboard.platform.security.context import Principal


MASTER = Principal(user_id="master-1", role="master")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add(Profile(id="master-1", name="Maria", email="maria@example.com", role="master"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("leadboard-api")
    exporter.clear()
    return exporter


def test_pipeline_move_emits_span_with_lead_and_statuses(
    db_session: Session, span_exporter: InMemorySpanExporter
) -> None:
    store = LeadStore(bus=InProcessEventBus())
    service = PipelineService(store=store, stages=KanbanStageService())
    lead = CRMLead(
        name="Traced Lead",
        email="traced@example.com",
        phone="555-0100",
        value=Decimal("10.00"),
        status="new",
        tags=[],
        assigned_to="master-1",
        owner_user_id="master-1",
        notes="",
        source="manual",
    )
    db_session.add(lead)
    db_session.commit()

    result = service.move_lead(db_session, MASTER, lead.id, "new", "contacted")
    assert result.moved is True

    move_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.pipeline.move"]
    assert len(move_spans) == 1
    attributes = move_spans[0].attributes
    assert attributes["leadboard.lead_id"] == str(lead.id)
    assert attributes["leadboard.from_status"] == "new"
    assert attributes["leadboard.to_status"] == "contacted"


def test_noop_move_does_not_open_a_span(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    service = PipelineService(store=LeadStore(bus=InProcessEventBus()), stages=KanbanStageService())
    lead = CRMLead(
        name="Still Lead",
        email="still@example.com",
        phone="555-0100",
        value=Decimal("0"),
        status="new",
        tags=[],
        assigned_to="master-1",
        owner_user_id="master-1",
        notes="",
        source="manual",
    )
    db_session.add(lead)
    db_session.commit()

    result = service.move_lead(db_session, MASTER, lead.id, "new", "new")
    assert result.moved is False
    assert not [span for span in span_exporter.get_finished_spans() if span.name == "crm.pipeline.move"]


def test_webhook_ingest_span_carries_webhook_and_tenant(
    db_session: Session, span_exporter: InMemorySpanExporter
) -> None:
    gateway = WebhookGateway(store=LeadStore(bus=InProcessEventBus()))

    result = gateway.ingest(
        db_session,
        {"name": "Hook", "email": "hook@example.com", "phone": "1"},
        webhook_id="99",
        query_user_id="master-1",
    )
    assert result.status_code == 200

    ingest_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.webhook.ingest"]
    assert len(ingest_spans) == 1
    attributes = ingest_spans[0].attributes
    assert attributes["leadboard.webhook_id"] == "99"
    assert attributes["leadboard.tenant_id"] == "master-1"
    assert attributes["leadboard.lead_id"] == result.body["leadId"]
