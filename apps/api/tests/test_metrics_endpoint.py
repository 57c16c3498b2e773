from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadboard.core.config import get_settings
from leadboard.core.database import Base, get_db
from leadboard.identity.api import get_principal
from leadboard.identity.models import Profile
from leadboard.main import app
from leadboard.middleware.rate_limit import reset_rate_limiter
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_principal(request: Request) -> Principal:
        return MASTER

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_reports_service(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "Leadboard API"


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient) -> None:
    assert client.get("/health").status_code == 200

    created = client.post(
        "/api/crm/leads",
        json={"name": "Metrics Lead", "email": "metrics@example.com", "phone": "555-0101"},
    )
    assert created.status_code == 201
    assert client.get(f"/api/crm/leads/{created.json()['id']}").status_code == 200

    webhook = client.post(
        "/webhook-lead?webhook_id=7&user_id=master-1",
        json={"name": "Hook", "email": "hook@example.com", "phone": "1"},
    )
    assert webhook.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "webhook_leads_total" in body
    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}"' in body
    assert 'outcome="created"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
