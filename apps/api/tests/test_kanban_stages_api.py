from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadboard import audit, events
from leadboard.core.config import get_settings
from leadboard.core.database import Base, get_db
from leadboard.crm.settings import KanbanStageService
from leadboard.identity.api import get_principal
from leadboard.identity.models import Profile
from leadboard.main import app
from leadboard.middleware.rate_limit import reset_rate_limiter
from leadboard.platform.security.context import Principal


PRINCIPALS = {
    "master": Principal(user_id="master-1", role="master"),
    "member": Principal(user_id="member-1", role="user", master_account_id="master-1"),
}


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
    session.add(Profile(id="member-1", name="Ana", email="ana@example.com", role="user", master_account_id="master-1"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    state = {"actor": "master"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_principal(request: Request) -> Principal:
        return PRINCIPALS[state["actor"]]

    def set_actor(name: str) -> None:
        state["actor"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _stage_ids(response_json: list[dict]) -> list[str]:
    return [stage["id"] for stage in response_json]


def test_defaults_until_customized(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.get("/api/crm/pipeline/stages")
    assert response.status_code == 200
    stages = response.json()
    assert _stage_ids(stages) == ["new", "contacted", "qualified", "proposal", "won", "lost"]
    assert stages[0] == {"id": "new", "name": "New Leads", "color": "#3B82F6"}


def test_master_customizes_and_members_read_the_team_stages(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client

    added = test_client.post("/api/crm/pipeline/stages", json={"name": "Negotiation"})
    assert added.status_code == 201
    custom = added.json()[-1]
    assert custom["name"] == "Negotiation"
    assert custom["color"] == "#6B7280"

    renamed = test_client.patch(
        f"/api/crm/pipeline/stages/{custom['id']}",
        json={"name": "Negotiating", "color": "#111111"},
    )
    assert renamed.status_code == 200
    assert renamed.json()[-1] == {"id": custom["id"], "name": "Negotiating", "color": "#111111"}

    set_actor("member")
    assert _stage_ids(test_client.get("/api/crm/pipeline/stages").json())[-1] == custom["id"]

    forbidden = test_client.post("/api/crm/pipeline/stages", json={"name": "Nope"})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "crm_stage_create_failed"

    assert len(audit.audit_entries) == 2


def test_duplicate_stage_id_conflicts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/pipeline/stages", json={"name": "Again", "id": "won"})
    assert response.status_code == 409


def test_reorder_requires_every_stage_once(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    order = ["lost", "won", "proposal", "qualified", "contacted", "new"]

    reordered = test_client.put("/api/crm/pipeline/stages/order", json={"stage_ids": order})
    assert reordered.status_code == 200
    assert _stage_ids(reordered.json()) == order

    partial = test_client.put("/api/crm/pipeline/stages/order", json={"stage_ids": ["won", "lost"]})
    assert partial.status_code == 400
    assert partial.json()["code"] == "crm_stage_reorder_failed"


def test_pipeline_keeps_at_least_two_stages(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    for stage_id in ["contacted", "qualified", "proposal", "won"]:
        assert test_client.delete(f"/api/crm/pipeline/stages/{stage_id}").status_code == 200

    refused = test_client.delete("/api/crm/pipeline/stages/lost")
    assert refused.status_code == 400
    assert refused.json()["message"] == "A pipeline needs at least 2 stages"

    missing = test_client.delete("/api/crm/pipeline/stages/unknown")
    assert missing.status_code == 404

    reset = test_client.post("/api/crm/pipeline/stages/reset")
    assert reset.status_code == 200
    assert len(reset.json()) == 6


def test_preferences_round_trip_per_user(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    assert test_client.get("/api/crm/settings/preferences").json() == {"preferences": {}}

    saved = test_client.put("/api/crm/settings/preferences", json={"theme": "dark", "density": "compact"})
    assert saved.status_code == 200
    assert saved.json() == {"preferences": {"theme": "dark", "density": "compact"}}

    set_actor("member")
    assert test_client.get("/api/crm/settings/preferences").json() == {"preferences": {}}


def test_recolor_keeps_stage_name(db_session: Session) -> None:
    service = KanbanStageService()
    master = PRINCIPALS["master"]

    stages = service.recolor_stage(db_session, master, "won", "#10B981")

    won = next(stage for stage in stages if stage.id == "won")
    assert won.color == "#10B981"
    assert won.name == "Won"
    assert service.stage_name(db_session, master, "won") == "Won"
