from __future__ import annotations

import uuid
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
from leadboard.identity.api import get_principal
from leadboard.identity.models import Profile
from leadboard.main import app
from leadboard.middleware.rate_limit import reset_rate_limiter
from leadboard.platform.security.context import Principal


PRINCIPALS = {
    "master": Principal(user_id="master-1", role="master"),
    "member": Principal(user_id="member-1", role="user", master_account_id="master-1"),
    "other_member": Principal(user_id="member-2", role="user", master_account_id="master-1"),
    "outsider": Principal(user_id="master-2", role="master"),
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
    session.add(Profile(id="master-2", name="Otto", email="otto@example.com", role="master"))
    session.commit()
    session.add(Profile(id="member-1", name="Ana", email="ana@example.com", role="user", master_account_id="master-1"))
    session.add(Profile(id="member-2", name="Bia", email="bia@example.com", role="user", master_account_id="master-1"))
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
        principal = PRINCIPALS[state["actor"]]
        principal.correlation_id = getattr(request.state, "correlation_id", None)
        return principal

    def set_actor(name: str) -> None:
        state["actor"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead(test_client: TestClient, **overrides: object) -> dict:
    payload = {
        "name": "Carla Souza",
        "email": "carla@example.com",
        "phone": "+55 11 90000-0000",
        "company": "Acme",
        "value": "1500.00",
        "tags": ["vip", " vip ", "inbound"],
    }
    payload.update(overrides)
    response = test_client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_lead_starts_new_and_owned_by_caller(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    assert lead["status"] == "new"
    assert lead["owner_user_id"] == "master-1"
    assert lead["assigned_to"] == "master-1"
    assert lead["tags"] == ["vip", "inbound"]
    assert lead["source"] == "manual"

    assert audit.entries_for("crm.lead", lead["id"])[0]["action"] == "create"
    changed = [item for item in events.published_events if item["event_type"] == "crm.lead.changed"]
    assert changed[-1]["payload"]["operation"] == "insert"
    assert changed[-1]["tenant_id"] == "master-1"


def test_create_lead_rejects_assignee_outside_team(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/crm/leads",
        json={"name": "X", "email": "x@example.com", "phone": "1", "assigned_to": "master-2"},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "crm_lead_create_failed"
    assert body["message"] == "User cannot be assigned"


def test_members_only_see_their_own_leads(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    mine = _create_lead(test_client, name="Assigned to Ana", assigned_to="member-1")
    theirs = _create_lead(test_client, name="Assigned to Bia", email="bia-lead@example.com", assigned_to="member-2")

    set_actor("member")
    listed = test_client.get("/api/crm/leads")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [mine["id"]]
    assert test_client.get(f"/api/crm/leads/{theirs['id']}").status_code == 404

    set_actor("outsider")
    assert test_client.get("/api/crm/leads").json() == []

    set_actor("master")
    assert {item["id"] for item in test_client.get("/api/crm/leads").json()} == {mine["id"], theirs["id"]}


def test_list_filters(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    vip = _create_lead(test_client, name="Vip Lead", tags=["vip"])
    _create_lead(test_client, name="Cold Lead", email="cold@example.com", tags=["cold"], company="Globex")

    by_tag = test_client.get("/api/crm/leads", params={"tag": "vip"}).json()
    assert [item["id"] for item in by_tag] == [vip["id"]]

    by_search = test_client.get("/api/crm/leads", params={"q": "globex"}).json()
    assert [item["name"] for item in by_search] == ["Cold Lead"]

    by_status = test_client.get("/api/crm/leads", params={"status": "won"}).json()
    assert by_status == []


def test_tag_filter_matches_exact_members(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    accented = _create_lead(test_client, name="Paulista", email="sp@example.com", tags=["São Paulo", "vip"])
    promo = _create_lead(test_client, name="Promo", email="promo@example.com", tags=["50%_off", "vip"])
    _create_lead(test_client, name="Lookalike", email="look@example.com", tags=["50 xoff"])

    by_accent = test_client.get("/api/crm/leads", params={"tag": "São Paulo"}).json()
    assert [item["id"] for item in by_accent] == [accented["id"]]

    by_wildcards = test_client.get("/api/crm/leads", params={"tag": "50%_off"}).json()
    assert [item["id"] for item in by_wildcards] == [promo["id"]]

    first_page = test_client.get("/api/crm/leads", params={"tag": "vip", "limit": 1}).json()
    second_page = test_client.get("/api/crm/leads", params={"tag": "vip", "limit": 1, "cursor": "1"}).json()
    assert len(first_page) == 1
    assert len(second_page) == 1
    assert {first_page[0]["id"], second_page[0]["id"]} == {accented["id"], promo["id"]}


def test_tag_add_and_remove_round_trip(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, tags=[])

    added = test_client.post(f"/api/crm/leads/{lead['id']}/tags", json={"tag": "hot"})
    assert added.status_code == 200
    assert added.json()["tags"] == ["hot"]

    again = test_client.post(f"/api/crm/leads/{lead['id']}/tags", json={"tag": "hot"})
    assert again.json()["tags"] == ["hot"]

    removed = test_client.delete(f"/api/crm/leads/{lead['id']}/tags/hot")
    assert removed.status_code == 200
    assert removed.json()["tags"] == []


def test_member_cannot_change_status_but_can_edit_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client, assigned_to="member-1")

    set_actor("member")
    denied = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "won"})
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_lead_update_failed"

    edited = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"notes": "Called twice", "status": "new"})
    assert edited.status_code == 200
    assert edited.json()["notes"] == "Called twice"
    assert edited.json()["status"] == "new"


def test_master_status_update_validates_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    invalid = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "archived"})
    assert invalid.status_code == 400
    assert "won" in invalid.json()["details"]["allowed"]

    won = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "won"})
    assert won.status_code == 200
    assert won.json()["status"] == "won"


def test_bulk_assign_and_bulk_delete_only_touch_visible_leads(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    first = _create_lead(test_client, name="First")
    second = _create_lead(test_client, name="Second", email="second@example.com")

    set_actor("outsider")
    foreign = _create_lead(test_client, name="Foreign", email="foreign@example.com")

    set_actor("master")
    assigned = test_client.post(
        "/api/crm/leads/bulk-assign",
        json={"lead_ids": [first["id"], second["id"], foreign["id"]], "assigned_to": "member-2"},
    )
    assert assigned.status_code == 200
    assert assigned.json()["affected"] == 2

    set_actor("other_member")
    assert {item["id"] for item in test_client.get("/api/crm/leads").json()} == {first["id"], second["id"]}

    set_actor("master")
    deleted = test_client.post(
        "/api/crm/leads/bulk-delete",
        json={"lead_ids": [first["id"], foreign["id"]]},
    )
    assert deleted.json() == {"affected": 1, "lead_ids": [first["id"]]}

    set_actor("outsider")
    assert [item["id"] for item in test_client.get("/api/crm/leads").json()] == [foreign["id"]]


def test_delete_single_lead(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    response = test_client.delete(f"/api/crm/leads/{lead['id']}")
    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}

    missing = test_client.delete(f"/api/crm/leads/{lead['id']}")
    assert missing.status_code == 404

    unknown = test_client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "crm_lead_get_failed"
