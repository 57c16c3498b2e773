from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadboard import audit, events
from leadboard.core.auth import AuthUser
from leadboard.core.config import get_settings
from leadboard.core.database import Base, get_db
from leadboard.identity import service as identity_module
from leadboard.identity.api import get_principal
from leadboard.identity.models import AuthIdentity, Profile
from leadboard.identity.provider import LocalIdentityProvider
from leadboard.identity.service import IdentityService
from leadboard.main import app
from leadboard.middleware.rate_limit import reset_rate_limiter
from leadboard.platform.security.context import Principal


PRINCIPALS = {
    "master": Principal(user_id="master-1", role="master"),
    "member": Principal(user_id="member-1", role="user", master_account_id="master-1"),
}


class BrokenDeleteProvider(LocalIdentityProvider):
    def delete_identity(self, session: Session, identity_id: str) -> None:
        raise RuntimeError("identity service unavailable")


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


def _create_member(test_client: TestClient, email: str = "new.member@example.com") -> dict[str, Any]:
    response = test_client.post(
        "/api/users",
        json={"name": "New Member", "email": email, "password": "s3cret!"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_master_creates_sub_user_that_can_sign_in(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    body = _create_member(test_client)

    assert body["success"] is True
    user = body["user"]
    assert user["role"] == "user"
    assert user["master_account_id"] == "master-1"
    assert user["email"] == "new.member@example.com"

    identity = LocalIdentityProvider().authenticate(db_session, "New.Member@example.com", "s3cret!")
    assert identity is not None
    assert identity.id == user["id"]
    assert identity.user_metadata["is_subuser"] is True
    assert LocalIdentityProvider().authenticate(db_session, "new.member@example.com", "wrong") is None

    team = test_client.get("/api/users/team").json()
    assert [member["id"] for member in team] == ["member-1", user["id"]]
    assert all(member["is_online"] is False for member in team)

    assignable = test_client.get("/api/users/assignable").json()
    assert [profile["id"] for profile in assignable] == ["master-1", "member-1", user["id"]]


def test_duplicate_email_conflicts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_member(test_client)

    duplicate = test_client.post(
        "/api/users",
        json={"name": "Again", "email": "NEW.member@example.com", "password": "s3cret!"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "Email already registered"

    profile_email = test_client.post(
        "/api/users",
        json={"name": "Ana Two", "email": "ana@example.com", "password": "s3cret!"},
    )
    assert profile_email.status_code == 409


def test_members_cannot_manage_users(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("member")

    created = test_client.post(
        "/api/users",
        json={"name": "Nope", "email": "nope@example.com", "password": "s3cret!"},
    )
    assert created.status_code == 403
    assert created.json()["code"] == "user_create_failed"

    assert test_client.delete("/api/users/member-1").status_code == 403
    assert test_client.get("/api/users/stats").json() == {"total_users": 0, "active_users": 0, "administrators": 1}


def test_master_stats_and_deactivation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.get("/api/users/stats").json() == {"total_users": 2, "active_users": 2, "administrators": 1}

    deactivated = test_client.patch("/api/users/member-1/active", json={"is_active": False})
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert test_client.get("/api/users/stats").json()["active_users"] == 1

    unknown = test_client.patch("/api/users/someone-else/active", json={"is_active": False})
    assert unknown.status_code == 404


def test_delete_sub_user_removes_profile_and_identity(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    user = _create_member(test_client)["user"]

    response = test_client.delete(f"/api/users/{user['id']}")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "User removed"}
    assert db_session.get(Profile, user["id"]) is None
    assert db_session.get(AuthIdentity, user["id"]) is None


def test_delete_reports_partial_failure_when_identity_removal_fails(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    user = _create_member(test_client)["user"]
    monkeypatch.setattr(identity_module.identity_service, "provider", BrokenDeleteProvider())

    response = test_client.delete(f"/api/users/{user['id']}")

    assert response.status_code == 207
    body = response.json()
    assert body["code"] == "user_delete_failed"
    assert body["details"]["completed"] == ["profile"]
    assert body["details"]["failed"] == "identity"
    assert db_session.get(Profile, user["id"]) is None
    assert db_session.get(AuthIdentity, user["id"]) is not None


def test_first_authenticated_request_creates_master_profile(db_session: Session) -> None:
    service = IdentityService()

    principal = service.resolve_principal(
        db_session,
        AuthUser(sub="fresh-user", email="fresh@example.com"),
        correlation_id="corr-1",
    )

    assert principal is not None
    assert principal.is_master
    assert principal.team_owner_id == "fresh-user"
    assert principal.correlation_id == "corr-1"
    assert db_session.get(Profile, "fresh-user").name == "fresh"
    assert service.resolve_principal(db_session, AuthUser(sub="anonymous")) is None


def test_inactive_profiles_do_not_resolve(db_session: Session) -> None:
    member = db_session.get(Profile, "member-1")
    member.is_active = False
    db_session.commit()

    assert IdentityService().resolve_principal(db_session, AuthUser(sub="member-1")) is None


def test_me_uses_bearer_token(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    token = jwt.encode({"sub": "member-1", "email": "ana@example.com"}, "test-secret", algorithm="HS256")
    with TestClient(app) as test_client:
        anonymous = test_client.get("/me")
        me = test_client.get("/me", headers={"Authorization": f"Bearer {token}"})
    app.dependency_overrides.clear()

    assert anonymous.status_code == 401
    assert me.status_code == 200
    assert me.json()["user_id"] == "member-1"
    assert me.json()["role"] == "user"
    assert me.json()["team_owner_id"] == "master-1"
