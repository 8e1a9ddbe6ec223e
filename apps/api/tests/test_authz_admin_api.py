from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import Principal, Role
from app.platform.security.memberships import (
    CachedMembershipResolver,
    SessionMembershipResolver,
    get_membership_resolver,
    set_membership_resolver,
)


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    previous_resolver = get_membership_resolver()
    yield
    set_membership_resolver(previous_resolver)
    audit.audit_entries.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    principals = {
        "admin": Principal(user_id="admin-1", tenant_id="t1", role=Role.ADMIN),
        "foreign_admin": Principal(user_id="admin-9", tenant_id="t2", role=Role.ADMIN),
        "counselor": Principal(user_id="counselor-1", tenant_id="t1", role=Role.COUNSELOR),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> Principal:
        return principals[state["current"]]

    def set_principal(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_principal
    app.dependency_overrides.clear()


def test_non_admin_cannot_manage_teams(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_principal = client
    set_principal("counselor")

    response = test_client.post("/api/admin/teams", json={"name": "Admissions"})
    assert response.status_code == 403
    assert test_client.get("/api/admin/teams").status_code == 403


def test_admin_manages_team_memberships(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    team = test_client.post("/api/admin/teams", json={"name": "Admissions"})
    assert team.status_code == 201
    team_id = team.json()["id"]
    assert team.json()["tenant_id"] == "t1"

    duplicate = test_client.post("/api/admin/teams", json={"name": "Admissions"})
    assert duplicate.status_code == 409

    added = test_client.post(f"/api/admin/teams/{team_id}/members", json={"user_id": "counselor-1"})
    assert added.status_code == 201
    assert test_client.post(f"/api/admin/teams/{team_id}/members", json={"user_id": "counselor-1"}).status_code == 409

    members = test_client.get(f"/api/admin/teams/{team_id}/members")
    assert [item["user_id"] for item in members.json()] == ["counselor-1"]

    removed = test_client.delete(f"/api/admin/teams/{team_id}/members/counselor-1")
    assert removed.status_code == 200
    assert test_client.get(f"/api/admin/teams/{team_id}/members").json() == []
    assert test_client.delete(f"/api/admin/teams/{team_id}/members/counselor-1").status_code == 404

    actions = [entry["action"] for entry in audit.audit_entries if entry["entity_type"].startswith("authz.")]
    assert actions == ["create", "add", "remove"]


def test_teams_of_other_tenants_are_invisible(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_principal = client
    team_id = test_client.post("/api/admin/teams", json={"name": "Outreach"}).json()["id"]

    set_principal("foreign_admin")
    assert test_client.get(f"/api/admin/teams/{team_id}/members").status_code == 404
    assert test_client.post(f"/api/admin/teams/{team_id}/members", json={"user_id": "x"}).status_code == 404
    assert test_client.get("/api/admin/teams").json() == []
    assert test_client.get(f"/api/admin/teams/{uuid.uuid4()}/members").status_code == 404


def test_membership_change_takes_effect_through_cached_resolver(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_principal = client
    set_membership_resolver(CachedMembershipResolver(SessionMembershipResolver(db_session), ttl_seconds=3600))

    team_id = test_client.post("/api/admin/teams", json={"name": "Scholarships"}).json()["id"]
    lead = test_client.post("/api/leads", json={"full_name": "Team Lead", "team_id": team_id}).json()

    set_principal("counselor")
    assert test_client.get(f"/api/leads/{lead['id']}").status_code == 404

    set_principal("admin")
    test_client.post(f"/api/admin/teams/{team_id}/members", json={"user_id": "counselor-1"})
    set_principal("counselor")
    assert test_client.get(f"/api/leads/{lead['id']}").status_code == 200

    set_principal("admin")
    test_client.delete(f"/api/admin/teams/{team_id}/members/counselor-1")
    set_principal("counselor")
    assert test_client.get(f"/api/leads/{lead['id']}").status_code == 404
