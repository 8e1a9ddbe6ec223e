from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMApplication
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import Principal, Role


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    principals = {
        "admin": Principal(user_id="metrics-admin", tenant_id="t1", role=Role.ADMIN),
        "counselor": Principal(user_id="metrics-user", tenant_id="t1", role=Role.COUNSELOR),
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


def test_metrics_endpoint_exposes_http_authz_and_task_metrics(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    application = CRMApplication(tenant_id="t1", program="Metrics")
    db_session.add(application)
    db_session.commit()

    assert test_client.get("/health").status_code == 200
    created = test_client.post(
        "/api/tasks",
        json={"application_id": str(application.id), "task_type": "email", "due_at": "2999-01-01T00:00:00Z"},
    )
    assert created.status_code == 200
    task_id = created.json()["task_id"]
    assert test_client.post(f"/api/tasks/{task_id}/complete").status_code == 200
    assert test_client.post(f"/api/tasks/{task_id}/complete").status_code == 200
    assert test_client.post("/api/tasks", json={"application_id": str(application.id), "task_type": "sms", "due_at": "2999-01-01T00:00:00Z"}).status_code == 400

    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'path="/api/tasks/{id}/complete"' in body
    assert 'authz_decisions_total{resource="crm.task",action="write",decision="PERMIT"}' in body
    assert 'task_transitions_total{status="completed"}' in body
    assert "task_completion_noops_total" in body
    assert 'task_validation_failures_total{reason="invalid_task_type"}' in body


def test_metrics_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_principal = client
    set_principal("counselor")
    assert test_client.get("/metrics").status_code == 403


def test_metrics_hidden_when_disabled(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert test_client.get("/metrics").status_code == 404
