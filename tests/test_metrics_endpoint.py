from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agency_api.core.auth import AuthUser, get_current_user as auth_get_current_user
from agency_api.core.config import get_settings
from agency_api.core.database import Base, get_db
from agency_api.main import app
from agency_api.middleware.rate_limit import reset_rate_limiter
from agency_api.pipelines.api import get_current_user
from agency_api.pipelines.service import ActorUser


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
def agency_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, agency_id: uuid.UUID, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_actor() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            agency_id=agency_id,
            permissions={"sub_accounts.manage", "pipelines.read", "pipelines.manage"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_reorder_metrics(client: TestClient, agency_id: uuid.UUID) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    sub_account = client.put(
        "/api/sub-accounts",
        json={"agency_id": str(agency_id), "name": "Metrics Account", "company_email": "metrics@acme.io"},
    )
    assert sub_account.status_code == 200
    pipeline_id = client.get(f"/api/sub-accounts/{sub_account.json()['id']}/pipelines").json()[0]["id"]
    lane = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Lead"}).json()

    applied = client.post(
        f"/api/pipelines/{pipeline_id}/lanes/reorder",
        json={"lanes": [{"id": lane["id"], "order": 0}]},
    )
    assert applied.status_code == 200
    failed = client.post(
        f"/api/pipelines/{pipeline_id}/lanes/reorder",
        json={"lanes": [{"id": str(uuid.uuid4()), "order": 0}]},
    )
    assert failed.status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_reorder_batches_total" in body
    assert "pipeline_reorder_batch_size" in body

    assert 'path="/health"' in body
    assert 'path="/api/pipelines/{id}/lanes/reorder"' in body
    reorder_lines = [line for line in body.splitlines() if line.startswith("pipeline_reorder_batches_total{")]
    assert any('scope="lane"' in line and 'outcome="applied"' in line for line in reorder_lines)
    assert any('scope="lane"' in line and 'outcome="not_found"' in line for line in reorder_lines)


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_health_reports_service_name(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "Agency API"
    assert response.json()["status"] == "ok"
