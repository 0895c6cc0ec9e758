from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agency_api import audit, events
from agency_api.core.config import get_settings
from agency_api.core.database import Base, get_db
from agency_api.main import app
from agency_api.middleware.rate_limit import reset_rate_limiter
from agency_api.pipelines.api import get_current_user
from agency_api.pipelines.service import ActorUser


ALL_PERMISSIONS = {"sub_accounts.manage", "pipelines.read", "pipelines.manage"}


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
def agency_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, agency_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            agency_id=agency_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_pipeline(client: TestClient, agency_id: uuid.UUID, correlation_id: str) -> dict:
    sub_account = client.put(
        "/api/sub-accounts",
        json={"agency_id": str(agency_id), "name": "Corr Account", "company_email": "corr@acme.io"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert sub_account.status_code == 200
    response = client.get(f"/api/sub-accounts/{sub_account.json()['id']}/pipelines")
    assert response.status_code == 200
    return response.json()[0]


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/pipelines/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/pipelines/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_used_as_fallback(client: TestClient) -> None:
    response = client.get(f"/api/pipelines/{uuid.uuid4()}", headers={"X-Request-Id": "req-777"})
    assert response.headers.get("x-correlation-id") == "req-777"
    assert response.json()["correlation_id"] == "req-777"


def test_audit_uses_request_correlation_id(client: TestClient, agency_id: uuid.UUID) -> None:
    _create_pipeline(client, agency_id, "corr-audit-1")

    sub_account_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.sub_account"]
    assert sub_account_audits
    assert sub_account_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, agency_id: uuid.UUID) -> None:
    pipeline = _create_pipeline(client, agency_id, "corr-setup")

    response = client.put(
        "/api/lanes",
        json={"pipeline_id": pipeline["id"], "name": "Lead"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    lane_events = [item for item in events.published_events if item.get("event_type") == "crm.lane.upserted"]
    assert lane_events
    assert lane_events[-1].get("correlation_id") == "corr-event-1"
