from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from agency_api.core.config import get_settings
from agency_api.core.database import Base, get_db
from agency_api.main import app
from agency_api.middleware.rate_limit import reset_rate_limiter
from agency_api.otel import setup_inmemory_otel
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session, agency_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            agency_id=agency_id,
            permissions={"sub_accounts.manage", "pipelines.read", "pipelines.manage"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    agency_id: uuid.UUID,
) -> None:
    response = client.put(
        "/api/sub-accounts",
        json={"agency_id": str(agency_id), "name": "OTel Account", "company_email": "otel@acme.io"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_reorder_span_records_scope_and_outcome(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    agency_id: uuid.UUID,
) -> None:
    sub_account = client.put(
        "/api/sub-accounts",
        json={"agency_id": str(agency_id), "name": "OTel Board", "company_email": "board@acme.io"},
    ).json()
    pipeline_id = client.get(f"/api/sub-accounts/{sub_account['id']}/pipelines").json()[0]["id"]
    lane = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Lead"}).json()
    ticket = client.put("/api/tickets", json={"lane_id": lane["id"], "name": "Deal"}).json()

    response = client.post(
        "/api/tickets/reorder",
        json={"tickets": [{"id": ticket["id"], "order": 0}, {"id": str(uuid.uuid4()), "order": 1}]},
    )
    assert response.status_code == 404

    reorder_spans = [span for span in span_exporter.get_finished_spans() if span.name == "pipelines.reorder.ticket"]
    assert reorder_spans
    span = reorder_spans[-1]
    assert span.attributes.get("reorder.scope") == "ticket"
    assert span.attributes.get("reorder.batch_size") == 2
    assert span.attributes.get("reorder.outcome") == "not_found"
