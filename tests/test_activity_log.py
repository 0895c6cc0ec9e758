from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import agency_api.main as main_module
from agency_api import events
from agency_api.core.config import get_settings
from agency_api.core.database import Base, get_db
from agency_api.main import app
from agency_api.middleware.rate_limit import reset_rate_limiter
from agency_api.pipelines import api as pipelines_api
from agency_api.pipelines import tasks
from agency_api.pipelines.api import get_current_user
from agency_api.pipelines.models import Lane, Notification, SubAccount, TeamMember
from agency_api.pipelines.service import ActorUser, notification_service


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
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
    monkeypatch.setenv("NOTIFICATIONS_ASYNC", "false")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def agency_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, agency_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="owner-1",
            agency_id=agency_id,
            permissions={"sub_accounts.manage", "pipelines.read", "pipelines.manage", "notifications.read"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def owner(db_session: Session, agency_id: uuid.UUID) -> TeamMember:
    member = TeamMember(id="owner-1", agency_id=agency_id, name="Riley Owner", email="riley@agency.io", role="AGENCY_OWNER")
    db_session.add(member)
    db_session.commit()
    return member


def _create_pipeline(client: TestClient, agency_id: uuid.UUID) -> str:
    sub_account = client.put(
        "/api/sub-accounts",
        json={"agency_id": str(agency_id), "name": "Acme", "company_email": "owner@acme.io"},
    )
    assert sub_account.status_code == 200
    return client.get(f"/api/sub-accounts/{sub_account.json()['id']}/pipelines").json()[0]["id"]


def test_mutation_records_activity_notification(
    client: TestClient,
    owner: TeamMember,
    agency_id: uuid.UUID,
) -> None:
    pipeline_id = _create_pipeline(client, agency_id)
    lane = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Lead"})
    assert lane.status_code == 200

    response = client.get(f"/api/agencies/{agency_id}/notifications")
    assert response.status_code == 200
    texts = [item["notification"] for item in response.json()]
    assert "Riley Owner | Updated a lane | Lead" in texts
    assert "Riley Owner | Updated sub account | Acme" in texts
    assert all(item["user"]["id"] == "owner-1" for item in response.json())


def test_notification_failure_does_not_undo_mutation(
    client: TestClient,
    owner: TeamMember,
    agency_id: uuid.UUID,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    pipeline_id = _create_pipeline(client, agency_id)
    caplog.set_level(logging.INFO)

    def boom(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("notification store offline")

    monkeypatch.setattr(notification_service, "save_activity_log_notification", boom)
    response = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Qualified"})

    assert response.status_code == 200
    assert db_session.get(Lane, uuid.UUID(response.json()["id"])) is not None
    failures = [record for record in caplog.records if record.getMessage() == "activity_log_failed"]
    assert failures
    assert getattr(failures[-1], "event_name", None) == "crm.lane.upserted"
    assert "notification store offline" in getattr(failures[-1], "error", "")


def test_async_mode_dispatches_celery_task(
    client: TestClient,
    owner: TeamMember,
    agency_id: uuid.UUID,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    pipeline_id = _create_pipeline(client, agency_id)
    dispatched: list[tuple[Any, ...]] = []

    class _FakeTask:
        def delay(self, *args: Any) -> None:
            dispatched.append(args)

    monkeypatch.setenv("NOTIFICATIONS_ASYNC", "true")
    get_settings.cache_clear()
    monkeypatch.setattr(main_module, "save_activity_log_notification_task", _FakeTask())
    before = len(db_session.scalars(select(Notification)).all())

    response = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Won"})

    assert response.status_code == 200
    assert dispatched
    actor_user_id, description, dispatched_agency_id, sub_account_id = dispatched[-1]
    assert actor_user_id == "owner-1"
    assert description == "Updated a lane | Won"
    assert dispatched_agency_id == str(agency_id)
    assert sub_account_id is not None
    assert len(db_session.scalars(select(Notification)).all()) == before


def test_disabled_notifications_write_nothing(
    client: TestClient,
    owner: TeamMember,
    agency_id: uuid.UUID,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    get_settings.cache_clear()

    _create_pipeline(client, agency_id)

    assert db_session.scalars(select(Notification)).all() == []


def test_author_falls_back_to_agency_member(db_session: Session, agency_id: uuid.UUID, owner: TeamMember) -> None:
    sub_account = SubAccount(agency_id=agency_id, name="Beta", company_email="beta@agency.io")
    db_session.add(sub_account)
    db_session.commit()

    notification = notification_service.save_activity_log_notification(
        db_session,
        actor_user_id="unknown-actor",
        description="Updated a ticket | Deal",
        sub_account_id=sub_account.id,
    )

    assert notification is not None
    assert notification.notification == "Riley Owner | Updated a ticket | Deal"
    assert notification.agency_id == agency_id
    assert notification.sub_account_id == sub_account.id


def test_missing_author_skips_notification(
    db_session: Session,
    agency_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)

    notification = notification_service.save_activity_log_notification(
        db_session,
        actor_user_id="ghost",
        description="Deleted a lane | Lead",
        agency_id=agency_id,
    )

    assert notification is None
    assert db_session.scalars(select(Notification)).all() == []
    assert any(record.getMessage() == "activity_log_skipped" for record in caplog.records)


def test_notification_requires_agency_or_sub_account(db_session: Session) -> None:
    with pytest.raises(ValueError):
        notification_service.save_activity_log_notification(db_session, actor_user_id="owner-1", description="noop")


def test_celery_task_saves_notification(
    db_session: Session,
    agency_id: uuid.UUID,
    owner: TeamMember,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tasks, "SessionLocal", sessionmaker(bind=db_session.get_bind(), autoflush=False))

    notification_id = tasks.save_activity_log_notification_task(
        "owner-1",
        "Updated a pipeline | Sales",
        str(agency_id),
        None,
    )

    assert notification_id is not None
    stored = db_session.get(Notification, uuid.UUID(notification_id))
    assert stored is not None
    assert stored.notification == "Riley Owner | Updated a pipeline | Sales"


def test_notification_is_written_after_the_handler_returns(
    client: TestClient,
    owner: TeamMember,
    agency_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    pipeline_id = _create_pipeline(client, agency_id)
    timeline: list[str] = []
    save = notification_service.save_activity_log_notification
    upsert_lane = pipelines_api.lane_service.upsert_lane

    def tracking_save(*args: Any, **kwargs: Any) -> Any:
        timeline.append("notification")
        return save(*args, **kwargs)

    def tracking_upsert(*args: Any, **kwargs: Any) -> Any:
        result = upsert_lane(*args, **kwargs)
        timeline.append("handler")
        return result

    monkeypatch.setattr(notification_service, "save_activity_log_notification", tracking_save)
    monkeypatch.setattr(pipelines_api.lane_service, "upsert_lane", tracking_upsert)

    response = client.put("/api/lanes", json={"pipeline_id": pipeline_id, "name": "Proposal"})

    assert response.status_code == 200
    assert timeline == ["handler", "notification"]
    texts = [item["notification"] for item in client.get(f"/api/agencies/{agency_id}/notifications").json()]
    assert "Riley Owner | Updated a lane | Proposal" in texts


def test_synced_team_member_authors_activity(client: TestClient, agency_id: uuid.UUID) -> None:
    synced = client.put(
        "/api/team-members",
        json={"name": "Riley Owner", "email": "riley@agency.io", "role": "AGENCY_OWNER"},
    )
    assert synced.status_code == 200

    _create_pipeline(client, agency_id)

    response = client.get(f"/api/agencies/{agency_id}/notifications")
    assert [item["notification"] for item in response.json()] == ["Riley Owner | Updated sub account | Acme"]
    assert response.json()[0]["user"]["id"] == "owner-1"
