from __future__ import annotations

import uuid

from agency_api.core.celery_app import celery_app
from agency_api.core.database import SessionLocal
from agency_api.pipelines.service import notification_service


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


@celery_app.task(name="agency_api.pipelines.save_activity_log_notification")
def save_activity_log_notification_task(
    actor_user_id: str,
    description: str,
    agency_id: str | None = None,
    sub_account_id: str | None = None,
) -> str | None:
    session = SessionLocal()
    try:
        notification = notification_service.save_activity_log_notification(
            session,
            actor_user_id=actor_user_id,
            description=description,
            agency_id=_parse_uuid(agency_id),
            sub_account_id=_parse_uuid(sub_account_id),
        )
        return str(notification.id) if notification is not None else None
    finally:
        session.close()
