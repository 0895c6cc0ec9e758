from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
import logging
from typing import Any
import uuid

from fastapi import BackgroundTasks, Depends, FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from agency_api.api.routes import router as api_router
from agency_api.core.config import get_settings
from agency_api.core.context import RequestContextMiddleware
from agency_api.core.database import SessionLocal, get_db
from agency_api.core.events import InternalEvent, event_bus
from agency_api.logging import configure_logging
from agency_api.metrics import observe_activity_log
from agency_api.middleware.correlation_id import CorrelationIdMiddleware
from agency_api.middleware.rate_limit import MutationRateLimitMiddleware
from agency_api.middleware.request_logging import RequestLoggingMiddleware
from agency_api.otel import get_fastapi_server_request_hook, setup_otel
from agency_api.pipelines.service import notification_service
from agency_api.pipelines.tasks import save_activity_log_notification_task


configure_logging()
logger = logging.getLogger("app.lifecycle")
activity_logger = logging.getLogger("app.pipelines.activity")
_subscriptions_registered = False

_activity_event_pattern = "crm.*"
_activity_tasks: ContextVar[BackgroundTasks | None] = ContextVar("activity_tasks", default=None)


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _activity_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _optional_uuid(value: Any) -> uuid.UUID | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


async def bind_activity_tasks(background_tasks: BackgroundTasks) -> None:
    """Route in-process activity-log writes to run after the response is sent."""

    _activity_tasks.set(background_tasks)


def _record_activity(event_name: str, actor_user_id: str, description: str, activity: dict[str, Any]) -> None:
    try:
        with _activity_session_scope() as session:
            notification_service.save_activity_log_notification(
                session,
                actor_user_id=actor_user_id,
                description=description,
                agency_id=_optional_uuid(activity.get("agency_id")),
                sub_account_id=_optional_uuid(activity.get("sub_account_id")),
            )
    except Exception as exc:
        observe_activity_log("failed")
        activity_logger.exception("activity_log_failed", extra={"event_name": event_name, "error": str(exc)[:500]})


def _on_activity_event(event: InternalEvent) -> None:
    envelope: dict[str, Any] = event.payload
    activity = envelope.get("activity")
    if not isinstance(activity, dict):
        return

    settings = get_settings()
    if not settings.notifications_enabled:
        return

    actor_user_id = str(envelope.get("actor_user_id") or "")
    description = str(activity.get("description") or event.name)
    if settings.notifications_async:
        try:
            save_activity_log_notification_task.delay(
                actor_user_id,
                description,
                activity.get("agency_id"),
                activity.get("sub_account_id"),
            )
            observe_activity_log("dispatched")
        except Exception as exc:
            observe_activity_log("failed")
            activity_logger.exception("activity_log_failed", extra={"event_name": event.name, "error": str(exc)[:500]})
        return

    background_tasks = _activity_tasks.get()
    if background_tasks is None:
        _record_activity(event.name, actor_user_id, description, dict(activity))
        return
    background_tasks.add_task(_record_activity, event.name, actor_user_id, description, dict(activity))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(_activity_event_pattern, _on_activity_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(
    title="Agency API",
    version="0.1.0",
    lifespan=lifespan,
    dependencies=[Depends(bind_activity_tasks)],
)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
