from celery import Celery

from agency_api.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "agency_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["agency_api.pipelines.tasks"],
)
