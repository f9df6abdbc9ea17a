from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_associations",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.crm.associations.tasks"],
)

if settings.integrity_nightly_enabled:
    celery_app.conf.beat_schedule = {
        "associations-integrity-nightly": {
            "task": "app.tasks.associations.integrity_nightly",
            "schedule": crontab(hour=settings.integrity_nightly_hour_utc, minute=0),
        },
    }
