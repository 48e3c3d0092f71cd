from celery import Celery
from app.core.config import settings

celery_app = Celery("online_ddl", broker=settings.redis_url, backend=settings.redis_url, include=["app.tasks.jobs"])
celery_app.conf.update(task_track_started=True, result_expires=3600, broker_connection_retry_on_startup=True,)
celery_app.conf.beat_schedule = {
    "reconcile-orphaned-executions": {
        "task": "reconcile_orphaned_executions",
        "schedule": settings.reconcile_interval_seconds,
    },
}
