from __future__ import annotations
import logging
from typing import List
from app.tasks.celery_app import celery_app
from app.core.config import settings
from app.core.controller import reconcile_orphans
from app.core.errors import StorageError
from app.core.supervisor import ProcessSupervisor
from app.db.repository import JobStore
from app.db.session import SessionLocal

log = logging.getLogger(__name__)


def reconcile(store: JobStore, min_age_seconds: float) -> List[str]:
    """Mark running executions whose process is gone as failed.

    Runs outside the API process, so only rows idle for min_age_seconds are touched.
    """
    try:
        orphaned, _ = reconcile_orphans(store, ProcessSupervisor.is_pid_alive, min_age_seconds)
    except StorageError:
        log.exception("Reconciliation skipped: job store unavailable", extra={"stage": "reconcile"})
        return []
    for job in orphaned:
        log.warning("Reconciled orphaned execution", extra={"job_id": job.id, "stage": "reconcile"})
    return [job.id for job in orphaned]


@celery_app.task(name="reconcile_orphaned_executions")
def reconcile_orphaned_executions() -> List[str]:
    store = JobStore(
        SessionLocal,
        retry_attempts=settings.storage_retry_attempts,
        retry_backoff=settings.storage_retry_backoff,
    )
    return reconcile(store, settings.orphan_grace_seconds)
