from fastapi import APIRouter, Depends
from sqlalchemy import text
from app.api.deps import get_controller
from app.core.controller import ExecutionController
from app.core.config import settings

router = APIRouter()


@router.get("/health")
def health(controller: ExecutionController = Depends(get_controller)):
    db_ok = True
    try:
        with controller.store.session_factory() as session:
            session.execute(text("SELECT 1"))
    except Exception:
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "app": settings.app_name,
        "database": "ok" if db_ok else "unavailable",
        "running_executions": len(controller.registry.snapshot()),
        "subscribers": controller.broadcaster.subscriber_count(),
    }
