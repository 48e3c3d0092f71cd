import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from alembic.config import Config
from alembic import command
from app.core.config import settings
from app.core.controller import ExecutionController
from app.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OnlineDDLError,
    ProcessError,
    StorageError,
    ValidationError,
)
from app.core.logging import configure_logging
from app.api.routes import router as api_router
from app.db.session import SessionLocal, engine

configure_logging(settings.log_level)
log = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (ProcessError, 502),
    (StorageError, 503),
)


def wait_for_database(max_retries: int = 30, retry_delay: float = 1.0) -> None:
    """Wait for the job store database to be available."""
    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("Database connection successful")
            return
        except Exception as e:
            if attempt < max_retries - 1:
                log.warning("Database not ready, retrying in %s seconds (attempt %d/%d): %s",
                            retry_delay, attempt + 1, max_retries, e)
                time.sleep(retry_delay)
            else:
                log.error("Database connection failed after %d attempts", max_retries)
                raise


def run_migrations() -> None:
    """Run Alembic migrations to head."""
    try:
        log.info("Running database migrations...")
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")
        log.info("Database migrations completed successfully")
    except Exception as e:
        log.error("Database migration failed: %s", e, exc_info=True)
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting API server...", extra={"stage": "startup"})
    try:
        wait_for_database()
        run_migrations()
        controller = ExecutionController.from_settings(settings, SessionLocal)
        orphaned = controller.recover()
        if orphaned:
            log.warning("Marked %d orphaned executions as failed", len(orphaned), extra={"stage": "startup"})
        app.state.controller = controller
        log.info("API server startup complete", extra={"stage": "startup"})
    except Exception as e:
        log.error("API startup failed: %s", e, exc_info=True, extra={"stage": "startup"})
        raise
    yield
    log.info("Shutting down API server...", extra={"stage": "shutdown"})
    controller.shutdown()


def error_status(exc: OnlineDDLError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


async def handle_engine_error(request: Request, exc: OnlineDDLError) -> JSONResponse:
    status = error_status(exc)
    if status >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan
)
app.add_exception_handler(OnlineDDLError, handle_engine_error)
app.include_router(api_router, prefix="/v1")
