from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect
from app.api.deps import get_actor, get_controller
from app.core.broadcaster import ALL, Subscription
from app.core.controller import ExecutionController
from app.core.errors import OnlineDDLError
from app.core.workflow import JobStatus
from app.db.repository import DEFAULT_PAGE_SIZE, JobFilter
from app.schemas.executions import (
    ErrorResponse,
    ExecutionListResponse,
    ExecutionLogsResponse,
    ExecutionRequest,
    ExecutionResponse,
    PreviewResponse,
    StatsResponse,
)

log = logging.getLogger(__name__)

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 404, 409, 502, 503)}

router = APIRouter(prefix="/executions", responses=ERROR_RESPONSES)


@router.post("/preview", response_model=PreviewResponse)
def preview_execution(req: ExecutionRequest, controller: ExecutionController = Depends(get_controller)):
    plan = controller.preview(req.target(), req.intent(), req.execution_params.to_params())
    return PreviewResponse.from_plan(plan)


@router.post("", response_model=ExecutionResponse, status_code=201)
def create_execution(
    req: ExecutionRequest,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    job = controller.create(req.target(), req.intent(), req.execution_params.to_params(), created_by=actor)
    return ExecutionResponse.from_job(job)


@router.get("", response_model=ExecutionListResponse)
def list_executions(
    status: Optional[JobStatus] = None,
    connection_id: Optional[str] = None,
    created_by: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    keyword: Optional[str] = None,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    controller: ExecutionController = Depends(get_controller),
):
    f = JobFilter(status=status, connection_id=connection_id, created_by=created_by,
                  start_date=start_date, end_date=end_date, keyword=keyword)
    result = controller.list(f, page=page, size=size)
    return ExecutionListResponse(
        items=[ExecutionResponse.from_job(job) for job in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
    )


@router.get("/running", response_model=list[ExecutionResponse])
def list_running_executions(controller: ExecutionController = Depends(get_controller)):
    return [ExecutionResponse.from_job(job) for job in controller.list_running()]


@router.get("/stats", response_model=StatsResponse)
def execution_stats(
    connection_id: Optional[str] = None,
    created_by: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    controller: ExecutionController = Depends(get_controller),
):
    f = JobFilter(connection_id=connection_id, created_by=created_by, start_date=start_date, end_date=end_date)
    stats = controller.stats(f)
    return StatsResponse(
        total=stats.total,
        by_status=stats.by_status,
        success_rate=stats.success_rate,
        avg_duration_seconds=stats.avg_duration_seconds,
    )


@router.websocket("/events")
async def execution_events(
    websocket: WebSocket,
    execution_id: Optional[str] = None,
    controller: ExecutionController = Depends(get_controller),
):
    await websocket.accept()
    try:
        sub = controller.subscribe(execution_id or ALL)
    except OnlineDDLError as e:
        await websocket.send_json({"type": "error", "data": e.to_dict()})
        await websocket.close(code=4404 if e.code == "not_found" else 1011)
        return

    receiver = asyncio.create_task(_watch_disconnect(websocket, sub))
    try:
        while True:
            event = await asyncio.to_thread(sub.get, 1.0)
            if event is None:
                if sub.closed:
                    break
                continue
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        sub.close()
        receiver.cancel()
        if sub.dropped:
            log.info("Subscriber dropped %d events", sub.dropped, extra={"job_id": execution_id or "-", "stage": "events"})


async def _watch_disconnect(websocket: WebSocket, sub: Subscription) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sub.close()


@router.get("/{execution_id}", response_model=ExecutionResponse)
def get_execution(execution_id: str, controller: ExecutionController = Depends(get_controller)):
    return ExecutionResponse.from_job(controller.get(execution_id))


@router.get("/{execution_id}/logs", response_model=ExecutionLogsResponse)
def get_execution_logs(
    execution_id: str,
    tail: Optional[int] = None,
    controller: ExecutionController = Depends(get_controller),
):
    return ExecutionLogsResponse(execution_id=execution_id, lines=controller.get_logs(execution_id, tail=tail))


@router.post("/{execution_id}/start", response_model=ExecutionResponse)
def start_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    return ExecutionResponse.from_job(controller.start(execution_id, actor=actor))


@router.post("/{execution_id}/stop", response_model=ExecutionResponse)
def stop_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    return ExecutionResponse.from_job(controller.stop(execution_id, actor=actor))


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
def cancel_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    return ExecutionResponse.from_job(controller.cancel(execution_id, actor=actor))


@router.post("/{execution_id}/retry", response_model=ExecutionResponse, status_code=201)
def retry_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    return ExecutionResponse.from_job(controller.retry(execution_id, actor=actor))


@router.delete("/{execution_id}", status_code=204)
def delete_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller),
    actor: str = Depends(get_actor),
):
    controller.delete(execution_id, actor=actor)
    return Response(status_code=204)
