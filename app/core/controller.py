"""Execution controller: the job state machine.

The controller is the only code that changes a job's status. Transitions for
one job are serialized on the job store's per-id lock; admission control
(one running job per connection/database/table) is an atomic check-and-set
on the ActiveTargetRegistry, backed by a job store lookup for jobs owned by
other processes.

Each started job gets a monitor thread that consumes the supervisor's
progress stream, persists counters and log lines, publishes events, and
records the terminal status when the process exits. stop/cancel record the
intent on the process handle before signalling, so the terminal status is
``cancelled`` however the process ends.
"""
from __future__ import annotations
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from sqlalchemy.orm import sessionmaker
from app.core.broadcaster import ALL, ExecutionEvent, ProgressBroadcaster, Subscription
from app.core.command_builder import CommandBuilder, CommandPlan, ExecutionParams, Intent
from app.core.connections import ConnectionResolver, TableStats, build_resolver
from app.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OnlineDDLError,
    ProcessError,
    StorageError,
)
from app.core.progress import ProgressSnapshot, ProgressTracker
from app.core.risk import RiskAnalyzer, build_risk_analyzer
from app.core.supervisor import HOSTNAME, ProcessExit, ProcessHandle, ProcessSupervisor
from app.core.workflow import JobEvent, JobStatus, Target, is_allowed, next_status
from app.db.models import ExecutionJob
from app.db.repository import DEFAULT_PAGE_SIZE, JobFilter, JobPage, JobStats, JobStore

log = logging.getLogger(__name__)

ORPHANED_MESSAGE = "orphaned on restart: process is no longer alive"


class ActiveTargetRegistry:
    """Target triple -> id of the job running on it."""

    def __init__(self):
        self._active: Dict[Tuple[str, str, str], str] = {}
        self._lock = threading.Lock()

    def acquire(self, target: Target, job_id: str) -> Optional[str]:
        """Claims the target. Returns the holder's job id if already taken."""
        with self._lock:
            holder = self._active.get(target.key())
            if holder is not None and holder != job_id:
                return holder
            self._active[target.key()] = job_id
            return None

    def release(self, target: Target, job_id: str) -> None:
        with self._lock:
            if self._active.get(target.key()) == job_id:
                del self._active[target.key()]

    def holder(self, target: Target) -> Optional[str]:
        with self._lock:
            return self._active.get(target.key())

    def snapshot(self) -> Dict[Tuple[str, str, str], str]:
        with self._lock:
            return dict(self._active)


def parse_process_handle(value: str | None) -> Tuple[Optional[str], Optional[int]]:
    if not value or ":" not in value:
        return None, None
    host, _, pid = value.rpartition(":")
    try:
        return host, int(pid)
    except ValueError:
        return host, None


def error_from_exit(exit: ProcessExit, limit: int = 5) -> str:
    lines = [line for line in exit.tail if line.strip()][-limit:]
    message = f"schema change tool exited with code {exit.exit_code}"
    if lines:
        message += ": " + " | ".join(line.strip() for line in lines)
    return message


def status_event(job: ExecutionJob) -> ExecutionEvent:
    return ExecutionEvent("status", job.id, {
        "status": JobStatus(job.status).value,
        "error_message": job.error_message,
        "exit_code": job.exit_code,
        "processed_rows": job.processed_rows,
        "total_rows": job.total_rows,
        "current_stage": job.current_stage,
    })


def progress_event(job_id: str, snapshot: ProgressSnapshot) -> ExecutionEvent:
    return ExecutionEvent("progress", job_id, {
        "status": JobStatus.RUNNING.value,
        "progress": snapshot.percent,
        "processed_rows": snapshot.processed_rows,
        "total_rows": snapshot.total_rows,
        "current_speed": snapshot.current_speed,
        "current_stage": snapshot.current_stage,
    })


def mark_terminal(job: ExecutionJob, status: JobStatus, exit_code: int | None, error: str | None,
                  snapshot: ProgressSnapshot | None) -> None:
    now = datetime.utcnow()
    job.status = status
    job.end_time = now
    job.exit_code = exit_code
    job.error_message = error
    if snapshot is not None:
        job.total_rows = snapshot.total_rows
        job.row_count_known = snapshot.row_count_known
        job.processed_rows = snapshot.processed_rows
    job.current_speed = 0.0
    job.current_stage = status.value
    if job.start_time:
        job.duration_seconds = int((now - job.start_time).total_seconds())
        if job.duration_seconds > 0:
            job.avg_speed = round(job.processed_rows / job.duration_seconds, 2)


def reconcile_orphans(
    store: JobStore,
    is_pid_alive: Callable[[int], bool],
    min_age_seconds: float = 0.0,
    supervised: Callable[[str], bool] = lambda job_id: False,
) -> Tuple[List[ExecutionJob], List[ExecutionJob]]:
    """Fail running records on this host whose process is gone.

    Records touched within min_age_seconds are left for a later pass: their
    monitor may have reaped the process and not yet committed the final
    status. The terminal write is conditional on the row still being running.
    Returns (jobs marked failed, running jobs whose pid is alive).
    """
    cutoff = datetime.utcnow() - timedelta(seconds=min_age_seconds)
    orphaned: List[ExecutionJob] = []
    live: List[ExecutionJob] = []
    for job in store.list_running():
        if supervised(job.id):
            continue
        host, pid = parse_process_handle(job.process_handle)
        if host is not None and host != HOSTNAME:
            continue
        if pid is not None and is_pid_alive(pid):
            live.append(job)
            continue
        if min_age_seconds > 0 and job.updated_at is not None and job.updated_at > cutoff:
            log.info("Running execution without a live pid was updated recently; skipping",
                     extra={"job_id": job.id, "stage": "recover"})
            continue

        def mutate(j: ExecutionJob) -> None:
            if supervised(j.id):
                raise InvalidStateError(f"Execution {j.id} is supervised", current_status=JobStatus.RUNNING.value)
            mark_terminal(j, JobStatus.FAILED, j.exit_code, ORPHANED_MESSAGE, None)

        try:
            orphaned.append(store.update(job.id, mutate, expected_status=JobStatus.RUNNING))
        except (InvalidStateError, NotFoundError):
            continue
        try:
            store.append_log(job.id, ORPHANED_MESSAGE)
        except StorageError:
            log.warning("Orphan log line not persisted", extra={"job_id": job.id, "stage": "recover"})
        log.warning("Marked orphaned execution as failed", extra={"job_id": job.id, "stage": "recover"})
    return orphaned, live


class ExecutionController:
    def __init__(
        self,
        store: JobStore,
        supervisor: ProcessSupervisor,
        broadcaster: ProgressBroadcaster,
        builder: CommandBuilder,
        resolver: ConnectionResolver,
        risk_analyzer: RiskAnalyzer | None = None,
        registry: ActiveTargetRegistry | None = None,
        log_flush_lines: int = 20,
        stop_jobs_on_shutdown: bool = True,
        orphan_grace_seconds: float = 0.0,
    ):
        self.store = store
        self.supervisor = supervisor
        self.broadcaster = broadcaster
        self.builder = builder
        self.resolver = resolver
        self.risk_analyzer = risk_analyzer or RiskAnalyzer()
        self.registry = registry or ActiveTargetRegistry()
        self.log_flush_lines = max(log_flush_lines, 1)
        self.stop_jobs_on_shutdown = stop_jobs_on_shutdown
        self.orphan_grace_seconds = orphan_grace_seconds
        self._handles: Dict[str, ProcessHandle] = {}
        self._monitors: Dict[str, threading.Thread] = {}
        self._handles_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, session_factory: sessionmaker) -> "ExecutionController":
        return cls(
            store=JobStore(
                session_factory,
                retry_attempts=settings.storage_retry_attempts,
                retry_backoff=settings.storage_retry_backoff,
            ),
            supervisor=ProcessSupervisor.from_settings(settings),
            broadcaster=ProgressBroadcaster(queue_size=settings.subscriber_queue_size),
            builder=CommandBuilder.from_settings(settings),
            resolver=build_resolver(settings),
            risk_analyzer=build_risk_analyzer(settings),
            log_flush_lines=settings.log_flush_lines,
            stop_jobs_on_shutdown=settings.stop_jobs_on_shutdown,
            orphan_grace_seconds=settings.orphan_grace_seconds,
        )

    # ------------------------------------------------------------------
    # preview / create
    # ------------------------------------------------------------------

    def _plan(self, target: Target, intent: Intent, params: ExecutionParams | None) -> Tuple[CommandPlan, Optional[TableStats]]:
        connection = self.resolver.resolve(target.connection_id)
        stats = self.resolver.table_stats(target.connection_id, target.database_name, target.table_name)
        annotations = self.risk_analyzer.analyze(target, intent.ddl_type, intent.original_ddl)
        plan = self.builder.build(target, intent, params, connection, stats, annotations)
        return plan, stats

    def preview(self, target: Target, intent: Intent, params: ExecutionParams | None = None) -> CommandPlan:
        plan, _ = self._plan(target, intent, params)
        return plan

    def create(self, target: Target, intent: Intent, params: ExecutionParams | None = None, created_by: str = "") -> ExecutionJob:
        plan, stats = self._plan(target, intent, params)
        job = self.store.create(
            connection_id=target.connection_id,
            database_name=target.database_name,
            table_name=target.table_name,
            ddl_type=intent.ddl_type,
            original_ddl=intent.original_ddl,
            generated_command=plan.command,
            execution_params=plan.params.to_dict(),
            created_by=created_by,
            total_rows=plan.table_rows,
            row_count_known=stats is not None,
        )
        self.store.append_log(job.id, f"Execution created by {created_by or 'unknown'}")
        self.broadcaster.publish(status_event(job))
        return job

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def start(self, job_id: str, actor: str = "") -> ExecutionJob:
        with self.store.locks.hold(job_id):
            job = self.store.get(job_id)
            status = JobStatus(job.status)
            if not is_allowed(status, JobEvent.START):
                raise InvalidStateError(f"Execution {job_id} is {status.value}; only pending executions can start",
                                        current_status=status.value)
            if not job.generated_command:
                raise InvalidStateError(f"Execution {job_id} has no generated command", current_status=status.value)

            target = job.target
            holder = self.registry.acquire(target, job_id)
            if holder is not None:
                raise ConflictError(f"{target} already has a running execution {holder}", conflicting_job_id=holder)

            try:
                other = self.store.find_running_on_target(target, exclude_id=job_id)
                if other is not None:
                    raise ConflictError(f"{target} already has a running execution {other.id}",
                                        conflicting_job_id=other.id)
                connection = self.resolver.resolve(job.connection_id)
                env = {"MYSQL_PWD": connection.password} if connection.password else {}
                handle = self.supervisor.spawn(job.generated_command, env)
            except ProcessError as e:
                self.registry.release(target, job_id)
                self._record_spawn_failure(job_id, e)
                raise
            except Exception:
                self.registry.release(target, job_id)
                raise

            try:
                job = self.store.update(job_id, lambda j: self._mark_running(j, handle), expected_status=JobStatus.PENDING)
            except Exception:
                self.supervisor.stop(handle, graceful=False)
                self.registry.release(target, job_id)
                raise

            with self._handles_lock:
                self._handles[job_id] = handle
                monitor = threading.Thread(
                    target=self._monitor,
                    args=(job_id, target, handle, job.total_rows, job.row_count_known),
                    name=f"osc-monitor-{job_id[:8]}",
                    daemon=True,
                )
                self._monitors[job_id] = monitor
            self.broadcaster.publish(status_event(job))
            monitor.start()
            log.info("Execution started on %s", target, extra={"job_id": job_id, "stage": "start"})
            self._audit(job_id, f"Execution started by {actor or 'unknown'} (pid {handle.pid})", "start")
            return job

    def _audit(self, job_id: str, line: str, stage: str) -> None:
        """Best-effort log line: a store outage is logged, not raised."""
        try:
            self.store.append_log(job_id, line)
        except StorageError:
            log.warning("Log line not persisted: %s", line, extra={"job_id": job_id, "stage": stage})

    @staticmethod
    def _mark_running(job: ExecutionJob, handle: ProcessHandle) -> None:
        job.status = JobStatus.RUNNING
        job.start_time = datetime.utcnow()
        job.process_handle = handle.handle_id
        job.current_stage = "starting"
        job.error_message = None
        job.exit_code = None

    def _record_spawn_failure(self, job_id: str, error: ProcessError) -> None:
        def mutate(job: ExecutionJob) -> None:
            now = datetime.utcnow()
            job.status = JobStatus.FAILED
            job.start_time = now
            job.end_time = now
            job.duration_seconds = 0
            job.exit_code = error.exit_code
            job.error_message = error.message
            job.current_stage = "spawn failed"

        try:
            job = self.store.update(job_id, mutate)
        except StorageError:
            log.exception("Could not record spawn failure", extra={"job_id": job_id, "stage": "start"})
            return
        self._audit(job_id, f"Failed to start: {error.message}", "start")
        log.error("Execution failed to start: %s", error.message, extra={"job_id": job_id, "stage": "start"})
        self.broadcaster.publish(status_event(job))

    # ------------------------------------------------------------------
    # supervision
    # ------------------------------------------------------------------

    def _monitor(self, job_id: str, target: Target, handle: ProcessHandle, total_rows: int, row_count_known: bool) -> None:
        tracker = ProgressTracker(total_rows=total_rows, row_count_known=row_count_known)
        buffer: List[str] = []
        exit: ProcessExit | None = None
        try:
            for event in self.supervisor.read_progress(handle):
                buffer.append(event.line)
                self.broadcaster.publish(ExecutionEvent("log", job_id, {"log_line": event.line}))
                if tracker.apply(event):
                    self._save_progress(job_id, tracker.snapshot)
                    self.broadcaster.publish(progress_event(job_id, tracker.snapshot))
                if len(buffer) >= self.log_flush_lines:
                    buffer = self._flush_logs(job_id, buffer)
            self._touch(job_id, "finishing")
            exit = self.supervisor.wait(handle)
        except Exception:
            log.exception("Monitor failed; killing process", extra={"job_id": job_id, "stage": "monitor"})
            self.supervisor.stop(handle, graceful=False)
            exit = self.supervisor.wait(handle)
        finally:
            self._flush_logs(job_id, buffer)
            self._finalize(job_id, target, handle, exit or ProcessExit(-1, list(handle.tail)), tracker)

    def _flush_logs(self, job_id: str, lines: List[str]) -> List[str]:
        if not lines:
            return []
        try:
            self.store.append_logs(job_id, lines)
        except StorageError:
            log.warning("Keeping %d log lines buffered", len(lines), extra={"job_id": job_id, "stage": "monitor"})
            return lines
        return []

    def _save_progress(self, job_id: str, snapshot: ProgressSnapshot) -> None:
        def mutate(job: ExecutionJob) -> None:
            if job.status != JobStatus.RUNNING:
                return
            job.total_rows = snapshot.total_rows
            job.row_count_known = snapshot.row_count_known
            job.processed_rows = snapshot.processed_rows
            job.current_speed = snapshot.current_speed
            if snapshot.current_stage:
                job.current_stage = snapshot.current_stage

        try:
            self.store.update(job_id, mutate)
        except StorageError:
            log.warning("Progress not persisted", extra={"job_id": job_id, "stage": "monitor"})

    def _touch(self, job_id: str, stage: str) -> None:
        """Refresh updated_at before reaping, so reconcile_orphans leaves the row to us."""
        def mutate(job: ExecutionJob) -> None:
            if job.status == JobStatus.RUNNING:
                job.current_stage = stage
                job.updated_at = datetime.utcnow()

        try:
            self.store.update(job_id, mutate)
        except StorageError:
            log.warning("Stage not persisted", extra={"job_id": job_id, "stage": "monitor"})

    def _finalize(self, job_id: str, target: Target, handle: ProcessHandle, exit: ProcessExit,
                  tracker: ProgressTracker | None) -> None:
        """Records the terminal status. Idempotent: a job already terminal is left alone."""
        job = None
        try:
            with self.store.locks.hold(job_id):
                current = self.store.get(job_id)
                if current.status == JobStatus.RUNNING:
                    error = None
                    if handle.stop_requested.is_set():
                        event = JobEvent.CANCEL if handle.stop_mode == "cancel" else JobEvent.STOP
                        error = f"{event.value} requested; process exited with code {exit.exit_code}"
                    elif exit.ok:
                        event = JobEvent.EXIT_OK
                        if tracker:
                            tracker.complete()
                    else:
                        event = JobEvent.EXIT_ERROR
                        error = error_from_exit(exit)
                    status = next_status(JobStatus.RUNNING, event)
                    snapshot = tracker.snapshot if tracker else None
                    job = self.store.update(job_id, lambda j: mark_terminal(j, status, exit.exit_code, error, snapshot),
                                            expected_status=JobStatus.RUNNING)
                    log.info("Execution %s (exit code %s)", status.value, exit.exit_code,
                             extra={"job_id": job_id, "stage": "finalize"})
            if job is not None:
                self.broadcaster.publish(status_event(job))
        except InvalidStateError as e:
            log.info("Terminal status already recorded elsewhere: %s", e, extra={"job_id": job_id, "stage": "finalize"})
        except OnlineDDLError:
            log.exception("Could not record terminal status", extra={"job_id": job_id, "stage": "finalize"})
        finally:
            with self._handles_lock:
                if self._handles.get(job_id) is handle:
                    del self._handles[job_id]
                    self._monitors.pop(job_id, None)
            self.registry.release(target, job_id)

    # ------------------------------------------------------------------
    # stop / cancel
    # ------------------------------------------------------------------

    def stop(self, job_id: str, actor: str = "") -> ExecutionJob:
        """Interrupt the tool and wait (bounded by the grace period) for it to exit."""
        return self._terminate(job_id, actor, JobEvent.STOP, graceful=True)

    def cancel(self, job_id: str, actor: str = "") -> ExecutionJob:
        """Kill the tool immediately."""
        return self._terminate(job_id, actor, JobEvent.CANCEL, graceful=False)

    def _terminate(self, job_id: str, actor: str, event: JobEvent, graceful: bool) -> ExecutionJob:
        with self.store.locks.hold(job_id):
            job = self.store.get(job_id)
            status = JobStatus(job.status)
            if not is_allowed(status, event):
                raise InvalidStateError(f"Execution {job_id} is {status.value}; only running executions can {event.value}",
                                        current_status=status.value)
            with self._handles_lock:
                handle = self._handles.get(job_id)
                monitor = self._monitors.get(job_id)
            if handle is None:
                return self._terminate_unsupervised(job, event, actor)
            handle.request_stop(event.value)
            target = job.target

        log.info("Sending %s to pid %s", event.value, handle.pid, extra={"job_id": job_id, "stage": event.value})
        exit_code = self.supervisor.stop(handle, graceful=graceful)
        self._audit(job_id, f"{event.value} requested by {actor or 'unknown'}", event.value)
        if monitor is not None and monitor.ident is not None and monitor is not threading.current_thread():
            monitor.join(timeout=self.supervisor.grace_seconds + 5)
        if self.store.get(job_id).status == JobStatus.RUNNING:
            self._finalize(job_id, target, handle, ProcessExit(exit_code, list(handle.tail)), None)
        return self.store.get(job_id)

    def _terminate_unsupervised(self, job: ExecutionJob, event: JobEvent, actor: str) -> ExecutionJob:
        host, pid = parse_process_handle(job.process_handle)
        if host == HOSTNAME and pid is not None and self.supervisor.is_pid_alive(pid):
            raise InvalidStateError(f"Execution {job.id} is running under another controller (pid {pid})",
                                    current_status=JobStatus.RUNNING.value)
        if host not in (None, HOSTNAME):
            raise InvalidStateError(f"Execution {job.id} is supervised on host {host}",
                                    current_status=JobStatus.RUNNING.value)
        message = f"{event.value} requested by {actor or 'unknown'}; no live process was found"
        job = self.store.update(job.id, lambda j: mark_terminal(j, JobStatus.CANCELLED, j.exit_code, message, None),
                                expected_status=JobStatus.RUNNING)
        self.registry.release(job.target, job.id)
        self.broadcaster.publish(status_event(job))
        return job

    # ------------------------------------------------------------------
    # retry / delete
    # ------------------------------------------------------------------

    def retry(self, job_id: str, actor: str = "") -> ExecutionJob:
        """Clone a terminal execution into a new pending one. The original is not touched."""
        source = self.store.get(job_id)
        status = JobStatus(source.status)
        if not is_allowed(status, JobEvent.RETRY):
            raise InvalidStateError(f"Execution {job_id} is {status.value}; only finished executions can be retried",
                                    current_status=status.value)
        job = self.store.create(
            connection_id=source.connection_id,
            database_name=source.database_name,
            table_name=source.table_name,
            ddl_type=source.ddl_type,
            original_ddl=source.original_ddl,
            generated_command=source.generated_command,
            execution_params=dict(source.execution_params or {}),
            created_by=actor or source.created_by,
            total_rows=source.total_rows if source.row_count_known else 0,
            row_count_known=source.row_count_known,
            retry_of=source.id,
        )
        self.store.append_log(job.id, f"Retry of {source.id} created by {actor or 'unknown'}")
        self.broadcaster.publish(status_event(job))
        return job

    def delete(self, job_id: str, actor: str = "") -> None:
        with self.store.locks.hold(job_id):
            job = self.store.get(job_id)
            status = JobStatus(job.status)
            if status == JobStatus.RUNNING:
                raise ConflictError(f"Execution {job_id} is running and cannot be deleted", conflicting_job_id=job_id)
            if not is_allowed(status, JobEvent.DELETE):
                raise InvalidStateError(f"Execution {job_id} cannot be deleted while {status.value}",
                                        current_status=status.value)
            self.store.delete(job_id)
        log.info("Execution deleted by %s", actor or "unknown", extra={"job_id": job_id, "stage": "delete"})
        self.broadcaster.publish(ExecutionEvent("status", job_id, {"status": "deleted"}))

    # ------------------------------------------------------------------
    # queries / events
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> ExecutionJob:
        return self.store.get(job_id)

    def get_logs(self, job_id: str, tail: int | None = None) -> List[str]:
        return self.store.get_logs(job_id, tail=tail)

    def list(self, f: JobFilter | None = None, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> JobPage:
        return self.store.list(f, page=page, size=size)

    def list_running(self) -> List[ExecutionJob]:
        return self.store.list_running()

    def stats(self, f: JobFilter | None = None) -> JobStats:
        return self.store.stats(f)

    def subscribe(self, job_id: str = ALL) -> Subscription:
        """Live events for one job (or ALL), preceded by the current status from the store."""
        sub = self.broadcaster.subscribe(job_id)
        try:
            jobs: Iterable[ExecutionJob] = self.store.list_running() if job_id == ALL else [self.store.get(job_id)]
        except OnlineDDLError:
            sub.close()
            raise
        for job in reversed(list(jobs)):
            sub.put_first(status_event(job))
        return sub

    def is_supervising(self, job_id: str) -> bool:
        with self._handles_lock:
            return job_id in self._handles

    # ------------------------------------------------------------------
    # recovery / shutdown
    # ------------------------------------------------------------------

    def recover(self, min_age_seconds: float | None = None) -> List[str]:
        """Reconcile running records with live processes.

        Records owned by this host whose pid is gone become failed; live
        unsupervised pids keep their target claimed. Returns the ids marked failed.
        """
        if min_age_seconds is None:
            min_age_seconds = self.orphan_grace_seconds
        orphaned, live = reconcile_orphans(self.store, self.supervisor.is_pid_alive, min_age_seconds,
                                           supervised=self.is_supervising)
        for job in live:
            self.registry.acquire(job.target, job.id)
            log.warning("Running execution has a live but unsupervised pid (%s)", job.process_handle,
                        extra={"job_id": job.id, "stage": "recover"})
        for job in orphaned:
            self.registry.release(job.target, job.id)
            self.broadcaster.publish(status_event(job))
        return [job.id for job in orphaned]

    def shutdown(self) -> None:
        with self._handles_lock:
            job_ids = list(self._handles)
        if self.stop_jobs_on_shutdown:
            for job_id in job_ids:
                try:
                    self.stop(job_id, actor="system:shutdown")
                except OnlineDDLError as e:
                    log.warning("Could not stop execution on shutdown: %s", e, extra={"job_id": job_id, "stage": "shutdown"})
        with self._handles_lock:
            monitors = list(self._monitors.values())
        for monitor in monitors:
            monitor.join(timeout=self.supervisor.grace_seconds + 5)
