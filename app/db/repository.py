"""Durable job store.

All reads and writes go through JobStore. Writes to one job are serialized
by a per-id lock and committed in a single transaction, so readers only see
committed snapshots. Transient database failures are retried with backoff
and then surfaced as StorageError; a failed write leaves the previously
committed row untouched.
"""
from __future__ import annotations
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, TypeVar
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from app.core.errors import ConflictError, InvalidStateError, NotFoundError, OnlineDDLError, StorageError
from app.core.workflow import JobStatus, TERMINAL_STATUSES, Target
from app.db.models import ExecutionJob, ExecutionLogLine

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 20

IMMUTABLE_FIELDS = (
    "id", "connection_id", "database_name", "table_name",
    "ddl_type", "original_ddl", "created_by", "created_at", "retry_of",
)


@dataclass
class JobFilter:
    status: JobStatus | None = None
    connection_id: str | None = None
    created_by: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    keyword: str | None = None


@dataclass
class JobPage:
    items: List[ExecutionJob]
    total: int
    page: int
    size: int


@dataclass
class JobStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    success_rate: float | None = None
    avg_duration_seconds: float | None = None


class KeyedLocks:
    """One re-entrant lock per key, alive only while someone holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, List] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class JobStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        retry_attempts: int = 3,
        retry_backoff: float = 0.2,
        locks: KeyedLocks | None = None,
    ):
        self.session_factory = session_factory
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_backoff = retry_backoff
        self.locks = locks if locks is not None else KeyedLocks()

    def _run(self, fn: Callable[[Session], T], write: bool = False) -> T:
        last_error: Exception | None = None
        for attempt in range(self.retry_attempts):
            session = self.session_factory()
            try:
                result = fn(session)
                if write:
                    session.commit()
                return result
            except OnlineDDLError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                last_error = e
                if attempt < self.retry_attempts - 1:
                    delay = self.retry_backoff * (2 ** attempt)
                    log.warning("Job store operation failed, retrying in %.2fs (attempt %d/%d): %s",
                                delay, attempt + 1, self.retry_attempts, e)
                    time.sleep(delay)
            finally:
                session.close()
        log.error("Job store unavailable after %d attempts: %s", self.retry_attempts, last_error)
        raise StorageError(f"Job store unavailable: {last_error}")

    @staticmethod
    def _load(session: Session, job_id: str, for_update: bool = False) -> ExecutionJob:
        stmt = select(ExecutionJob).where(ExecutionJob.id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        job = session.scalars(stmt).first()
        if job is None:
            raise NotFoundError(f"Execution {job_id} not found")
        return job

    def create(self, **fields) -> ExecutionJob:
        fields.setdefault("status", JobStatus.PENDING)
        if fields["status"] != JobStatus.PENDING:
            raise InvalidStateError("New executions start as pending", current_status=str(fields["status"]))
        if not fields.get("generated_command"):
            raise InvalidStateError("generated_command is required")

        def _create(session: Session) -> ExecutionJob:
            job = ExecutionJob(**fields)
            session.add(job)
            session.flush()
            return job

        job = self._run(_create, write=True)
        log.info("Created execution for %s", job.target, extra={"job_id": job.id, "stage": "create"})
        return job

    def get(self, job_id: str) -> ExecutionJob:
        return self._run(lambda s: self._load(s, job_id))

    def update(self, job_id: str, mutator: Callable[[ExecutionJob], None],
               expected_status: JobStatus | None = None) -> ExecutionJob:
        """Apply mutator to the job inside one transaction.

        The mutator may raise to abort; nothing is written in that case. With
        expected_status, the row is re-checked inside the transaction and an
        InvalidStateError is raised if another writer has moved it on.
        """
        def _update(session: Session) -> ExecutionJob:
            job = self._load(session, job_id, for_update=True)
            before_status = JobStatus(job.status)
            if expected_status is not None and before_status != expected_status:
                raise InvalidStateError(f"Execution {job_id} is {before_status.value}, expected {expected_status.value}",
                                        current_status=before_status.value)
            before = {name: getattr(job, name) for name in IMMUTABLE_FIELDS}
            before_command = job.generated_command
            mutator(job)
            for name, value in before.items():
                if getattr(job, name) != value:
                    raise InvalidStateError(f"{name} is immutable", current_status=before_status.value)
            if before_status != JobStatus.PENDING and job.generated_command != before_command:
                raise InvalidStateError("generated_command is immutable once started", current_status=before_status.value)
            self._enforce_invariants(job)
            session.flush()
            return job

        with self.locks.hold(job_id):
            return self._run(_update, write=True)

    @staticmethod
    def _enforce_invariants(job: ExecutionJob) -> None:
        status = JobStatus(job.status)
        if status == JobStatus.RUNNING and not job.generated_command:
            raise InvalidStateError("generated_command must be set before running", current_status=status.value)
        job.processed_rows = max(job.processed_rows or 0, 0)
        job.total_rows = max(job.total_rows or 0, 0)
        if job.total_rows > 0 and job.processed_rows > job.total_rows:
            job.processed_rows = job.total_rows
        if status in TERMINAL_STATUSES:
            if job.end_time is None:
                job.end_time = datetime.utcnow()
            job.process_handle = None
        else:
            job.end_time = None

    def delete(self, job_id: str) -> None:
        def _delete(session: Session) -> None:
            job = self._load(session, job_id, for_update=True)
            if job.status == JobStatus.RUNNING:
                raise ConflictError(f"Execution {job_id} is running and cannot be deleted", conflicting_job_id=job_id)
            session.execute(delete(ExecutionLogLine).where(ExecutionLogLine.job_id == job_id))
            session.delete(job)

        with self.locks.hold(job_id):
            self._run(_delete, write=True)
        log.info("Deleted execution", extra={"job_id": job_id, "stage": "delete"})

    def append_log(self, job_id: str, line: str) -> None:
        self.append_logs(job_id, [line])

    def append_logs(self, job_id: str, lines: List[str]) -> None:
        if not lines:
            return

        def _append(session: Session) -> None:
            last = session.scalar(
                select(func.max(ExecutionLogLine.seq)).where(ExecutionLogLine.job_id == job_id)
            )
            seq = (last or 0) + 1
            now = datetime.utcnow()
            for offset, line in enumerate(lines):
                session.add(ExecutionLogLine(job_id=job_id, seq=seq + offset, line=line, created_at=now))

        with self.locks.hold(job_id):
            self._run(_append, write=True)

    def get_logs(self, job_id: str, tail: int | None = None) -> List[str]:
        def _logs(session: Session) -> List[str]:
            self._load(session, job_id)
            stmt = select(ExecutionLogLine.line).where(ExecutionLogLine.job_id == job_id)
            if tail:
                stmt = stmt.order_by(ExecutionLogLine.seq.desc()).limit(tail)
                return list(reversed(session.scalars(stmt).all()))
            return list(session.scalars(stmt.order_by(ExecutionLogLine.seq)).all())

        return self._run(_logs)

    @staticmethod
    def _apply_filter(stmt, f: JobFilter):
        if f.status:
            stmt = stmt.where(ExecutionJob.status == JobStatus(f.status))
        if f.connection_id:
            stmt = stmt.where(ExecutionJob.connection_id == f.connection_id)
        if f.created_by:
            stmt = stmt.where(ExecutionJob.created_by == f.created_by)
        if f.start_date:
            stmt = stmt.where(ExecutionJob.created_at >= f.start_date)
        if f.end_date:
            stmt = stmt.where(ExecutionJob.created_at <= f.end_date)
        if f.keyword:
            like = f"%{f.keyword}%"
            stmt = stmt.where(or_(
                ExecutionJob.id.like(like),
                ExecutionJob.database_name.like(like),
                ExecutionJob.table_name.like(like),
            ))
        return stmt

    def list(self, f: JobFilter | None = None, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> JobPage:
        f = f or JobFilter()
        page = max(page, 1)
        size = min(max(size, 1), MAX_PAGE_SIZE)

        def _list(session: Session) -> JobPage:
            count_stmt = self._apply_filter(select(func.count()).select_from(ExecutionJob), f)
            total = session.scalar(count_stmt) or 0
            stmt = self._apply_filter(select(ExecutionJob), f)
            stmt = stmt.order_by(ExecutionJob.created_at.desc(), ExecutionJob.id.asc())
            stmt = stmt.limit(size).offset((page - 1) * size)
            return JobPage(items=list(session.scalars(stmt).all()), total=total, page=page, size=size)

        return self._run(_list)

    def list_running(self) -> List[ExecutionJob]:
        def _running(session: Session) -> List[ExecutionJob]:
            stmt = (select(ExecutionJob)
                    .where(ExecutionJob.status == JobStatus.RUNNING)
                    .order_by(ExecutionJob.start_time.asc(), ExecutionJob.id.asc()))
            return list(session.scalars(stmt).all())

        return self._run(_running)

    def find_running_on_target(self, target: Target, exclude_id: str | None = None) -> Optional[ExecutionJob]:
        def _find(session: Session) -> Optional[ExecutionJob]:
            stmt = select(ExecutionJob).where(
                ExecutionJob.status == JobStatus.RUNNING,
                ExecutionJob.connection_id == target.connection_id,
                ExecutionJob.database_name == target.database_name,
                ExecutionJob.table_name == target.table_name,
            )
            if exclude_id:
                stmt = stmt.where(ExecutionJob.id != exclude_id)
            return session.scalars(stmt.limit(1)).first()

        return self._run(_find)

    def stats(self, f: JobFilter | None = None) -> JobStats:
        f = f or JobFilter()

        def _stats(session: Session) -> JobStats:
            stmt = self._apply_filter(
                select(ExecutionJob.status, func.count()).select_from(ExecutionJob), f
            ).group_by(ExecutionJob.status)
            by_status = {s.value: 0 for s in JobStatus}
            for status, count in session.execute(stmt).all():
                by_status[JobStatus(status).value] = count

            avg_stmt = self._apply_filter(
                select(func.avg(ExecutionJob.duration_seconds)).select_from(ExecutionJob), f
            ).where(ExecutionJob.status == JobStatus.COMPLETED, ExecutionJob.duration_seconds.is_not(None))
            avg_duration = session.scalar(avg_stmt)

            finished = sum(by_status[s.value] for s in TERMINAL_STATUSES)
            success_rate = round(by_status[JobStatus.COMPLETED.value] / finished * 100, 2) if finished else None
            return JobStats(
                total=sum(by_status.values()),
                by_status=by_status,
                success_rate=success_rate,
                avg_duration_seconds=round(float(avg_duration), 2) if avg_duration is not None else None,
            )

        return self._run(_stats)
