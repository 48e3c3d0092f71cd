from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.core.workflow import DDLType, JobStatus, Target

def _enum(enum_cls, name: str):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20)

class ExecutionJob(Base):
    __tablename__ = "execution_jobs"
    __table_args__ = (
        Index("ix_execution_jobs_target", "connection_id", "database_name", "table_name"),
        Index("ix_execution_jobs_status", "status"),
        Index("ix_execution_jobs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    database_name: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(200), nullable=False)

    ddl_type: Mapped[DDLType] = mapped_column(_enum(DDLType, "ddl_type"), nullable=False)
    original_ddl: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_command: Mapped[str] = mapped_column(Text, nullable=False)
    execution_params: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus, "job_status"), default=JobStatus.PENDING, nullable=False)

    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_count_known: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_speed: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)

    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_of: Mapped[str | None] = mapped_column(String(36), nullable=True)

    process_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def target(self) -> Target:
        return Target(self.connection_id, self.database_name, self.table_name)

    @property
    def progress_percent(self) -> float:
        if not self.row_count_known or not self.total_rows:
            return 0.0
        return round(self.processed_rows / self.total_rows * 100, 2)

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal


class ExecutionLogLine(Base):
    __tablename__ = "execution_job_logs"
    __table_args__ = (
        Index("ix_execution_job_logs_job_seq", "job_id", "seq"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("execution_jobs.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    line: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
