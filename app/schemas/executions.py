from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from app.core.command_builder import CommandPlan, ExecutionParams, Intent
from app.core.workflow import DDLType, JobStatus, Target


class ExecutionParamsIn(BaseModel):
    chunk_size: Optional[int] = Field(None, examples=[1000])
    max_load: Optional[str] = Field(None, examples=["Threads_running=25"])
    critical_load: Optional[str] = Field(None, examples=["Threads_running=50"])
    charset: Optional[str] = Field(None, examples=["utf8mb4"])
    lock_wait_timeout: Optional[int] = None
    no_check_alter: bool = False
    dry_run: bool = False
    drop_old_table: bool = True
    other_params: Optional[str] = Field(None, examples=["--recursion-method=none"])

    def to_params(self) -> ExecutionParams:
        return ExecutionParams(**self.model_dump())


class ExecutionRequest(BaseModel):
    connection_id: str = Field(..., examples=["1"])
    database_name: str = Field(..., examples=["shop"])
    table_name: str = Field(..., examples=["orders"])
    ddl_type: DDLType = DDLType.FRAGMENT
    original_ddl: Optional[str] = Field(None, examples=["ALTER TABLE orders ADD COLUMN note VARCHAR(255)"])
    execution_params: ExecutionParamsIn = Field(default_factory=ExecutionParamsIn)

    def target(self) -> Target:
        return Target(self.connection_id, self.database_name, self.table_name)

    def intent(self) -> Intent:
        return Intent(ddl_type=self.ddl_type, original_ddl=self.original_ddl)


class RiskResponse(BaseModel):
    level: str
    warnings: List[str] = []
    suggestions: List[str] = []
    annotations: List[str] = []


class PreviewResponse(BaseModel):
    command: str
    alter_statement: str
    execution_params: Dict[str, Any]
    risk: RiskResponse
    recommended_chunk_size: int
    estimated_time: Optional[str] = None
    table_rows: int = 0

    @classmethod
    def from_plan(cls, plan: CommandPlan) -> "PreviewResponse":
        return cls(
            command=plan.command,
            alter_statement=plan.alter_statement,
            execution_params=plan.params.to_dict(),
            risk=RiskResponse(**plan.risk.to_dict()),
            recommended_chunk_size=plan.recommended_chunk_size,
            estimated_time=plan.estimated_time,
            table_rows=plan.table_rows,
        )


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    connection_id: str
    database_name: str
    table_name: str
    ddl_type: DDLType
    original_ddl: Optional[str] = None
    generated_command: str
    execution_params: Dict[str, Any] = {}
    status: JobStatus
    progress: float = 0.0
    processed_rows: int = 0
    total_rows: int = 0
    row_count_known: bool = False
    current_speed: float = 0.0
    avg_speed: Optional[float] = None
    current_stage: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    created_by: str = ""
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    retry_of: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job) -> "ExecutionResponse":
        resp = cls.model_validate(job)
        resp.progress = job.progress_percent
        return resp


class ExecutionListResponse(BaseModel):
    items: List[ExecutionResponse]
    total: int
    page: int
    size: int


class ExecutionLogsResponse(BaseModel):
    execution_id: str
    lines: List[str]


class StatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    success_rate: Optional[float] = None
    avg_duration_seconds: Optional[float] = None


class ErrorResponse(BaseModel):
    code: str
    message: str
    conflicting_job_id: Optional[str] = None
    current_status: Optional[str] = None
    exit_code: Optional[int] = None
    tail: Optional[List[str]] = None
