from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

class DDLType(str, Enum):
    FRAGMENT = "fragment"
    ADD_COLUMN = "add_column"
    MODIFY_COLUMN = "modify_column"
    DROP_COLUMN = "drop_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    OTHER = "other"
    CUSTOM = "custom"

class JobEvent(str, Enum):
    START = "start"
    STOP = "stop"
    CANCEL = "cancel"
    EXIT_OK = "exit_ok"
    EXIT_ERROR = "exit_error"
    DELETE = "delete"
    RETRY = "retry"

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

# (from, event) -> to. DELETE and RETRY map to the status the source job keeps.
TRANSITIONS: Dict[Tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.PENDING, JobEvent.START): JobStatus.RUNNING,
    (JobStatus.RUNNING, JobEvent.STOP): JobStatus.CANCELLED,
    (JobStatus.RUNNING, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.RUNNING, JobEvent.EXIT_OK): JobStatus.COMPLETED,
    (JobStatus.RUNNING, JobEvent.EXIT_ERROR): JobStatus.FAILED,
    (JobStatus.PENDING, JobEvent.DELETE): JobStatus.PENDING,
    **{(s, JobEvent.DELETE): s for s in TERMINAL_STATUSES},
    **{(s, JobEvent.RETRY): s for s in TERMINAL_STATUSES},
}

def is_allowed(status: JobStatus, event: JobEvent) -> bool:
    return (JobStatus(status), event) in TRANSITIONS

def next_status(status: JobStatus, event: JobEvent) -> JobStatus:
    return TRANSITIONS[(JobStatus(status), event)]

@dataclass(frozen=True)
class Target:
    """The (connection, database, table) triple: the unit of mutual exclusion."""
    connection_id: str
    database_name: str
    table_name: str

    def key(self) -> Tuple[str, str, str]:
        return (self.connection_id, self.database_name, self.table_name)

    def __str__(self) -> str:
        return f"{self.connection_id}/{self.database_name}.{self.table_name}"
