from __future__ import annotations


class OnlineDDLError(Exception):
    """Base class for errors raised by the execution engine."""
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(OnlineDDLError):
    """Bad input to the command builder. User-correctable."""
    code = "validation_error"


class NotFoundError(OnlineDDLError):
    code = "not_found"


class ConflictError(OnlineDDLError):
    """Admission violation: target already running, delete while running."""
    code = "conflict"

    def __init__(self, message: str, conflicting_job_id: str | None = None):
        super().__init__(message)
        self.conflicting_job_id = conflicting_job_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["conflicting_job_id"] = self.conflicting_job_id
        return data


class InvalidStateError(OnlineDDLError):
    """Lifecycle command is not legal for the job's current status."""
    code = "invalid_state"

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_status"] = self.current_status
        return data


class ProcessError(OnlineDDLError):
    code = "process_error"

    def __init__(self, message: str, exit_code: int | None = None, tail: list[str] | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.tail = tail or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["exit_code"] = self.exit_code
        data["tail"] = self.tail
        return data


class StorageError(OnlineDDLError):
    """Job store unavailable after bounded retries."""
    code = "storage_error"
