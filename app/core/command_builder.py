"""pt-online-schema-change command builder.

Pure: the same (target, intent, params, connection, table stats) always
yields a byte-identical command. Flags are emitted in a fixed order and the
password never appears in the command; it is handed to the process through
MYSQL_PWD when the job is spawned.
"""
from __future__ import annotations
import re
import shlex
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional
from app.core.connections import ConnectionInfo, TableStats
from app.core.errors import ValidationError
from app.core.risk import RiskAssessment, assess
from app.core.workflow import DDLType, Target

FRAGMENT_ALTER = "ENGINE=InnoDB"

LOAD_PREDICATE = re.compile(r"^[A-Za-z_]+[=:]\d+(?:,[A-Za-z_]+[=:]\d+)*$")
CHARSET = re.compile(r"^[A-Za-z0-9_]+$")
IDENTIFIER = re.compile(r"^[A-Za-z0-9_$\-]+$")
ALTER_TABLE_PREFIX = re.compile(r"^\s*ALTER\s+TABLE\s+\S+\s+(.+)$", re.IGNORECASE | re.DOTALL)

FORBIDDEN_OPERATIONS = {
    "DROP TABLE": re.compile(r"\bDROP\s+TABLE\b"),
    "DROP DATABASE": re.compile(r"\bDROP\s+DATABASE\b"),
    "TRUNCATE": re.compile(r"\bTRUNCATE\b"),
    "DELETE": re.compile(r"(?<!ON )\bDELETE\b"),
}

VALID_OPERATIONS = (
    "ADD COLUMN", "ADD INDEX", "ADD KEY", "ADD UNIQUE", "ADD FULLTEXT", "ADD SPATIAL",
    "DROP COLUMN", "DROP INDEX", "DROP KEY",
    "MODIFY COLUMN", "CHANGE COLUMN", "ALTER COLUMN",
    "ENGINE=", "AUTO_INCREMENT=", "COMMENT=", "ROW_FORMAT=",
    "ADD CONSTRAINT", "DROP CONSTRAINT", "DROP FOREIGN KEY",
    "ADD PRIMARY KEY", "DROP PRIMARY KEY",
    "CONVERT TO CHARACTER SET",
)

# Typed intents must carry at least one clause of their own kind.
TYPED_OPERATIONS: Dict[DDLType, tuple] = {
    DDLType.ADD_COLUMN: ("ADD COLUMN",),
    DDLType.MODIFY_COLUMN: ("MODIFY COLUMN", "CHANGE COLUMN", "ALTER COLUMN"),
    DDLType.DROP_COLUMN: ("DROP COLUMN",),
    DDLType.ADD_INDEX: ("ADD INDEX", "ADD KEY", "ADD UNIQUE", "ADD PRIMARY KEY", "ADD FULLTEXT", "ADD SPATIAL"),
    DDLType.DROP_INDEX: ("DROP INDEX", "DROP KEY", "DROP PRIMARY KEY"),
}

# Flags the builder owns; other_params may not override them.
MANAGED_FLAGS = frozenset({
    "--host", "--port", "--user", "--password", "--alter", "--chunk-size",
    "--max-load", "--critical-load", "--check-interval", "--max-lag",
    "--charset", "--progress", "--set-vars", "--no-check-alter", "--print",
    "--execute", "--dry-run", "--drop-old-table", "--no-drop-old-table",
    "--statistics",
})


@dataclass(frozen=True)
class Intent:
    ddl_type: DDLType
    original_ddl: str | None = None


@dataclass(frozen=True)
class ExecutionParams:
    chunk_size: int | None = None
    max_load: str | None = None
    critical_load: str | None = None
    charset: str | None = None
    lock_wait_timeout: int | None = None
    no_check_alter: bool = False
    dry_run: bool = False
    drop_old_table: bool = True
    other_params: str | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ExecutionParams":
        data = data or {}
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BuilderDefaults:
    chunk_size: int = 1000
    max_load: str = "Threads_running=25"
    critical_load: str = "Threads_running=50"
    charset: str = "utf8mb4"
    check_interval: int = 1
    max_lag: int = 1
    progress: str = "time,5"

    @classmethod
    def from_settings(cls, settings) -> "BuilderDefaults":
        return cls(
            chunk_size=settings.default_chunk_size,
            max_load=settings.default_max_load,
            critical_load=settings.default_critical_load,
            charset=settings.default_charset,
            check_interval=settings.default_check_interval,
            max_lag=settings.default_max_lag,
            progress=settings.default_progress,
        )


@dataclass
class CommandPlan:
    command: str
    alter_statement: str
    params: ExecutionParams
    risk: RiskAssessment
    recommended_chunk_size: int
    estimated_time: str | None = None
    table_rows: int = 0
    argv: List[str] = field(default_factory=list)


def recommended_chunk_size(rows: int, default: int = 1000) -> int:
    if rows <= 0:
        return default
    if rows < 100_000:
        return 1000
    if rows < 1_000_000:
        return 2000
    if rows < 10_000_000:
        return 5000
    return 8000


def estimate_execution_time(rows: int, rows_per_second: int = 1000) -> str | None:
    if rows <= 0:
        return None
    seconds = rows // rows_per_second
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds // 60} minutes"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def clean_alter_statement(ddl: str) -> str:
    sql = ddl.strip().rstrip(";").strip()
    m = ALTER_TABLE_PREFIX.match(sql)
    if m:
        sql = m.group(1).strip()
    if not sql:
        raise ValidationError("ALTER statement is empty")
    return sql


def vet_alter_statement(ddl_type: DDLType, sql: str) -> None:
    upper = re.sub(r"\s+", " ", sql.upper())
    for name, pattern in FORBIDDEN_OPERATIONS.items():
        if pattern.search(upper):
            raise ValidationError(f"{name} is not allowed in an online schema change")
    if not any(op in upper for op in VALID_OPERATIONS):
        raise ValidationError("Unsupported ALTER operation")
    expected = TYPED_OPERATIONS.get(ddl_type)
    if expected and not any(op in upper for op in expected):
        raise ValidationError(
            f"ALTER statement does not match ddl_type {ddl_type.value}: expected one of {', '.join(expected)}"
        )


class CommandBuilder:
    def __init__(self, tool: str = "pt-online-schema-change", defaults: BuilderDefaults | None = None):
        self.tool = tool
        self.defaults = defaults or BuilderDefaults()

    @classmethod
    def from_settings(cls, settings) -> "CommandBuilder":
        return cls(tool=settings.osc_tool, defaults=BuilderDefaults.from_settings(settings))

    def build(
        self,
        target: Target,
        intent: Intent,
        params: ExecutionParams | None,
        connection: ConnectionInfo,
        table_stats: Optional[TableStats] = None,
        annotations: Iterable[str] = (),
    ) -> CommandPlan:
        self._validate_target(target, connection)
        ddl_type = self._ddl_type(intent.ddl_type)
        rows = table_stats.rows if table_stats else 0
        effective = self._resolve_params(params or ExecutionParams(), connection, rows)
        alter = self._alter_statement(ddl_type, intent.original_ddl)

        argv = self._argv(target, connection, alter, effective)
        command = " ".join([self.tool] + [shlex.quote(a) for a in argv])

        risk = assess(
            ddl_type,
            alter,
            target.database_name,
            host=connection.host,
            environment=connection.environment,
            table_rows=rows,
        )
        risk.annotations.extend(annotations)

        return CommandPlan(
            command=command,
            alter_statement=alter,
            params=effective,
            risk=risk,
            recommended_chunk_size=recommended_chunk_size(rows, self.defaults.chunk_size),
            estimated_time=estimate_execution_time(rows),
            table_rows=rows,
            argv=argv,
        )

    def _validate_target(self, target: Target, connection: ConnectionInfo) -> None:
        if not target.connection_id:
            raise ValidationError("connection_id is required")
        for label, value in (("database_name", target.database_name), ("table_name", target.table_name)):
            if not value:
                raise ValidationError(f"{label} is required")
            if not IDENTIFIER.match(value):
                raise ValidationError(f"{label} contains unsupported characters: {value!r}")
        if not connection.host:
            raise ValidationError(f"Connection {target.connection_id} has no host")
        if not 0 < connection.port < 65536:
            raise ValidationError(f"Connection {target.connection_id} has invalid port {connection.port}")

    def _ddl_type(self, value) -> DDLType:
        try:
            return DDLType(value)
        except ValueError:
            raise ValidationError(f"Unsupported ddl_type: {value}") from None

    def _alter_statement(self, ddl_type: DDLType, original_ddl: str | None) -> str:
        if ddl_type == DDLType.FRAGMENT:
            return FRAGMENT_ALTER
        if not original_ddl or not original_ddl.strip():
            raise ValidationError(f"original_ddl is required for ddl_type {ddl_type.value}")
        sql = clean_alter_statement(original_ddl)
        vet_alter_statement(ddl_type, sql)
        return sql

    def _resolve_params(self, params: ExecutionParams, connection: ConnectionInfo, rows: int) -> ExecutionParams:
        chunk_size = params.chunk_size
        if chunk_size is None:
            chunk_size = recommended_chunk_size(rows, self.defaults.chunk_size)
        elif isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ValidationError(f"chunk_size must be a positive integer, got {chunk_size!r}")

        max_load = params.max_load or self.defaults.max_load
        critical_load = params.critical_load or self.defaults.critical_load
        for label, value in (("max_load", max_load), ("critical_load", critical_load)):
            if not LOAD_PREDICATE.match(value):
                raise ValidationError(f"{label} must look like 'Threads_running=25', got {value!r}")

        charset = params.charset if params.charset is not None else (connection.charset or self.defaults.charset)
        if not charset or not CHARSET.match(charset):
            raise ValidationError(f"charset is invalid: {charset!r}")

        lock_wait_timeout = params.lock_wait_timeout
        if lock_wait_timeout is not None and (
            isinstance(lock_wait_timeout, bool) or not isinstance(lock_wait_timeout, int) or lock_wait_timeout < 1
        ):
            raise ValidationError(f"lock_wait_timeout must be a positive number of seconds, got {lock_wait_timeout!r}")

        if params.other_params:
            self._extra_tokens(params.other_params)

        return replace(
            params,
            chunk_size=chunk_size,
            max_load=max_load,
            critical_load=critical_load,
            charset=charset,
            lock_wait_timeout=lock_wait_timeout,
        )

    def _extra_tokens(self, other_params: str) -> List[str]:
        try:
            tokens = shlex.split(other_params)
        except ValueError as e:
            raise ValidationError(f"other_params cannot be parsed: {e}") from e
        for token in tokens:
            if not token.startswith("--"):
                raise ValidationError(f"other_params entries must be --flags, got {token!r}")
            if token.split("=", 1)[0] in MANAGED_FLAGS:
                raise ValidationError(f"{token.split('=', 1)[0]} is managed by the builder and cannot be overridden")
        return tokens

    def _argv(self, target: Target, connection: ConnectionInfo, alter: str, p: ExecutionParams) -> List[str]:
        d = self.defaults
        argv = [
            f"--host={connection.host}",
            f"--port={connection.port}",
            f"--user={connection.username}",
            f"D={target.database_name},t={target.table_name}",
            f"--alter={alter}",
            f"--chunk-size={p.chunk_size}",
            f"--max-load={p.max_load}",
            f"--critical-load={p.critical_load}",
        ]
        if d.check_interval > 0:
            argv.append(f"--check-interval={d.check_interval}")
        if d.max_lag > 0:
            argv.append(f"--max-lag={d.max_lag}")
        argv.append(f"--charset={p.charset}")
        if d.progress:
            argv.append(f"--progress={d.progress}")
        if p.lock_wait_timeout is not None:
            argv.append(f"--set-vars=lock_wait_timeout={p.lock_wait_timeout}")
        if p.no_check_alter:
            argv.append("--no-check-alter")
        argv.append("--print")
        argv.append("--dry-run" if p.dry_run else "--execute")
        argv.append("--drop-old-table" if p.drop_old_table else "--no-drop-old-table")
        argv.append("--statistics")
        if p.other_params:
            argv.extend(self._extra_tokens(p.other_params))
        return argv
