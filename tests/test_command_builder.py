"""Tests for CommandBuilder: flag order, determinism and input vetting."""
import shlex
import pytest
from app.core.command_builder import (
    CommandBuilder,
    ExecutionParams,
    Intent,
    clean_alter_statement,
    estimate_execution_time,
    recommended_chunk_size,
)
from app.core.connections import ConnectionInfo, TableStats
from app.core.errors import ValidationError
from app.core.workflow import DDLType, Target

CONN = ConnectionInfo(id="1", host="db.local", port=3306, username="osc", password="s3cret")
DEMO = Target("1", "shop", "t_demo")


def build(intent=Intent(DDLType.FRAGMENT), params=None, target=DEMO, connection=CONN, stats=None, **kwargs):
    return CommandBuilder(**kwargs).build(target, intent, params, connection, stats)


def test_preview_no_check_alter_toggle_on_t_demo():
    """Only the no-check flag differs between the two previews."""
    off = build(params=ExecutionParams(no_check_alter=False))
    on = build(params=ExecutionParams(no_check_alter=True))

    assert "pt-online-schema-change" in off.command
    assert "--no-check-alter" not in off.command
    assert "--no-check-alter" in on.command

    off_tokens = shlex.split(off.command)
    on_tokens = shlex.split(on.command)
    assert len(on_tokens) == len(off_tokens) + 1
    on_tokens.remove("--no-check-alter")
    assert on_tokens == off_tokens


def test_build_is_deterministic():
    intent = Intent(DDLType.ADD_COLUMN, "ALTER TABLE t_demo ADD COLUMN note VARCHAR(255) NOT NULL DEFAULT '';")
    params = ExecutionParams(chunk_size=500, lock_wait_timeout=5, other_params="--recursion-method=none")
    first = build(intent=intent, params=params)
    second = build(intent=intent, params=params)
    assert first.command == second.command
    assert first.argv == second.argv


def test_flag_order_and_password_never_in_command():
    plan = build(params=ExecutionParams(chunk_size=2000, lock_wait_timeout=10))
    argv = plan.argv
    assert argv[:5] == [
        "--host=db.local",
        "--port=3306",
        "--user=osc",
        "D=shop,t=t_demo",
        "--alter=ENGINE=InnoDB",
    ]
    assert argv.index("--chunk-size=2000") < argv.index("--max-load=Threads_running=25")
    assert argv.index("--set-vars=lock_wait_timeout=10") < argv.index("--print")
    assert argv[-4:] == ["--print", "--execute", "--drop-old-table", "--statistics"]
    assert "s3cret" not in plan.command
    assert not any(a.startswith("--password") for a in argv)


def test_dry_run_replaces_execute():
    plan = build(params=ExecutionParams(dry_run=True))
    assert "--dry-run" in plan.argv
    assert "--execute" not in plan.argv


def test_alter_statement_is_cleaned_to_clauses():
    plan = build(intent=Intent(DDLType.ADD_INDEX, "alter table `t_demo` ADD INDEX idx_created (created_at);"))
    assert plan.alter_statement == "ADD INDEX idx_created (created_at)"
    assert "--alter=ADD INDEX idx_created (created_at)" in plan.argv


@pytest.mark.parametrize("chunk_size", [0, -5])
def test_non_positive_chunk_size_rejected(chunk_size):
    with pytest.raises(ValidationError):
        build(params=ExecutionParams(chunk_size=chunk_size))


@pytest.mark.parametrize("timeout", [0, -1, True])
def test_lock_wait_timeout_below_one_rejected(timeout):
    with pytest.raises(ValidationError):
        build(params=ExecutionParams(lock_wait_timeout=timeout))


def test_lock_wait_timeout_of_one_is_emitted():
    plan = build(params=ExecutionParams(lock_wait_timeout=1))
    assert "--set-vars=lock_wait_timeout=1" in plan.argv


def test_missing_chunk_size_uses_recommended_default():
    plan = build(stats=TableStats(rows=5_000_000))
    assert plan.params.chunk_size == 5000
    assert plan.recommended_chunk_size == 5000
    assert "--chunk-size=5000" in plan.argv
    assert plan.table_rows == 5_000_000
    assert plan.estimated_time == "1h 23m"


@pytest.mark.parametrize("ddl", [
    "ALTER TABLE t_demo DROP TABLE t_demo",
    "TRUNCATE t_demo",
    "DELETE FROM t_demo",
])
def test_destructive_statements_rejected(ddl):
    with pytest.raises(ValidationError):
        build(intent=Intent(DDLType.CUSTOM, ddl))


def test_on_delete_cascade_is_allowed():
    ddl = "ADD CONSTRAINT fk_user FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE"
    plan = build(intent=Intent(DDLType.CUSTOM, ddl))
    assert plan.alter_statement == ddl


def test_typed_intent_must_match_statement():
    with pytest.raises(ValidationError):
        build(intent=Intent(DDLType.ADD_COLUMN, "ADD INDEX idx_a (a)"))


def test_typed_intent_requires_ddl():
    with pytest.raises(ValidationError):
        build(intent=Intent(DDLType.DROP_COLUMN, None))


def test_unsupported_ddl_type_rejected():
    with pytest.raises(ValidationError):
        build(intent=Intent("rename_table", "RENAME TO t_other"))


@pytest.mark.parametrize("field,value", [
    ("max_load", "Threads_running"),
    ("critical_load", "Threads_running=abc"),
    ("charset", "utf8; rm -rf /"),
    ("other_params", "--alter=DROP COLUMN a"),
    ("other_params", "positional"),
])
def test_malformed_params_rejected(field, value):
    with pytest.raises(ValidationError):
        build(params=ExecutionParams(**{field: value}))


def test_empty_target_rejected():
    with pytest.raises(ValidationError):
        build(target=Target("1", "shop", ""))


def test_risk_annotations_and_levels():
    builder = CommandBuilder()
    prod = ConnectionInfo(id="2", host="prod-db.internal", port=3306, username="osc", environment="prod")
    plan = builder.build(DEMO, Intent(DDLType.DROP_COLUMN, "DROP COLUMN legacy"), None, prod, None,
                         annotations=["table has 3 dependent views"])
    assert plan.risk.level == "high"
    assert "table has 3 dependent views" in plan.risk.annotations

    system = builder.build(Target("1", "mysql", "user"), Intent(DDLType.FRAGMENT), None, CONN)
    assert system.risk.level == "critical"


def test_custom_tool_name_is_first_token():
    plan = build(tool="/opt/percona/bin/pt-online-schema-change")
    assert plan.command.startswith("/opt/percona/bin/pt-online-schema-change --host=db.local")


def test_helpers():
    assert recommended_chunk_size(0, default=1000) == 1000
    assert recommended_chunk_size(50_000) == 1000
    assert recommended_chunk_size(500_000) == 2000
    assert recommended_chunk_size(50_000_000) == 8000
    assert estimate_execution_time(0) is None
    assert estimate_execution_time(30_000) == "30 seconds"
    assert estimate_execution_time(600_000) == "10 minutes"
    assert clean_alter_statement("ALTER TABLE orders ADD COLUMN a INT;") == "ADD COLUMN a INT"
    with pytest.raises(ValidationError):
        clean_alter_statement("  ;  ")
