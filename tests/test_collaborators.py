"""Connection/risk collaborators and the reconcile task, without network calls."""
import subprocess
import sys
from datetime import datetime, timedelta
from unittest.mock import MagicMock
import httpx
import pytest
from app.core.connections import HttpConnectionResolver, StaticConnectionResolver, build_resolver
from app.core.errors import StorageError, ValidationError
from app.core.risk import HttpRiskAnalyzer, RiskAnalyzer, build_risk_analyzer
from app.core.supervisor import HOSTNAME
from app.core.workflow import DDLType, JobStatus, Target
from app.tasks.jobs import reconcile

TARGET = Target("7", "shop", "orders")


def test_static_resolver_from_yaml(tmp_path):
    path = tmp_path / "connections.yaml"
    path.write_text(
        "connections:\n"
        "  7:\n"
        "    host: db7.local\n"
        "    port: 3307\n"
        "    username: osc\n"
        "    environment: staging\n"
        "tables:\n"
        "  - connection_id: 7\n"
        "    database: shop\n"
        "    table: orders\n"
        "    rows: 1200000\n"
    )
    resolver = StaticConnectionResolver.from_yaml(str(path), base={"1": {"host": "db1.local"}})

    conn = resolver.resolve("7")
    assert (conn.host, conn.port, conn.environment) == ("db7.local", 3307, "staging")
    assert resolver.resolve("1").port == 3306
    assert resolver.table_stats("7", "shop", "orders").rows == 1_200_000
    assert resolver.table_stats("7", "shop", "missing") is None
    with pytest.raises(ValidationError):
        resolver.resolve("8")


def test_misconfigured_connection_is_validation_error():
    with pytest.raises(ValidationError):
        StaticConnectionResolver({"1": {"port": 3306}}).resolve("1")


def test_http_resolver():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/connections/7":
            return httpx.Response(200, json={"host": "db7.local", "port": 3306, "username": "osc",
                                             "password": "pw", "environment": "prod"})
        if request.url.path == "/connections/7/databases/shop/tables/orders":
            return httpx.Response(200, json={"table_rows": 4200, "data_length": 65536, "engine": "InnoDB"})
        return httpx.Response(404)

    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://conn")
    resolver = HttpConnectionResolver("http://conn/", client=client)

    conn = resolver.resolve("7")
    assert conn.password == "pw"
    assert conn.environment == "prod"
    assert resolver.table_stats("7", "shop", "orders").rows == 4200
    assert resolver.table_stats("7", "shop", "nope") is None
    with pytest.raises(ValidationError):
        resolver.resolve("8")


def test_http_risk_analyzer_degrades_to_no_annotations():
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"annotations": ["orders has 2 triggers"]})

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    good = HttpRiskAnalyzer("http://risk", client=httpx.Client(transport=httpx.MockTransport(ok)))
    bad = HttpRiskAnalyzer("http://risk", client=httpx.Client(transport=httpx.MockTransport(broken)))
    assert good.analyze(TARGET, DDLType.FRAGMENT, None) == ["orders has 2 triggers"]
    assert bad.analyze(TARGET, DDLType.FRAGMENT, None) == []


def test_builders_pick_implementation_from_settings():
    settings = MagicMock(connection_service_url=None, connections_file=None, connections={"1": {"host": "h"}},
                         risk_service_url=None, http_timeout_seconds=1.0)
    assert isinstance(build_resolver(settings), StaticConnectionResolver)
    assert type(build_risk_analyzer(settings)) is RiskAnalyzer

    settings.connection_service_url = "http://conn"
    settings.risk_service_url = "http://risk"
    assert isinstance(build_resolver(settings), HttpConnectionResolver)
    assert isinstance(build_risk_analyzer(settings), HttpRiskAnalyzer)


def running_job(store, table, process_handle, idle_seconds):
    job = store.create(
        connection_id="7",
        database_name="shop",
        table_name=table,
        ddl_type=DDLType.FRAGMENT,
        generated_command=f"pt-online-schema-change D=shop,t={table} --execute",
        execution_params={"chunk_size": 1000},
        created_by="alice",
    )

    def mutate(j):
        j.status = JobStatus.RUNNING
        j.start_time = datetime.utcnow() - timedelta(seconds=idle_seconds)
        j.process_handle = process_handle
        j.updated_at = datetime.utcnow() - timedelta(seconds=idle_seconds)

    return store.update(job.id, mutate)


def dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def test_reconcile_fails_only_idle_dead_runs(store):
    idle = running_job(store, "orders", f"{HOSTNAME}:{dead_pid()}", idle_seconds=600)
    recent = running_job(store, "customers", f"{HOSTNAME}:{dead_pid()}", idle_seconds=0)
    remote = running_job(store, "invoices", "some-other-host:4242", idle_seconds=600)

    assert reconcile(store, min_age_seconds=60) == [idle.id]
    assert store.get(idle.id).status == JobStatus.FAILED
    assert store.get(recent.id).status == JobStatus.RUNNING
    assert store.get(remote.id).status == JobStatus.RUNNING
    assert reconcile(store, min_age_seconds=60) == []


def test_reconcile_tolerates_storage_outage():
    store = MagicMock()
    store.list_running.side_effect = StorageError("down")
    assert reconcile(store, min_age_seconds=60) == []
