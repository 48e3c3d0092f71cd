"""Shared fixtures: a file-backed SQLite job store and a controller wired to the fake tool."""
import shlex
import sys
import time
from pathlib import Path
import pytest
from app.core.broadcaster import ProgressBroadcaster
from app.core.command_builder import CommandBuilder
from app.core.connections import StaticConnectionResolver, TableStats
from app.core.controller import ExecutionController
from app.core.supervisor import ProcessSupervisor
from app.db.repository import JobStore
from app.db.session import Base, make_engine, make_session_factory

FAKE_TOOL = Path(__file__).parent / "fake_pt_osc.py"

CONNECTIONS = {
    "1": {"host": "db.local", "port": 3306, "username": "osc", "password": "s3cret", "environment": "dev"},
    "2": {"host": "prod-db.internal", "port": 3307, "username": "osc", "environment": "prod"},
}


@pytest.fixture
def tool_command() -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_TOOL))}"


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory, retry_attempts=2, retry_backoff=0)


@pytest.fixture
def resolver():
    return StaticConnectionResolver(CONNECTIONS, tables={("1", "shop", "orders"): TableStats(rows=1000)})


@pytest.fixture
def controller(store, resolver, tool_command):
    ctl = ExecutionController(
        store=store,
        supervisor=ProcessSupervisor(grace_seconds=2.0, tail_lines=50),
        broadcaster=ProgressBroadcaster(queue_size=500),
        builder=CommandBuilder(tool=tool_command),
        resolver=resolver,
        log_flush_lines=3,
    )
    yield ctl
    ctl.shutdown()


@pytest.fixture
def wait_for():
    def _wait(predicate, timeout: float = 15.0, interval: float = 0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if result:
                return result
            time.sleep(interval)
        raise AssertionError("condition not met within %.1fs" % timeout)
    return _wait
