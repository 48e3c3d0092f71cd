"""Tests for JobStore against a file-backed SQLite database."""
from datetime import datetime, timedelta
import threading
from unittest.mock import MagicMock
import pytest
from sqlalchemy.exc import OperationalError
from app.core.errors import ConflictError, InvalidStateError, NotFoundError, StorageError
from app.core.workflow import DDLType, JobStatus, Target
from app.db.repository import JobFilter, JobStore, KeyedLocks


def new_job(store, table="orders", database="shop", connection_id="1", created_by="alice", **extra):
    return store.create(
        connection_id=connection_id,
        database_name=database,
        table_name=table,
        ddl_type=DDLType.FRAGMENT,
        generated_command=f"pt-online-schema-change D={database},t={table} --execute",
        execution_params={"chunk_size": 1000},
        created_by=created_by,
        **extra,
    )


def set_status(store, job_id, status):
    def mutate(job):
        job.status = status
        if status == JobStatus.RUNNING:
            job.start_time = datetime.utcnow()
    return store.update(job_id, mutate)


def test_create_assigns_id_and_pending(store):
    job = new_job(store)
    assert job.id
    assert job.status == JobStatus.PENDING
    assert job.end_time is None
    assert store.get(job.id).generated_command.startswith("pt-online-schema-change")


def test_create_requires_command_and_pending(store):
    with pytest.raises(InvalidStateError):
        store.create(connection_id="1", database_name="shop", table_name="orders",
                     ddl_type=DDLType.FRAGMENT, generated_command="")
    with pytest.raises(InvalidStateError):
        new_job(store, status=JobStatus.RUNNING)


def test_get_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.get("does-not-exist")


def test_update_enforces_end_time_and_row_invariants(store):
    job = new_job(store)
    running = set_status(store, job.id, JobStatus.RUNNING)
    assert running.end_time is None

    def overshoot(j):
        j.total_rows = 100
        j.processed_rows = 150
    assert store.update(job.id, overshoot).processed_rows == 100

    done = set_status(store, job.id, JobStatus.COMPLETED)
    assert done.end_time is not None
    assert done.process_handle is None


def test_update_rejects_immutable_fields_and_writes_nothing(store):
    job = new_job(store)

    def retarget(j):
        j.current_stage = "half-written"
        j.table_name = "other"
    with pytest.raises(InvalidStateError):
        store.update(job.id, retarget)
    reloaded = store.get(job.id)
    assert reloaded.table_name == "orders"
    assert reloaded.current_stage is None


def test_generated_command_frozen_after_start(store):
    job = new_job(store)
    set_status(store, job.id, JobStatus.RUNNING)

    def rewrite(j):
        j.generated_command = "rm -rf /"
    with pytest.raises(InvalidStateError):
        store.update(job.id, rewrite)


def test_delete_running_conflicts(store):
    job = new_job(store)
    set_status(store, job.id, JobStatus.RUNNING)
    with pytest.raises(ConflictError) as exc:
        store.delete(job.id)
    assert exc.value.conflicting_job_id == job.id
    assert store.get(job.id).status == JobStatus.RUNNING


def test_delete_removes_job_and_logs(store):
    job = new_job(store)
    store.append_logs(job.id, ["a", "b"])
    store.delete(job.id)
    with pytest.raises(NotFoundError):
        store.get(job.id)
    with pytest.raises(NotFoundError):
        store.get_logs(job.id)


def test_logs_keep_order_and_tail(store):
    job = new_job(store)
    store.append_log(job.id, "first")
    store.append_logs(job.id, [f"line {i}" for i in range(5)])
    assert store.get_logs(job.id)[0] == "first"
    assert store.get_logs(job.id, tail=2) == ["line 3", "line 4"]


def test_list_filters_and_stable_pagination(store):
    base = datetime(2026, 1, 1)
    jobs = []
    for i in range(5):
        jobs.append(new_job(store, table=f"orders_{i}", created_by="bob" if i % 2 else "alice",
                            created_at=base + timedelta(minutes=i)))
    # two rows sharing a creation time are ordered by id
    twins = [new_job(store, table=f"twin_{i}", created_at=base + timedelta(hours=1)) for i in range(2)]

    page1 = store.list(page=1, size=3)
    page2 = store.list(page=2, size=3)
    assert page1.total == 7
    ids = [j.id for j in page1.items + page2.items]
    assert ids[:2] == sorted(j.id for j in twins)
    assert ids[2:] == [j.id for j in reversed(jobs)][:4]

    assert store.list(JobFilter(created_by="bob")).total == 2
    assert store.list(JobFilter(keyword="twin")).total == 2
    assert store.list(JobFilter(keyword=jobs[0].id[:8])).items[0].id == jobs[0].id
    window = JobFilter(start_date=base + timedelta(minutes=1), end_date=base + timedelta(minutes=3))
    assert store.list(window).total == 3

    set_status(store, jobs[0].id, JobStatus.RUNNING)
    assert [j.id for j in store.list(JobFilter(status=JobStatus.RUNNING)).items] == [jobs[0].id]


def test_list_clamps_page_size(store):
    new_job(store)
    assert store.list(size=10_000).size == 200
    assert store.list(size=0).size == 1


def test_running_queries(store):
    a = new_job(store)
    b = new_job(store, table="customers")
    set_status(store, a.id, JobStatus.RUNNING)
    assert [j.id for j in store.list_running()] == [a.id]
    assert store.find_running_on_target(Target("1", "shop", "orders")).id == a.id
    assert store.find_running_on_target(Target("1", "shop", "orders"), exclude_id=a.id) is None
    assert store.find_running_on_target(b.target) is None


def test_stats(store):
    for table, status in (("a", JobStatus.COMPLETED), ("b", JobStatus.COMPLETED), ("c", JobStatus.FAILED)):
        job = new_job(store, table=table)
        set_status(store, job.id, JobStatus.RUNNING)

        def finish(j, status=status):
            j.status = status
            j.duration_seconds = 10 if table != "b" else 20
        store.update(job.id, finish)
    new_job(store, table="d")

    stats = store.stats()
    assert stats.total == 4
    assert stats.by_status["completed"] == 2
    assert stats.by_status["pending"] == 1
    assert stats.success_rate == 66.67
    assert stats.avg_duration_seconds == 15.0


def test_storage_errors_retry_then_surface():
    session = MagicMock()
    session.scalars.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    factory = MagicMock(return_value=session)
    store = JobStore(factory, retry_attempts=3, retry_backoff=0)

    with pytest.raises(StorageError):
        store.get("any")
    assert factory.call_count == 3
    assert session.rollback.call_count == 3
    session.commit.assert_not_called()


def test_update_with_expected_status_refuses_a_moved_row(store):
    job = new_job(store)
    set_status(store, job.id, JobStatus.RUNNING)
    done = store.update(job.id, lambda j: setattr(j, "status", JobStatus.COMPLETED), expected_status=JobStatus.RUNNING)

    with pytest.raises(InvalidStateError) as exc:
        store.update(job.id, lambda j: setattr(j, "status", JobStatus.FAILED), expected_status=JobStatus.RUNNING)
    assert exc.value.current_status == "completed"
    after = store.get(job.id)
    assert after.status == JobStatus.COMPLETED
    assert after.updated_at == done.updated_at


def test_keyed_locks_serialize_and_are_dropped_when_released():
    locks = KeyedLocks()
    order = []

    def second():
        with locks.hold("a"):
            order.append("second")

    with locks.hold("a"):
        with locks.hold("a"):
            assert len(locks) == 1
        waiter = threading.Thread(target=second)
        waiter.start()
        order.append("first")
    waiter.join(timeout=5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_store_operations_leave_no_locks_behind(store):
    job = new_job(store)
    set_status(store, job.id, JobStatus.RUNNING)
    store.append_log(job.id, "line")
    with pytest.raises(NotFoundError):
        store.update("missing", lambda j: None)
    assert len(store.locks) == 0
