from __future__ import annotations

import sqlite3
from pathlib import Path

import allure
import pytest

from session_build.process.database import BuildDatabase, BuildProcessError, StoreLockError
from session_build.process.models import (
    Build,
    ProgressKind,
    ProgressMessage,
    Task,
)
from session_build.process.state import BuildState, SerialRegressionError
from session_build.storage.common import utc_now

pytestmark = [
    allure.epic("Build Store"),
    allure.feature("Workers, Progress & Locking"),
]


def _start_build(database: BuildDatabase, build_id: str = "b1", *workers: str) -> None:
    def _body(session) -> None:
        database.start_build(
            session,
            Build(
                build_id=build_id,
                platform="test",
                options="{}",
                start=utc_now(),
                stop=None,
                progress_stopped=False,
            ),
        )
        for worker_id in workers:
            database.start_worker(
                session,
                worker_id=worker_id,
                build_id=build_id,
                hostname="host",
                pid=1,
                process_start=utc_now(),
                serial=0,
            )

    database.run_locked(_body)


def test_start_worker_requires_running_build(database: BuildDatabase) -> None:
    with pytest.raises(BuildProcessError, match="unknown build process b1"):
        _start_build_worker(database, "w1", "b1")

    _start_build(database, "b1")
    database.run_locked(lambda session: database.stop_build(session, "b1"))

    with pytest.raises(BuildProcessError, match="already stopped build process b1"):
        _start_build_worker(database, "w1", "b1")


def _start_build_worker(database: BuildDatabase, worker_id: str, build_id: str) -> None:
    database.run_locked(
        lambda session: database.start_worker(
            session,
            worker_id=worker_id,
            build_id=build_id,
            hostname="host",
            pid=1,
            process_start=utc_now(),
            serial=0,
        ),
    )


def test_serial_is_maximum_over_workers_of_build(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1", "w2")
    _start_build(database, "b2", "w3")

    def _stamp(session) -> None:
        database.stamp_worker(session, "w1", serial=4)
        database.stamp_worker(session, "w2", serial=7)
        database.stamp_worker(session, "w3", serial=11)

    database.run_locked(_stamp)

    assert database.run_locked(lambda session: database.read_serial(session, "b1")) == 7
    assert database.run_locked(lambda session: database.read_serial(session, "b2")) == 11
    assert database.run_locked(lambda session: database.read_serial(session, "none")) == 0


def test_update_database_bumps_serial_only_on_change(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1")
    old = BuildState()
    new = old.add_pending([Task(name="A", deps=(), info={}, build_id="b1")])

    pushed = database.run_locked(
        lambda session: database.update_database(
            session,
            old,
            new,
            build_id="b1",
            worker_id="w1",
            hostname="host",
        ),
    )
    unchanged = database.run_locked(
        lambda session: database.update_database(
            session,
            pushed,
            pushed,
            build_id="b1",
            worker_id="w1",
            hostname="host",
        ),
    )

    assert pushed.serial == 1
    assert unchanged.serial == 1
    assert database.run_locked(lambda session: database.read_serial(session, "b1")) == 1


def test_pull_database_adopts_changes_of_other_workers(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1", "w2")
    task = Task(name="A", deps=(), info={}, build_id="b1")
    database.run_locked(
        lambda session: database.update_database(
            session,
            BuildState(),
            BuildState().add_pending([task]),
            build_id="b1",
            worker_id="w1",
            hostname="host",
        ),
    )

    pulled = database.run_locked(
        lambda session: database.pull_database(
            session,
            BuildState(),
            build_id="b1",
            worker_id="w2",
            hostname="host",
        ),
    )

    assert pulled.serial == 1
    assert pulled.pending == (task,)
    same = database.run_locked(
        lambda session: database.pull_database(
            session,
            pulled,
            build_id="b1",
            worker_id="w2",
            hostname="host",
        ),
    )
    assert same is pulled


def test_pull_database_rejects_local_serial_ahead_of_store(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1")
    database.run_locked(lambda session: database.stamp_worker(session, "w1", serial=3))

    with pytest.raises(SerialRegressionError, match="Local serial 10 is ahead of .* serial 3"):
        database.run_locked(
            lambda session: database.pull_database(
                session,
                BuildState(serial=10),
                build_id="b1",
                worker_id="w1",
                hostname="host",
            ),
        )


def test_sync_progress_exchanges_messages_and_stop_flag(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1")
    message = ProgressMessage(kind=ProgressKind.WARNING, text="Nothing to build")
    database.run_locked(lambda session: database.write_progress(session, "b1", 3, message))

    messages, stopped, changed = database.run_locked(
        lambda session: database.sync_progress(session, "b1", seen=0, stopped=False),
    )
    assert messages == {3: message}
    assert (stopped, changed) == (False, True)

    _, _, changed = database.run_locked(
        lambda session: database.sync_progress(session, "b1", seen=3, stopped=False),
    )
    assert not changed

    _, stopped, changed = database.run_locked(
        lambda session: database.sync_progress(session, "b1", seen=3, stopped=True),
    )
    assert (stopped, changed) == (True, True)
    build = database.run_locked(lambda session: database.read_build(session, "b1"))
    assert build is not None and build.progress_stopped

    _, stopped, changed = database.run_locked(
        lambda session: database.sync_progress(session, "b1", seen=3, stopped=False),
    )
    assert (stopped, changed) == (True, True)


def test_progress_serials_are_scoped_by_build(database: BuildDatabase) -> None:
    _start_build(database, "b1")
    _start_build(database, "b2")
    first = ProgressMessage(kind=ProgressKind.WRITELN, text="one")
    second = ProgressMessage(kind=ProgressKind.WRITELN, text="two")

    def _write(session) -> None:
        database.write_progress(session, "b1", 1, first)
        database.write_progress(session, "b2", 1, second)

    database.run_locked(_write)

    assert database.run_locked(lambda session: database.read_progress(session, "b1")) == {
        1: first,
    }
    assert database.run_locked(lambda session: database.read_progress(session, "b2")) == {
        1: second,
    }


def test_clean_build_removes_only_stopped_builds(database: BuildDatabase) -> None:
    _start_build(database, "old", "w-old")
    _start_build(database, "live", "w-live")
    database.run_locked(lambda session: database.stop_build(session, "old"))

    removed = database.run_locked(database.clean_build)

    assert removed == ["old"]
    builds = database.run_locked(database.read_builds)
    assert [build.build_id for build in builds] == ["live"]
    workers = database.run_locked(database.read_workers)
    assert [worker.worker_id for worker in workers] == ["w-live"]
    assert database.run_locked(database.clean_build) == []


def test_stamp_worker_records_stop(database: BuildDatabase) -> None:
    _start_build(database, "b1", "w1")

    database.run_locked(lambda session: database.stamp_worker(session, "w1", serial=2, stop=True))

    (worker,) = database.run_locked(lambda session: database.read_workers(session, "b1"))
    assert worker.stop is not None
    assert worker.serial == 2
    with pytest.raises(BuildProcessError, match="Unknown worker nobody"):
        database.run_locked(lambda session: database.stamp_worker(session, "nobody", serial=1))


def test_numa_cursor_is_stored_per_host(database: BuildDatabase) -> None:
    assert database.run_locked(lambda session: database.read_numa_next(session, "host")) == 0
    assert database.run_locked(lambda session: database.update_numa_next(session, "host", 2))
    assert not database.run_locked(
        lambda session: database.update_numa_next(session, "host", 2),
    )
    assert database.run_locked(lambda session: database.read_numa_next(session, "host")) == 2
    assert database.run_locked(lambda session: database.read_numa_next(session, "other")) == 0


def test_run_locked_gives_up_while_store_is_locked(tmp_path: Path) -> None:
    db_path = tmp_path / "locked.db"
    database = BuildDatabase(
        db_path,
        busy_timeout_ms=10,
        lock_retry_limit=2,
        lock_retry_delay_seconds=0.01,
    )
    database.init_schema()
    holder = sqlite3.connect(db_path, isolation_level=None)
    holder.execute("PRAGMA journal_mode = WAL")
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreLockError, match="locked after 2 attempts \\(probe\\)"):
            database.run_locked(database.read_builds, label="probe")
    finally:
        holder.execute("ROLLBACK")
        holder.close()
        database.close()

    database = BuildDatabase(db_path)
    assert database.run_locked(database.read_builds) == []
    database.close()
