from __future__ import annotations

from dataclasses import replace

import allure

from session_build.process.database import BuildDatabase
from session_build.process.models import (
    Job,
    NodeInfo,
    ProcessResult,
    Result,
    SessionContext,
    Task,
    Timing,
)
from session_build.process.reconcile import PendingSync, ResultsSync, RunningSync, SessionsSync
from session_build.shasum import Shasum

pytestmark = [
    allure.epic("Build Store"),
    allure.feature("State Reconciliation"),
]


class _Handle:
    def is_finished(self) -> bool:
        return False

    def cancel(self) -> None:
        return None

    def join(self):  # pragma: no cover - never joined here
        raise AssertionError("not joined")


def _result(name: str, *, rc: int = 0) -> Result:
    return Result(
        name=name,
        worker_id="w1",
        build_id="b1",
        node_info=NodeInfo(hostname="host", numa_node=1),
        process_result=ProcessResult(
            rc=rc,
            out_lines=("Session " + name,),
            err_lines=(),
            timing=Timing(elapsed_ms=1500, cpu_ms=700),
        ),
        output_shasum=Shasum.digest(name.encode(), name),
        current=False,
    )


def _job(name: str, *, worker_id: str = "w1", handle: _Handle | None = None) -> Job:
    return Job(
        name=name,
        worker_id=worker_id,
        build_id="b1",
        node_info=NodeInfo(hostname="host"),
        handle=handle,
    )


def test_results_round_trip_through_store(database: BuildDatabase) -> None:
    sync = ResultsSync("b1")
    with database.transaction() as session:
        assert sync.push(session, {}, {"A": _result("A"), "B": _result("B", rc=1)})

    with database.transaction() as session:
        pulled = sync.pull(session, {})

    assert pulled == {"A": _result("A"), "B": _result("B", rc=1)}


def test_result_output_lines_survive_the_store_verbatim(database: BuildDatabase) -> None:
    base = _result("A", rc=1)
    result = replace(
        base,
        process_result=replace(
            base.process_result,
            out_lines=("carriage\rreturn", "", "form\x0cfeed", "group\x1csep", ""),
            err_lines=("",),
        ),
    )
    sync = ResultsSync("b1")
    with database.transaction() as session:
        sync.push(session, {}, {"A": result})

    with database.transaction() as session:
        pulled = sync.pull(session, {})

    assert pulled["A"].process_result.out_lines == result.process_result.out_lines
    assert pulled["A"].process_result.err_lines == ("",)


def test_append_only_pull_keeps_cached_entries_and_drops_unknown(
    database: BuildDatabase,
) -> None:
    sync = ResultsSync("b1")
    with database.transaction() as session:
        sync.push(session, {}, {"A": _result("A")})

    cached = _result("A")
    stale = _result("Z")
    with database.transaction() as session:
        pulled = sync.pull(session, {"A": cached, "Z": stale})

    assert pulled == {"A": cached}
    assert pulled["A"] is cached


def test_append_only_push_writes_only_new_entries(database: BuildDatabase) -> None:
    sync = ResultsSync("b1")
    with database.transaction() as session:
        sync.push(session, {}, {"A": _result("A")})

    with database.transaction() as session:
        assert not sync.push(session, {"A": _result("A")}, {"A": _result("A")})
        assert sync.push(session, {"A": _result("A")}, {"A": _result("A"), "B": _result("B")})

    with database.transaction() as session:
        assert set(sync.read_all(session)) == {"A", "B"}


def test_sessions_are_scoped_by_build(database: BuildDatabase) -> None:
    context = SessionContext(
        name="A",
        deps=(),
        ancestors=(),
        options='{"quick":true}',
        sources_shasum=Shasum.digest(b"src", "A.thy"),
        timeout_seconds=1.5,
        old_time_seconds=2.0,
        old_command_timings=None,
        build_id="b1",
    )
    with database.transaction() as session:
        SessionsSync("b1").push(session, {}, {"A": context})

    with database.transaction() as session:
        assert SessionsSync("b1").read_all(session) == {"A": context}
        assert SessionsSync("b2").read_all(session) == {}


def test_snapshot_push_writes_symmetric_difference(database: BuildDatabase) -> None:
    sync = PendingSync("b1")
    a = Task(name="A", deps=(), info={}, build_id="b1")
    b = Task(name="B", deps=("A",), info={"retry": 1}, build_id="b1")
    with database.transaction() as session:
        assert sync.push(session, {}, {"A": a, "B": b})

    resolved = b.resolve("A")
    with database.transaction() as session:
        assert sync.push(session, {"A": a, "B": b}, {"B": resolved})

    with database.transaction() as session:
        assert sync.read_all(session) == {"B": resolved}
        assert not sync.push(session, {"B": resolved}, {"B": resolved})


def test_snapshot_pull_keeps_local_job_handles(database: BuildDatabase) -> None:
    sync = RunningSync("b1")
    handle = _Handle()
    local = _job("A", handle=handle)
    with database.transaction() as session:
        sync.push(session, {}, {"A": local, "B": _job("B", worker_id="w2")})

    with database.transaction() as session:
        pulled = sync.pull(session, {"A": local})

    assert pulled["A"].handle is handle
    assert pulled["B"].handle is None
    assert pulled["B"].worker_id == "w2"


def test_snapshot_pull_drops_entries_removed_elsewhere(database: BuildDatabase) -> None:
    sync = RunningSync("b1")
    with database.transaction() as session:
        sync.push(session, {}, {"A": _job("A")})
    with database.transaction() as session:
        sync.push(session, {"A": _job("A")}, {})

    with database.transaction() as session:
        assert sync.pull(session, {"A": _job("A", handle=_Handle())}) == {}
