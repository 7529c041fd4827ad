from __future__ import annotations

import allure
import pytest

from session_build.process.models import (
    Job,
    NodeInfo,
    ProcessResult,
    ResultStatus,
    ReturnCode,
    Task,
)
from session_build.process.state import BuildState, SerialRegressionError
from session_build.shasum import NO_SHASUM

pytestmark = [
    allure.epic("Build Process"),
    allure.feature("Build State"),
]


def _task(name: str, *deps: str) -> Task:
    return Task(name=name, deps=deps, info={}, build_id="b1")


def _job(name: str, *, worker_id: str = "w1", hostname: str = "host", numa: int | None = None):
    return Job(
        name=name,
        worker_id=worker_id,
        build_id="b1",
        node_info=NodeInfo(hostname=hostname, numa_node=numa),
    )


def test_remove_pending_resolves_dependents() -> None:
    state = BuildState().add_pending([_task("A"), _task("B", "A"), _task("C", "A", "B")])

    assert [task.name for task in state.ready()] == ["A"]

    state = state.remove_pending("A")
    assert [task.name for task in state.pending] == ["B", "C"]
    assert [task.name for task in state.ready()] == ["B"]
    assert state.pending[1].deps == ("B",)


def test_ready_excludes_running_sessions() -> None:
    state = BuildState().add_pending([_task("A"), _task("B")]).add_running(_job("A"))

    assert [task.name for task in state.ready()] == ["B"]
    assert not state.finished
    assert state.remove_pending("A").remove_pending("B").finished


def test_results_are_write_once() -> None:
    state = BuildState().make_result(
        name="A",
        worker_id="w1",
        build_id="b1",
        process_result=ProcessResult(rc=ReturnCode.OK),
        output_shasum=NO_SHASUM,
    )

    with pytest.raises(ValueError, match="Result for session 'A' already recorded"):
        state.make_result(
            name="A",
            worker_id="w2",
            build_id="b1",
            process_result=ProcessResult(rc=ReturnCode.ERROR),
            output_shasum=NO_SHASUM,
        )
    assert state.results["A"].worker_id == "w1"


def test_serial_never_goes_backwards() -> None:
    state = BuildState().inc_serial().inc_serial()

    assert state.serial == 2
    assert state.set_serial(5).serial == 5
    with pytest.raises(SerialRegressionError, match="Non-monotonic change of serial: 2 -> 1"):
        state.set_serial(1)


def test_progress_serial_requires_new_serial() -> None:
    state = BuildState(serial=3).progress_serial()

    assert state.progress_seen == 3
    with pytest.raises(SerialRegressionError, match="already seen 3"):
        state.progress_serial()
    assert state.inc_serial().progress_serial().progress_seen == 4


def test_next_numa_node_prefers_cursor_slot() -> None:
    node, state = BuildState(numa_next=0).next_numa_node([0, 1, 2])

    assert node == 0
    assert state.numa_next == 1


def test_next_numa_node_skips_used_slots_on_same_host() -> None:
    state = BuildState(numa_next=1).add_running(_job("A", numa=1))

    node, state = state.next_numa_node([0, 1, 2], hostname="host")

    assert node == 2
    assert state.numa_next == 0


def test_next_numa_node_ignores_jobs_of_other_hosts() -> None:
    state = BuildState(numa_next=1).add_running(_job("A", hostname="other", numa=1))

    node, _ = state.next_numa_node([0, 1, 2], hostname="host")

    assert node == 1


def test_next_numa_node_oversubscribes_cursor_when_all_used() -> None:
    state = (
        BuildState(numa_next=1)
        .add_running(_job("A", numa=0))
        .add_running(_job("B", numa=1))
    )

    node, state = state.next_numa_node([0, 1], hostname="host")

    assert node == 1
    assert state.numa_next == 0


def test_next_numa_node_without_nodes() -> None:
    state = BuildState(numa_next=0)

    assert state.next_numa_node([]) == (None, state)


def test_process_result_status() -> None:
    assert ProcessResult(rc=ReturnCode.OK).status is ResultStatus.OK
    assert ProcessResult(rc=ReturnCode.INTERRUPT).status is ResultStatus.CANCELLED
    assert ProcessResult(rc=ReturnCode.UNDEFINED).status is ResultStatus.CANCELLED
    assert ProcessResult(rc=ReturnCode.TIMEOUT).status is ResultStatus.FAILED
    assert ProcessResult(rc=3).status is ResultStatus.FAILED
