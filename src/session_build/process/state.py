"""In-memory build state and its pure transitions."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, replace

from session_build.process.models import (
    Job,
    NodeInfo,
    ProcessResult,
    Result,
    SessionContext,
    Task,
)
from session_build.shasum import Shasum

SERIAL_MAX = sys.maxsize


class SerialRegressionError(RuntimeError):
    """Serial numbers went backwards: the local view is ahead of what it is told to adopt."""


@dataclass(frozen=True, slots=True)
class BuildState:
    """Local view of one build.

    Every transition returns a new state; nothing here performs I/O. ``running`` may hold
    jobs started by other workers, without handles.
    """

    serial: int = 0
    progress_seen: int = 0
    numa_next: int = 0
    sessions: dict[str, SessionContext] = field(default_factory=dict)
    pending: tuple[Task, ...] = ()
    running: dict[str, Job] = field(default_factory=dict)
    results: dict[str, Result] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.serial < 0:
            raise SerialRegressionError("serial underflow")

    def inc_serial(self) -> BuildState:
        if self.serial >= SERIAL_MAX:
            raise OverflowError("serial overflow")
        return replace(self, serial=self.serial + 1)

    def set_serial(self, serial: int) -> BuildState:
        if serial < self.serial:
            raise SerialRegressionError(
                f"Non-monotonic change of serial: {self.serial} -> {serial}",
            )
        return replace(self, serial=serial)

    def progress_serial(self, message_serial: int | None = None) -> BuildState:
        """Mark progress output up to ``message_serial`` (default: current serial) as seen."""

        serial = self.serial if message_serial is None else message_serial
        if serial <= self.progress_seen:
            raise SerialRegressionError(
                f"Bad serial {serial} for progress output (already seen {self.progress_seen})",
            )
        return replace(self, progress_seen=serial)

    def next_numa_node(
        self,
        numa_nodes: list[int] | tuple[int, ...],
        *,
        hostname: str | None = None,
    ) -> tuple[int | None, BuildState]:
        """Pick a placement slot and advance the rotating cursor past it.

        Preference: the slot at the cursor if unused, then the first unused slot starting from
        the cursor, then the cursor slot itself (oversubscription). With ``hostname`` only jobs
        placed on that host occupy slots.
        """

        if not numa_nodes:
            return None, self

        used = {
            job.node_info.numa_node
            for job in self.running.values()
            if job.node_info.numa_node is not None
            and (hostname is None or job.node_info.hostname == hostname)
        }
        available = list(enumerate(numa_nodes))
        numa_index = next((i for i, node in available if node == self.numa_next), 0)
        candidates = available[numa_index:] + available[:numa_index]

        chosen = next(
            ((i, node) for i, node in candidates if i == numa_index and node not in used),
            None,
        )
        if chosen is None:
            chosen = next(((i, node) for i, node in candidates if node not in used), candidates[0])

        index, node = chosen
        return node, replace(self, numa_next=numa_nodes[(index + 1) % len(numa_nodes)])

    @property
    def finished(self) -> bool:
        return not self.pending

    def ready(self) -> list[Task]:
        """Pending tasks without unresolved dependencies that are not running yet."""

        return [task for task in self.pending if task.is_ready and not self.is_running(task.name)]

    def remove_pending(self, name: str) -> BuildState:
        """Drop ``name`` from the queue and resolve it in every remaining task."""

        return replace(
            self,
            pending=tuple(task.resolve(name) for task in self.pending if task.name != name),
        )

    def add_pending(self, tasks: list[Task]) -> BuildState:
        return replace(self, pending=tuple(tasks) + self.pending)

    def add_sessions(self, sessions: dict[str, SessionContext]) -> BuildState:
        merged = dict(self.sessions)
        for name, session in sessions.items():
            merged.setdefault(name, session)
        return replace(self, sessions=merged)

    def is_running(self, name: str) -> bool:
        return name in self.running

    def add_running(self, job: Job) -> BuildState:
        return replace(self, running={**self.running, job.name: job})

    def remove_running(self, name: str) -> BuildState:
        running = dict(self.running)
        running.pop(name, None)
        return replace(self, running=running)

    def finished_running(self) -> list[Job]:
        """Locally started jobs whose external process has terminated."""

        return [
            job
            for job in self.running.values()
            if job.handle is not None and job.handle.is_finished()
        ]

    def stop_running(self) -> None:
        """Request cancellation of every locally started job."""

        for job in self.running.values():
            if job.handle is not None:
                job.handle.cancel()

    def make_result(  # noqa: PLR0913
        self,
        *,
        name: str,
        worker_id: str,
        build_id: str,
        process_result: ProcessResult,
        output_shasum: Shasum,
        node_info: NodeInfo | None = None,
        current: bool = False,
    ) -> BuildState:
        if name in self.results:
            raise ValueError(f"Result for session {name!r} already recorded")
        result = Result(
            name=name,
            worker_id=worker_id,
            build_id=build_id,
            node_info=node_info or NodeInfo(hostname=""),
            process_result=process_result,
            output_shasum=output_shasum,
            current=current,
        )
        return replace(self, results={**self.results, name: result})
