"""Domain models for the build process state and the shared store."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Protocol

from session_build.shasum import Shasum


class ReturnCode(IntEnum):
    """Process return codes with build-specific meaning."""

    OK = 0
    ERROR = 1
    FAILURE = 2
    INTERRUPT = 130
    TIMEOUT = 142
    UNDEFINED = 262


class ResultStatus(str, Enum):
    """Final status of a session within one build."""

    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressKind(IntEnum):
    """Kinds of progress messages shared through the build store."""

    WRITELN = 0
    WARNING = 1
    ERROR_MESSAGE = 2


@dataclass(frozen=True, slots=True)
class Timing:
    elapsed_ms: int = 0
    cpu_ms: int = 0
    gc_ms: int = 0


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of one external session job (or of a decision not to run it)."""

    rc: int
    out_lines: tuple[str, ...] = ()
    err_lines: tuple[str, ...] = ()
    timing: Timing = Timing()

    @property
    def ok(self) -> bool:
        return self.rc == ReturnCode.OK

    @property
    def interrupted(self) -> bool:
        return self.rc == ReturnCode.INTERRUPT

    @property
    def status(self) -> ResultStatus:
        match self.rc:
            case ReturnCode.OK:
                return ResultStatus.OK
            case ReturnCode.UNDEFINED | ReturnCode.INTERRUPT:
                return ResultStatus.CANCELLED
            case _:
                return ResultStatus.FAILED


@dataclass(frozen=True, slots=True)
class NodeInfo:
    """Placement of a job: host plus optional NUMA node index."""

    hostname: str
    numa_node: int | None = None

    def __str__(self) -> str:
        if self.numa_node is None:
            return self.hostname
        return f"{self.hostname}:{self.numa_node}"


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Per-build static view of one session."""

    name: str
    deps: tuple[str, ...]
    ancestors: tuple[str, ...]
    options: str
    sources_shasum: Shasum
    timeout_seconds: float
    old_time_seconds: float
    old_command_timings: bytes | None
    build_id: str


@dataclass(frozen=True, slots=True)
class Task:
    """Pending session with its unresolved dependencies."""

    name: str
    deps: tuple[str, ...]
    info: dict[str, Any]
    build_id: str

    @property
    def is_ready(self) -> bool:
        return not self.deps

    def resolve(self, dep: str) -> Task:
        if dep not in self.deps:
            return self
        return replace(self, deps=tuple(name for name in self.deps if name != dep))


class JobHandle(Protocol):
    """Local handle of an external session job."""

    def is_finished(self) -> bool: ...

    def cancel(self) -> None: ...

    def join(self) -> tuple[ProcessResult, Shasum]: ...


@dataclass(frozen=True, slots=True)
class Job:
    """Running session. Only the worker that started it holds the handle."""

    name: str
    worker_id: str
    build_id: str
    node_info: NodeInfo
    handle: JobHandle | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Result:
    """Write-once outcome of a session within one build."""

    name: str
    worker_id: str
    build_id: str
    node_info: NodeInfo
    process_result: ProcessResult
    output_shasum: Shasum
    current: bool

    @property
    def ok(self) -> bool:
        return self.process_result.ok

    @property
    def status(self) -> ResultStatus:
        return self.process_result.status


@dataclass(frozen=True, slots=True)
class Build:
    build_id: str
    platform: str
    options: str
    start: datetime
    stop: datetime | None
    progress_stopped: bool


@dataclass(frozen=True, slots=True)
class Worker:
    """Worker registration with heartbeat stamp."""

    worker_id: str
    build_id: str
    hostname: str
    pid: int
    process_start: datetime
    start: datetime
    stamp: datetime
    stop: datetime | None
    serial: int

    def is_stale(self, *, now: datetime, stale_after: timedelta) -> bool:
        """Running worker whose heartbeat is older than ``stale_after``."""

        return self.stop is None and now - self.stamp > stale_after


@dataclass(frozen=True, slots=True)
class ProgressMessage:
    kind: ProgressKind
    text: str
    verbose: bool = False


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Full view of a build for monitoring."""

    progress_messages: dict[int, ProgressMessage]
    builds: list[Build]
    workers: list[Worker]
    sessions: dict[str, SessionContext]
    pending: list[Task]
    running: dict[str, Job]
    results: dict[str, Result]
