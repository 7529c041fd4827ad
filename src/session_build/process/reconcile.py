"""Merge strategies between the local build state and the shared build store.

Sessions and results are append-only: an entry once written never changes, so a pull only
fetches names that are not cached locally yet. Pending tasks and running jobs change all the
time: a pull re-reads the full table and a push writes the symmetric difference between the
state before and after the local mutation.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar, Generic, TypeVar

from sqlmodel import Session, SQLModel, col, select

from session_build.process.models import (
    Job,
    NodeInfo,
    ProcessResult,
    Result,
    SessionContext,
    Task,
    Timing,
)
from session_build.shasum import Shasum
from session_build.storage.sqlmodel_models import PendingRow, ResultRow, RunningRow, SessionRow


T = TypeVar("T")


class TableSync(ABC, Generic[T]):
    """Pull/push of one build-scoped entity keyed by session name."""

    table: ClassVar[type[Any]]

    def __init__(self, build_id: str) -> None:
        self.build_id = build_id

    @abstractmethod
    def encode(self, item: T) -> SQLModel: ...

    @abstractmethod
    def decode(self, row: Any) -> T: ...

    @abstractmethod
    def pull(self, session: Session, local: Mapping[str, T]) -> dict[str, T]:
        """Local entries merged with the store content."""

    @abstractmethod
    def push(self, session: Session, old: Mapping[str, T], new: Mapping[str, T]) -> bool:
        """Write the local change from ``old`` to ``new``; report whether anything was written."""

    def read_all(self, session: Session) -> dict[str, T]:
        rows = session.exec(select(self.table).where(self.table.build_id == self.build_id)).all()
        return {row.name: self.decode(row) for row in rows}

    def _read_names(self, session: Session) -> set[str]:
        rows = session.exec(
            select(self.table.name).where(self.table.build_id == self.build_id),
        ).all()
        return set(rows)


class AppendOnlySync(TableSync[T]):
    """Entries are inserted once and never updated or deleted within a build."""

    def pull(self, session: Session, local: Mapping[str, T]) -> dict[str, T]:
        domain = self._read_names(session)
        merged = {name: item for name, item in local.items() if name in domain}
        missing = sorted(domain - merged.keys())
        if missing:
            rows = session.exec(
                select(self.table).where(
                    self.table.build_id == self.build_id,
                    col(self.table.name).in_(missing),
                ),
            ).all()
            merged.update({row.name: self.decode(row) for row in rows})
        return merged

    def push(self, session: Session, old: Mapping[str, T], new: Mapping[str, T]) -> bool:
        inserts = [item for name, item in new.items() if name not in old]
        for item in inserts:
            session.add(self.encode(item))
        return bool(inserts)


class SnapshotSync(TableSync[T]):
    """Entries are replaced wholesale; the store copy is authoritative on pull."""

    def pull(self, session: Session, local: Mapping[str, T]) -> dict[str, T]:
        merged: dict[str, T] = {}
        for name, item in self.read_all(session).items():
            cached = local.get(name)
            # equal rows keep the local object, which may carry a job handle
            merged[name] = cached if cached is not None and cached == item else item
        return merged

    def push(self, session: Session, old: Mapping[str, T], new: Mapping[str, T]) -> bool:
        deletes = [name for name, item in old.items() if new.get(name) != item]
        inserts = [item for name, item in new.items() if old.get(name) != item]
        for name in deletes:
            row = session.get(self.table, (self.build_id, name))
            if row is not None:
                session.delete(row)
        if deletes:
            session.flush()
        for item in inserts:
            session.add(self.encode(item))
        return bool(deletes or inserts)


class SessionsSync(AppendOnlySync[SessionContext]):
    table = SessionRow

    def encode(self, item: SessionContext) -> SessionRow:
        return SessionRow(
            build_id=self.build_id,
            name=item.name,
            deps="\n".join(item.deps),
            ancestors="\n".join(item.ancestors),
            options=item.options,
            sources=str(item.sources_shasum),
            timeout_ms=round(item.timeout_seconds * 1000),
            old_time_ms=round(item.old_time_seconds * 1000),
            old_command_timings=item.old_command_timings,
        )

    def decode(self, row: SessionRow) -> SessionContext:
        return SessionContext(
            name=row.name,
            deps=_split_names(row.deps),
            ancestors=_split_names(row.ancestors),
            options=row.options,
            sources_shasum=Shasum.parse(row.sources),
            timeout_seconds=row.timeout_ms / 1000.0,
            old_time_seconds=row.old_time_ms / 1000.0,
            old_command_timings=row.old_command_timings,
            build_id=row.build_id,
        )


class ResultsSync(AppendOnlySync[Result]):
    table = ResultRow

    def encode(self, item: Result) -> ResultRow:
        process_result = item.process_result
        return ResultRow(
            build_id=self.build_id,
            name=item.name,
            worker_id=item.worker_id,
            hostname=item.node_info.hostname,
            numa_node=item.node_info.numa_node,
            rc=process_result.rc,
            out=json.dumps(list(process_result.out_lines)),
            err=json.dumps(list(process_result.err_lines)),
            timing_elapsed_ms=process_result.timing.elapsed_ms,
            timing_cpu_ms=process_result.timing.cpu_ms,
            timing_gc_ms=process_result.timing.gc_ms,
            output_shasum=str(item.output_shasum),
            current=item.current,
        )

    def decode(self, row: ResultRow) -> Result:
        return Result(
            name=row.name,
            worker_id=row.worker_id,
            build_id=row.build_id,
            node_info=NodeInfo(hostname=row.hostname, numa_node=row.numa_node),
            process_result=ProcessResult(
                rc=row.rc,
                out_lines=_load_lines(row.out),
                err_lines=_load_lines(row.err),
                timing=Timing(
                    elapsed_ms=row.timing_elapsed_ms,
                    cpu_ms=row.timing_cpu_ms,
                    gc_ms=row.timing_gc_ms,
                ),
            ),
            output_shasum=Shasum.parse(row.output_shasum),
            current=row.current,
        )


class PendingSync(SnapshotSync[Task]):
    table = PendingRow

    def encode(self, item: Task) -> PendingRow:
        return PendingRow(
            build_id=self.build_id,
            name=item.name,
            deps="\n".join(item.deps),
            info=json.dumps(item.info, sort_keys=True),
        )

    def decode(self, row: PendingRow) -> Task:
        info = json.loads(row.info) if row.info else {}
        return Task(
            name=row.name,
            deps=_split_names(row.deps),
            info=info if isinstance(info, dict) else {},
            build_id=row.build_id,
        )


class RunningSync(SnapshotSync[Job]):
    table = RunningRow

    def encode(self, item: Job) -> RunningRow:
        return RunningRow(
            build_id=self.build_id,
            name=item.name,
            worker_id=item.worker_id,
            hostname=item.node_info.hostname,
            numa_node=item.node_info.numa_node,
        )

    def decode(self, row: RunningRow) -> Job:
        return Job(
            name=row.name,
            worker_id=row.worker_id,
            build_id=row.build_id,
            node_info=NodeInfo(hostname=row.hostname, numa_node=row.numa_node),
        )


def _split_names(text: str) -> tuple[str, ...]:
    return tuple(line for line in text.splitlines() if line)


def _load_lines(text: str) -> tuple[str, ...]:
    return tuple(json.loads(text)) if text else ()
