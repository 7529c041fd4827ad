"""Shared build store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from session_build.process.models import (
    Build,
    ProgressKind,
    ProgressMessage,
    Snapshot,
    Worker,
)
from session_build.process.reconcile import PendingSync, ResultsSync, RunningSync, SessionsSync
from session_build.process.state import BuildState, SerialRegressionError
from session_build.storage.alembic_runner import upgrade_head
from session_build.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_build.storage.sqlmodel_models import (
    BUILD_SCOPED_TABLES,
    BuildRow,
    NodeInfoRow,
    ProgressRow,
    WorkerRow,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


class StoreLockError(RuntimeError):
    """Build store stayed locked by other processes for all retry attempts."""


class BuildProcessError(RuntimeError):
    """Build process cannot proceed with the requested operation."""


class BuildDatabase:
    """Persistence facade of the shared build store.

    Every transaction starts with ``BEGIN IMMEDIATE``: holding a transaction means holding the
    store lock, so one pull-apply-push cycle never interleaves with another.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 30_000,
        lock_retry_limit: int = 20,
        lock_retry_delay_seconds: float = 0.2,
    ) -> None:
        self.db_path = db_path
        self.lock_retry_limit = lock_retry_limit
        self.lock_retry_delay_seconds = lock_retry_delay_seconds
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
            immediate_transactions=True,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Locked transaction, committed when the block exits normally."""

        with Session(self.engine, expire_on_commit=False) as session:
            session.connection()
            yield session
            session.commit()

    def run_locked(self, body: Callable[[Session], R], *, label: str = "") -> R:
        """Run ``body`` in a locked transaction, retrying while the store is locked."""

        attempt = 1
        while True:
            try:
                with self.transaction() as session:
                    return body(session)
            except OperationalError as error:
                if not _is_locked(error):
                    raise
                if attempt >= self.lock_retry_limit:
                    raise StoreLockError(
                        f"Build store {self.db_path} locked after {attempt} attempts"
                        + (f" ({label})" if label else ""),
                    ) from error
                logger.warning(
                    "Build store locked%s, retrying (attempt %d/%d)",
                    f" during {label}" if label else "",
                    attempt,
                    self.lock_retry_limit,
                )
                attempt += 1
                time.sleep(self.lock_retry_delay_seconds)

    # builds

    def start_build(self, session: Session, build: Build) -> None:
        session.add(
            BuildRow(
                build_id=build.build_id,
                platform=build.platform,
                options=build.options,
                start=to_db_datetime(build.start),
                stop=None,
                progress_stopped=build.progress_stopped,
            ),
        )

    def stop_build(self, session: Session, build_id: str) -> None:
        row = session.get(BuildRow, build_id)
        if row is None or row.stop is not None:
            return
        row.stop = to_db_datetime(utc_now())
        session.add(row)

    def read_builds(self, session: Session, build_id: str | None = None) -> list[Build]:
        statement = select(BuildRow).order_by(col(BuildRow.start).asc())
        if build_id is not None:
            statement = statement.where(BuildRow.build_id == build_id)
        return [_to_build(row) for row in session.exec(statement).all()]

    def read_build(self, session: Session, build_id: str) -> Build | None:
        row = session.get(BuildRow, build_id)
        return None if row is None else _to_build(row)

    def clean_build(self, session: Session) -> list[str]:
        """Delete all rows of stopped builds; running builds are left alone."""

        removed = list(
            session.exec(
                select(BuildRow.build_id).where(col(BuildRow.stop).is_not(None)),
            ).all(),
        )
        if not removed:
            return []
        for table in BUILD_SCOPED_TABLES:
            for row in session.exec(
                select(table).where(col(table.build_id).in_(removed)),
            ).all():
                session.delete(row)
        logger.info("Removed %d stopped build(s) from build store", len(removed))
        return removed

    # workers

    def start_worker(  # noqa: PLR0913
        self,
        session: Session,
        *,
        worker_id: str,
        build_id: str,
        hostname: str,
        pid: int,
        process_start: datetime,
        serial: int,
    ) -> Worker:
        build = session.get(BuildRow, build_id)
        if build is None:
            raise BuildProcessError(
                f"Cannot start worker {worker_id} for unknown build process {build_id}",
            )
        if build.stop is not None:
            raise BuildProcessError(
                f"Cannot start worker {worker_id} for already stopped build process {build_id}",
            )

        now = to_db_datetime(utc_now())
        row = WorkerRow(
            worker_id=worker_id,
            build_id=build_id,
            hostname=hostname,
            pid=pid,
            process_start=to_db_datetime(process_start),
            start=now,
            stamp=now,
            stop=None,
            serial=serial,
        )
        session.add(row)
        return _to_worker(row)

    def stamp_worker(
        self,
        session: Session,
        worker_id: str,
        *,
        serial: int,
        stop: bool = False,
    ) -> None:
        row = session.get(WorkerRow, worker_id)
        if row is None:
            raise BuildProcessError(f"Unknown worker {worker_id}")
        now = to_db_datetime(utc_now())
        row.stamp = now
        row.serial = serial
        if stop and row.stop is None:
            row.stop = now
        session.add(row)

    def read_workers(self, session: Session, build_id: str | None = None) -> list[Worker]:
        statement = select(WorkerRow).order_by(col(WorkerRow.start).asc())
        if build_id is not None:
            statement = statement.where(WorkerRow.build_id == build_id)
        return [_to_worker(row) for row in session.exec(statement).all()]

    def read_serial(self, session: Session, build_id: str) -> int:
        value = session.exec(
            select(func.max(WorkerRow.serial)).where(WorkerRow.build_id == build_id),
        ).one()
        return int(value or 0)

    # progress

    def read_progress(
        self,
        session: Session,
        build_id: str,
        *,
        seen: int = 0,
    ) -> dict[int, ProgressMessage]:
        rows = session.exec(
            select(ProgressRow)
            .where(ProgressRow.build_id == build_id, col(ProgressRow.serial) > seen)
            .order_by(col(ProgressRow.serial).asc()),
        ).all()
        return {
            row.serial: ProgressMessage(
                kind=ProgressKind(row.kind),
                text=row.text,
                verbose=row.verbose,
            )
            for row in rows
        }

    def write_progress(
        self,
        session: Session,
        build_id: str,
        serial: int,
        message: ProgressMessage,
    ) -> None:
        session.add(
            ProgressRow(
                build_id=build_id,
                serial=serial,
                kind=int(message.kind),
                text=message.text,
                verbose=message.verbose,
            ),
        )

    def sync_progress(
        self,
        session: Session,
        build_id: str,
        *,
        seen: int,
        stopped: bool,
    ) -> tuple[dict[int, ProgressMessage], bool, bool]:
        """Exchange progress with the store.

        Returns unseen messages, the merged stop flag and whether anything differed from the
        local view. A local stop is written to the store here.
        """

        row = session.get(BuildRow, build_id)
        if row is None:
            raise BuildProcessError(f"Unknown build process {build_id}")
        stopped_db = row.progress_stopped
        if stopped and not stopped_db:
            row.progress_stopped = True
            session.add(row)
        messages = self.read_progress(session, build_id, seen=seen)
        changed = bool(messages) or stopped != stopped_db
        return messages, stopped or stopped_db, changed

    # hosts

    def read_numa_next(self, session: Session, hostname: str) -> int:
        row = session.get(NodeInfoRow, hostname)
        return 0 if row is None else row.numa_next

    def update_numa_next(self, session: Session, hostname: str, numa_next: int) -> bool:
        row = session.get(NodeInfoRow, hostname)
        if row is not None and row.numa_next == numa_next:
            return False
        if row is None:
            row = NodeInfoRow(hostname=hostname, numa_next=numa_next)
        row.numa_next = numa_next
        session.add(row)
        return True

    # build state

    def pull_database(
        self,
        session: Session,
        state: BuildState,
        *,
        build_id: str,
        worker_id: str,
        hostname: str,
    ) -> BuildState:
        """Merge the store content into ``state`` when the store serial moved."""

        serial_db = self.read_serial(session, build_id)
        if serial_db == state.serial:
            return state

        if state.serial > serial_db:
            raise SerialRegressionError(
                f"Local serial {state.serial} is ahead of build store serial {serial_db} "
                f"(build {build_id})",
            )
        logger.debug("Pull build %s at serial %d (local %d)", build_id, serial_db, state.serial)
        state = state.set_serial(serial_db)
        self.stamp_worker(session, worker_id, serial=state.serial)

        pending = PendingSync(build_id).pull(
            session,
            {task.name: task for task in state.pending},
        )
        return BuildState(
            serial=state.serial,
            progress_seen=state.progress_seen,
            numa_next=self.read_numa_next(session, hostname),
            sessions=SessionsSync(build_id).pull(session, state.sessions),
            pending=tuple(pending.values()),
            running=RunningSync(build_id).pull(session, state.running),
            results=ResultsSync(build_id).pull(session, state.results),
        )

    def update_database(  # noqa: PLR0913
        self,
        session: Session,
        old: BuildState,
        new: BuildState,
        *,
        build_id: str,
        worker_id: str,
        hostname: str,
    ) -> BuildState:
        """Push the change from ``old`` to ``new``; bump the serial when anything was written."""

        changed = [
            SessionsSync(build_id).push(session, old.sessions, new.sessions),
            PendingSync(build_id).push(
                session,
                {task.name: task for task in old.pending},
                {task.name: task for task in new.pending},
            ),
            RunningSync(build_id).push(session, old.running, new.running),
            ResultsSync(build_id).push(session, old.results, new.results),
            new.numa_next != old.numa_next
            and self.update_numa_next(session, hostname, new.numa_next),
        ]
        state = new.inc_serial() if any(changed) else new
        if state is not new:
            logger.debug("Push build %s at serial %d", build_id, state.serial)
        self.stamp_worker(session, worker_id, serial=state.serial)
        return state

    def read_snapshot(self, session: Session, build_id: str) -> Snapshot:
        return Snapshot(
            progress_messages=self.read_progress(session, build_id),
            builds=self.read_builds(session, build_id),
            workers=self.read_workers(session, build_id),
            sessions=SessionsSync(build_id).read_all(session),
            pending=list(PendingSync(build_id).read_all(session).values()),
            running=RunningSync(build_id).read_all(session),
            results=ResultsSync(build_id).read_all(session),
        )


def _is_locked(error: OperationalError) -> bool:
    text = str(error.orig or error).lower()
    return "database is locked" in text or "database is busy" in text


def _to_build(row: BuildRow) -> Build:
    return Build(
        build_id=row.build_id,
        platform=row.platform,
        options=row.options,
        start=to_utc_aware_datetime(row.start),
        stop=to_utc_aware_datetime(row.stop) if row.stop is not None else None,
        progress_stopped=row.progress_stopped,
    )


def _to_worker(row: WorkerRow) -> Worker:
    return Worker(
        worker_id=row.worker_id,
        build_id=row.build_id,
        hostname=row.hostname,
        pid=row.pid,
        process_start=to_utc_aware_datetime(row.process_start),
        start=to_utc_aware_datetime(row.start),
        stamp=to_utc_aware_datetime(row.stamp),
        stop=to_utc_aware_datetime(row.stop) if row.stop is not None else None,
        serial=row.serial,
    )
