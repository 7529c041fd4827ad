"""SQLModel ORM tables for the shared build store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, LargeBinary, Text
from sqlmodel import Field, SQLModel


class BuildRow(SQLModel, table=True):
    __tablename__ = "build_builds"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    platform: str
    options: str = Field(sa_column=Column(Text, nullable=False))
    start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    stop: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    progress_stopped: bool = False


class WorkerRow(SQLModel, table=True):
    __tablename__ = "build_workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    build_id: str = Field(index=True)
    hostname: str
    pid: int
    process_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    stamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    stop: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    serial: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, index=True))


class ProgressRow(SQLModel, table=True):
    __tablename__ = "build_progress"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    serial: int = Field(
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    kind: int
    text: str = Field(sa_column=Column(Text, nullable=False))
    verbose: bool = False


class SessionRow(SQLModel, table=True):
    __tablename__ = "build_sessions"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    deps: str = Field(default="", sa_column=Column(Text, nullable=False))
    ancestors: str = Field(default="", sa_column=Column(Text, nullable=False))
    options: str = Field(default="", sa_column=Column(Text, nullable=False))
    sources: str = Field(default="", sa_column=Column(Text, nullable=False))
    timeout_ms: int = 0
    old_time_ms: int = 0
    old_command_timings: bytes | None = Field(default=None, sa_column=Column(LargeBinary))


class PendingRow(SQLModel, table=True):
    __tablename__ = "build_pending"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    deps: str = Field(default="", sa_column=Column(Text, nullable=False))
    info: str = Field(default="{}", sa_column=Column(Text, nullable=False))


class RunningRow(SQLModel, table=True):
    __tablename__ = "build_running"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    worker_id: str = Field(index=True)
    hostname: str
    numa_node: int | None = None


class ResultRow(SQLModel, table=True):
    __tablename__ = "build_results"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    worker_id: str = Field(index=True)
    hostname: str
    numa_node: int | None = None
    rc: int
    out: str = Field(default="", sa_column=Column(Text, nullable=False))
    err: str = Field(default="", sa_column=Column(Text, nullable=False))
    timing_elapsed_ms: int = 0
    timing_cpu_ms: int = 0
    timing_gc_ms: int = 0
    output_shasum: str = Field(default="", sa_column=Column(Text, nullable=False))
    current: bool = False


class NodeInfoRow(SQLModel, table=True):
    __tablename__ = "build_node_info"  # type: ignore[bad-override]

    hostname: str = Field(primary_key=True)
    numa_next: int = 0


class SessionInfoRow(SQLModel, table=True):
    """Persistent outcome of the latest build of one session, kept across builds."""

    __tablename__ = "session_info"  # type: ignore[bad-override]

    session_name: str = Field(primary_key=True)
    sources: str = Field(default="", sa_column=Column(Text, nullable=False))
    input_shasum: str = Field(default="", sa_column=Column(Text, nullable=False))
    output_shasum: str = Field(default="", sa_column=Column(Text, nullable=False))
    return_code: int
    build_id: str = ""
    elapsed_ms: int = 0
    command_timings: bytes | None = Field(default=None, sa_column=Column(LargeBinary))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


BUILD_SCOPED_TABLES = (
    BuildRow,
    WorkerRow,
    ProgressRow,
    SessionRow,
    PendingRow,
    RunningRow,
    ResultRow,
)
