"""Controllers for build CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from session_build.config import Settings
from session_build.graph import load_project
from session_build.process.build_process import BuildProcess
from session_build.process.context import BuildContext
from session_build.process.database import BuildDatabase, BuildProcessError
from session_build.process.models import ResultStatus, Snapshot
from session_build.process.progress import ConsoleProgress
from session_build.process.store import SessionStore
from session_build.storage.common import utc_now


@dataclass(slots=True)
class BuildCommand:
    """CLI input for a master build process."""

    project_path: Path
    db_path: Path | None
    output_dir: Path | None = None
    sessions: tuple[str, ...] = ()
    max_jobs: int | None = None
    fresh_build: bool = False
    no_build: bool = False
    build_artifacts: bool = False
    build_thorough: bool = False
    verbose: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for an additional worker of a running build."""

    project_path: Path
    build_id: str
    db_path: Path | None
    output_dir: Path | None = None
    max_jobs: int | None = None
    verbose: bool = False


@dataclass(slots=True)
class SnapshotCommand:
    """CLI input for build state inspection."""

    db_path: Path | None
    build_id: str | None = None


@dataclass(slots=True)
class WorkersCommand:
    """CLI input for worker heartbeat listing."""

    db_path: Path | None
    build_id: str | None = None


@dataclass(slots=True)
class CleanCommand:
    """CLI input for removal of stopped builds."""

    db_path: Path | None


@dataclass(slots=True)
class BuildOutcome:
    lines: list[str]
    success: bool


class BuildCliController:
    """Coordinates build, worker and inspection CLI operations."""

    def build(self, command: BuildCommand) -> BuildOutcome:
        settings = _settings(
            db_path=command.db_path,
            output_dir=command.output_dir,
            max_jobs=command.max_jobs,
            verbose=command.verbose,
        )
        settings.build.fresh_build = settings.build.fresh_build or command.fresh_build
        settings.build.no_build = settings.build.no_build or command.no_build
        settings.build.build_artifacts = settings.build.build_artifacts or command.build_artifacts
        settings.build.build_thorough = settings.build.build_thorough or command.build_thorough

        graph = load_project(command.project_path)
        if command.sessions:
            graph = graph.selection(command.sessions)

        with _database(settings) as database:
            store = SessionStore(settings.output_dir)
            context = BuildContext.make(
                graph=graph,
                settings=settings,
                database=database,
                store=store,
                master=True,
            )
            process = BuildProcess(
                context=context,
                database=database,
                store=store,
                progress=ConsoleProgress(verbose=settings.build.verbose),
            )
            results = process.run()

        statuses = [result.status for result in results.values()]
        lines = [
            f"Build {context.build_id}: sessions={len(results)} "
            f"ok={statuses.count(ResultStatus.OK)} "
            f"failed={statuses.count(ResultStatus.FAILED)} "
            f"cancelled={statuses.count(ResultStatus.CANCELLED)}",
        ]
        return BuildOutcome(lines=lines, success=all(result.ok for result in results.values()))

    def worker(self, command: WorkerCommand) -> BuildOutcome:
        settings = _settings(
            db_path=command.db_path,
            output_dir=command.output_dir,
            max_jobs=command.max_jobs,
            verbose=command.verbose,
        )
        graph = load_project(command.project_path)

        with _database(settings) as database:
            store = SessionStore(settings.output_dir)
            context = BuildContext.make(
                graph=graph,
                settings=settings,
                database=database,
                store=store,
                build_id=command.build_id,
                master=False,
            )
            process = BuildProcess(
                context=context,
                database=database,
                store=store,
                progress=ConsoleProgress(verbose=settings.build.verbose),
            )
            results = process.run()

        mine = [
            result
            for result in process.state.results.values()
            if result.worker_id == process.worker_id
        ]
        return BuildOutcome(
            lines=[
                f"Worker {process.worker_id}: build={command.build_id} "
                f"sessions={len(results)} ran={len(mine)}",
            ],
            success=all(result.ok for result in mine),
        )

    def snapshot(self, command: SnapshotCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            build_id = command.build_id or _latest_build_id(database)
            snapshot = database.run_locked(
                lambda session: database.read_snapshot(session, build_id),
                label="snapshot",
            )
        return render_snapshot_lines(snapshot)

    def workers(self, command: WorkersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after = timedelta(seconds=settings.build.worker_stale_after_seconds)
        with _database(settings) as database:
            workers = database.run_locked(
                lambda session: database.read_workers(session, command.build_id),
                label="workers",
            )

        if not workers:
            return ["No workers."]
        now = utc_now()
        lines = []
        for worker in workers:
            if worker.stop is not None:
                status = "stopped"
            elif worker.is_stale(now=now, stale_after=stale_after):
                status = "stale"
            else:
                status = "running"
            lines.append(
                f"{worker.worker_id} build={worker.build_id} host={worker.hostname} "
                f"pid={worker.pid} serial={worker.serial} "
                f"stamp={worker.stamp.isoformat()} status={status}",
            )
        return lines

    def clean(self, command: CleanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            removed = database.run_locked(database.clean_build, label="clean_build")
        return [f"Removed {len(removed)} stopped build(s)."]


def render_snapshot_lines(snapshot: Snapshot) -> list[str]:
    lines: list[str] = []
    for build in snapshot.builds:
        state = "stopped" if build.stop is not None else "running"
        if build.progress_stopped:
            state += " (interrupted)"
        lines.append(f"Build {build.build_id}: {state} platform={build.platform}")
    lines.append(f"Workers: {len(snapshot.workers)}")
    lines.append(f"Sessions: {len(snapshot.sessions)}")
    for task in sorted(snapshot.pending, key=lambda item: item.name):
        waiting = f" (waiting for {', '.join(task.deps)})" if task.deps else ""
        lines.append(f"pending {task.name}{waiting}")
    for name, job in sorted(snapshot.running.items()):
        lines.append(f"running {name} on {job.node_info} by {job.worker_id}")
    for name, result in sorted(snapshot.results.items()):
        current = " current" if result.current else ""
        lines.append(f"result {name}: {result.status.value} rc={result.process_result.rc}{current}")
    return lines


def _settings(
    *,
    db_path: Path | None,
    output_dir: Path | None,
    max_jobs: int | None,
    verbose: bool,
) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if output_dir is not None:
        settings.output_dir = output_dir
    if max_jobs is not None:
        settings.build.max_jobs = max_jobs
    settings.build.verbose = settings.build.verbose or verbose
    settings.validate()
    return settings


def _latest_build_id(database: BuildDatabase) -> str:
    builds = database.run_locked(database.read_builds, label="read_builds")
    if not builds:
        raise BuildProcessError("No builds in build store")
    return builds[-1].build_id


@contextmanager
def _database(settings: Settings) -> Iterator[BuildDatabase]:
    database = BuildDatabase(
        db_path=settings.db_path,
        busy_timeout_ms=settings.build.busy_timeout_ms,
        lock_retry_limit=settings.build.lock_retry_limit,
        lock_retry_delay_seconds=settings.build.lock_retry_delay_seconds,
    )
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
