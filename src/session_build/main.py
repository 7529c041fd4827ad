"""CLI entrypoint for session-build."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from session_build import __version__
from session_build.graph import SessionGraphError
from session_build.process.controllers import (
    BuildCliController,
    BuildCommand,
    CleanCommand,
    SnapshotCommand,
    WorkerCommand,
    WorkersCommand,
)
from session_build.process.database import BuildProcessError, StoreLockError
from session_build.process.state import SerialRegressionError

click.rich_click.USE_MARKDOWN = True
BUILD_CONTROLLER = BuildCliController()


@click.group()
@click.version_option(version=__version__, prog_name="session-build")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Diagnostic logging level (stderr).",
)
def session_build(log_level: str) -> None:
    """Build session dependency graphs with cooperating workers."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@session_build.command("build")
@click.argument("project_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.argument("sessions", nargs=-1)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for artifacts and logs.",
)
@click.option(
    "--max-jobs",
    "-j",
    type=click.IntRange(min=0),
    default=None,
    help="Concurrent jobs of this process; 0 only coordinates external workers.",
)
@click.option("--fresh", "fresh_build", is_flag=True, help="Rebuild even if outputs are current.")
@click.option("--no-build", is_flag=True, help="Only check which sessions are current.")
@click.option("--artifacts", "build_artifacts", is_flag=True, help="Keep all artifacts.")
@click.option("--thorough", "build_thorough", is_flag=True, help="Rebuild on build_prefs changes.")
@click.option("--verbose", "-v", is_flag=True, help="Print verbose progress messages.")
def build(  # noqa: PLR0913
    project_path: Path,
    sessions: tuple[str, ...],
    db_path: Path | None,
    output_dir: Path | None,
    max_jobs: int | None,
    fresh_build: bool,
    no_build: bool,
    build_artifacts: bool,
    build_thorough: bool,
    verbose: bool,
) -> None:
    """Start a build of PROJECT_PATH, optionally restricted to SESSIONS and their requirements."""

    with _domain_errors():
        outcome = BUILD_CONTROLLER.build(
            BuildCommand(
                project_path=project_path,
                db_path=db_path,
                output_dir=output_dir,
                sessions=sessions,
                max_jobs=max_jobs,
                fresh_build=fresh_build,
                no_build=no_build,
                build_artifacts=build_artifacts,
                build_thorough=build_thorough,
                verbose=verbose,
            ),
        )
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Build failed.")


@session_build.command("worker")
@click.argument("project_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--build-id", required=True, help="Build to join.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for artifacts and logs.",
)
@click.option("--max-jobs", "-j", type=click.IntRange(min=1), default=None, help="Concurrent jobs.")
@click.option("--verbose", "-v", is_flag=True, help="Print verbose progress messages.")
def worker(  # noqa: PLR0913
    project_path: Path,
    build_id: str,
    db_path: Path | None,
    output_dir: Path | None,
    max_jobs: int | None,
    verbose: bool,
) -> None:
    """Join a running build as an additional worker."""

    with _domain_errors():
        outcome = BUILD_CONTROLLER.worker(
            WorkerCommand(
                project_path=project_path,
                build_id=build_id,
                db_path=db_path,
                output_dir=output_dir,
                max_jobs=max_jobs,
                verbose=verbose,
            ),
        )
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Worker finished with failed sessions.")


@session_build.command("snapshot")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--build-id", default=None, help="Build to inspect (default: latest).")
def snapshot(db_path: Path | None, build_id: str | None) -> None:
    """Show pending, running and finished sessions of a build."""

    with _domain_errors():
        lines = BUILD_CONTROLLER.snapshot(SnapshotCommand(db_path=db_path, build_id=build_id))
    _emit_lines(lines)


@session_build.command("workers")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--build-id", default=None, help="Optional build filter.")
def workers(db_path: Path | None, build_id: str | None) -> None:
    """List workers with their heartbeat status."""

    with _domain_errors():
        lines = BUILD_CONTROLLER.workers(WorkersCommand(db_path=db_path, build_id=build_id))
    _emit_lines(lines)


@session_build.command("clean")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def clean(db_path: Path | None) -> None:
    """Remove stopped builds from the build store."""

    with _domain_errors():
        lines = BUILD_CONTROLLER.clean(CleanCommand(db_path=db_path))
    _emit_lines(lines)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (
        SessionGraphError,
        BuildProcessError,
        StoreLockError,
        SerialRegressionError,
        ValueError,
        TypeError,
    ) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    session_build()
