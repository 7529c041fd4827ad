"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from session_build.config import BuildSettings, Settings
from session_build.graph import SessionGraph, load_project
from session_build.process.build_process import BuildProcess
from session_build.process.context import BuildContext
from session_build.process.database import BuildDatabase
from session_build.process.progress import RecordingProgress
from session_build.process.store import SessionStore

ECHO_COMMAND = (
    "{python} -m session_build.process.echo_job --session {session} --artifact {artifact}"
)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture()
def write_project(project_dir: Path) -> Callable[[list[dict[str, Any]]], Path]:
    """Write a descriptor plus one source file per declared source; echo job by default."""

    def _write(sessions: list[dict[str, Any]]) -> Path:
        entries = []
        for declared in sessions:
            entry = {"command": ECHO_COMMAND, **declared}
            for source in entry.get("sources", []):
                path = project_dir / source
                if not path.exists():
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(f"source {source} of {entry['name']}\n", "utf-8")
            entries.append(entry)
        descriptor = project_dir / "project.json"
        write_json(descriptor, {"sessions": entries})
        return descriptor

    return _write


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "build.db",
        output_dir=tmp_path / "output",
        build=BuildSettings(
            max_jobs=2,
            poll_interval_seconds=0.05,
            busy_timeout_ms=5_000,
            lock_retry_limit=5,
            lock_retry_delay_seconds=0.05,
        ),
    )


@pytest.fixture()
def database(settings: Settings) -> Iterator[BuildDatabase]:
    db = BuildDatabase(
        settings.db_path,
        busy_timeout_ms=settings.build.busy_timeout_ms,
        lock_retry_limit=settings.build.lock_retry_limit,
        lock_retry_delay_seconds=settings.build.lock_retry_delay_seconds,
    )
    db.init_schema()
    yield db
    db.close()


@pytest.fixture()
def store(settings: Settings) -> SessionStore:
    return SessionStore(settings.output_dir)


@pytest.fixture()
def make_process(
    settings: Settings,
    database: BuildDatabase,
    store: SessionStore,
) -> Callable[..., BuildProcess]:
    """Build a master process for a descriptor path or an already loaded graph."""

    def _make(
        project: Path | SessionGraph,
        *,
        progress: RecordingProgress | None = None,
        **kwargs: Any,
    ) -> BuildProcess:
        graph = project if isinstance(project, SessionGraph) else load_project(project)
        context = BuildContext.make(
            graph=graph,
            settings=settings,
            database=database,
            store=store,
            hostname="host",
        )
        return BuildProcess(
            context=context,
            database=database,
            store=store,
            progress=progress or RecordingProgress(verbose=True),
            **kwargs,
        )

    return _make
