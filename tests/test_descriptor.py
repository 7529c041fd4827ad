from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import allure
import pytest

from session_build.graph import SessionGraphError, load_project
from session_build.shasum import BUILD_PREFS, COMMAND, OPTIONS

pytestmark = [
    allure.epic("Session Graph"),
    allure.feature("Project Descriptor"),
]

WriteProject = Callable[[list[dict[str, Any]]], Path]


def test_load_project_resolves_sessions_and_sources(write_project: WriteProject) -> None:
    descriptor = write_project(
        [
            {"name": "A", "sources": ["a/Main.thy"], "timeout": 30},
            {"name": "B", "parent": "A", "sources": ["b/B.thy"], "options": {"quick": True}},
        ],
    )

    graph = load_project(descriptor)

    assert graph.names == ["A", "B"]
    assert graph.deps("B") == ("A",)
    assert graph["A"].timeout_seconds == 30.0
    entries = graph["A"].sources_shasum.entries
    assert entries[0].endswith(" a/Main.thy")
    assert entries[-2].endswith(f" {OPTIONS}")
    assert entries[-1].endswith(f" {COMMAND}")
    assert not any(entry.endswith(BUILD_PREFS) for entry in entries)


def test_sources_shasum_changes_with_source_content(
    write_project: WriteProject,
    project_dir: Path,
) -> None:
    descriptor = write_project([{"name": "A", "sources": ["A.thy"]}])
    before = load_project(descriptor)["A"].sources_shasum

    (project_dir / "A.thy").write_text("changed\n", "utf-8")
    after = load_project(descriptor)["A"].sources_shasum

    assert before != after
    assert before.entries[-1] == after.entries[-1]


def test_sources_shasum_changes_with_command(write_project: WriteProject) -> None:
    before = load_project(write_project([{"name": "A", "sources": ["A.thy"]}]))["A"]
    after = load_project(
        write_project([{"name": "A", "sources": ["A.thy"], "command": "make A"}]),
    )["A"]

    assert before.sources_shasum != after.sources_shasum
    assert before.sources_shasum.entries[:-1] == after.sources_shasum.entries[:-1]


def test_build_prefs_are_digested_separately(write_project: WriteProject) -> None:
    descriptor = write_project([{"name": "A", "build_prefs": {"ml_system": "x86_64"}}])

    entries = load_project(descriptor)["A"].sources_shasum.entries

    assert [entry.rsplit(" ", 1)[1] for entry in entries] == [OPTIONS, COMMAND, BUILD_PREFS]


def test_load_project_reports_entry_errors_with_session_name(
    write_project: WriteProject,
) -> None:
    descriptor = write_project(
        [
            {"name": "A", "sources": ["A.thy"]},
            {"name": "B", "parent": "A", "timeout": -1},
        ],
    )
    (descriptor.parent / "A.thy").unlink()

    with pytest.raises(SessionGraphError) as raised:
        load_project(descriptor)

    assert raised.value.errors == [
        "Missing source file 'A.thy' (session 'A')",
        "session.timeout must be a non-negative number (session 'B')",
    ]


def test_load_project_validates_graph(write_project: WriteProject) -> None:
    descriptor = write_project([{"name": "A", "parent": "Missing"}])

    with pytest.raises(SessionGraphError, match="Bad parent session 'Missing' for 'A'"):
        load_project(descriptor)


def test_load_project_requires_session_array(tmp_path: Path) -> None:
    descriptor = tmp_path / "project.json"
    descriptor.write_text(json.dumps({"sessions": {"name": "A"}}), "utf-8")

    with pytest.raises(TypeError, match="project.sessions must be an array"):
        load_project(descriptor)
