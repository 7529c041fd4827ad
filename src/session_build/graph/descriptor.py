"""JSON project descriptors resolved into a session graph."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from session_build.graph.sessions import SessionGraph, SessionGraphError, SessionInfo
from session_build.shasum import BUILD_PREFS, COMMAND, OPTIONS, Shasum


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def load_project(path: Path) -> SessionGraph:
    """Resolve a project descriptor into a validated session graph.

    The descriptor has the shape ``{"sessions": [{...}, ...]}``; each entry declares
    ``name`` and optionally ``parent``, ``imports``, ``options``, ``build_prefs``,
    ``sources`` (paths relative to the descriptor), ``timeout`` (seconds) and ``command``.
    All problems found in the entries are reported together.
    """

    raw = load_json(path)
    raw_sessions = raw.get("sessions")
    if not isinstance(raw_sessions, list):
        raise TypeError("project.sessions must be an array")

    base_dir = path.parent
    errors: list[str] = []
    infos: list[SessionInfo] = []
    for position, item in enumerate(raw_sessions):
        if not isinstance(item, dict):
            errors.append(f"Session entry #{position} must be an object")
            continue
        entry_errors, info = _parse_entry(item, base_dir=base_dir)
        if entry_errors:
            name = item.get("name", f"#{position}")
            errors.extend(f"{message} (session {name!r})" for message in entry_errors)
            continue
        infos.append(info)

    if errors:
        raise SessionGraphError(errors)
    return SessionGraph.make(infos)


def sources_shasum(
    *,
    sources: list[Path],
    base_dir: Path,
    options: dict[str, Any],
    command: str,
    build_prefs: dict[str, Any],
) -> Shasum:
    """Digest of source files, option settings, the command template and build preferences."""

    shasum = Shasum()
    for source in sources:
        if source.is_relative_to(base_dir):
            name = source.relative_to(base_dir).as_posix()
        else:
            name = str(source)
        shasum = shasum + Shasum.digest_file(source, name)
    shasum = shasum + Shasum.digest(_canonical(options), OPTIONS)
    shasum = shasum + Shasum.digest(command.encode("utf-8"), COMMAND)
    if build_prefs:
        shasum = shasum + Shasum.digest(_canonical(build_prefs), BUILD_PREFS)
    return shasum


def _parse_entry(  # noqa: C901
    item: dict[str, Any],
    *,
    base_dir: Path,
) -> tuple[list[str], SessionInfo]:
    errors: list[str] = []
    name = item.get("name")
    parent = item.get("parent")
    imports = item.get("imports", [])
    options = item.get("options", {})
    build_prefs = item.get("build_prefs", {})
    raw_sources = item.get("sources", [])
    timeout = item.get("timeout", 0)
    command = item.get("command", "")

    if not isinstance(name, str) or not name.strip():
        errors.append("session.name must be a non-empty string")
    if parent is not None and not isinstance(parent, str):
        errors.append("session.parent must be a string when provided")
    if not isinstance(imports, list) or not all(isinstance(value, str) for value in imports):
        errors.append("session.imports must be an array of strings")
    if not isinstance(options, dict):
        errors.append("session.options must be an object")
    if not isinstance(build_prefs, dict):
        errors.append("session.build_prefs must be an object")
    if not isinstance(timeout, int | float) or timeout < 0:
        errors.append("session.timeout must be a non-negative number")
    if not isinstance(command, str):
        errors.append("session.command must be a string")

    sources: list[Path] = []
    if not isinstance(raw_sources, list) or not all(isinstance(v, str) for v in raw_sources):
        errors.append("session.sources must be an array of strings")
    else:
        for value in raw_sources:
            source = (base_dir / value).resolve()
            if not source.is_file():
                errors.append(f"Missing source file {value!r}")
            sources.append(source)

    if errors:
        return errors, SessionInfo(name="")

    return [], SessionInfo(
        name=name,
        parent=parent or None,
        imports=tuple(imports),
        options=options,
        build_prefs=build_prefs,
        timeout_seconds=float(timeout),
        command=command,
        sources_shasum=sources_shasum(
            sources=sources,
            base_dir=base_dir.resolve(),
            options=options,
            command=command,
            build_prefs=build_prefs,
        ),
    )


def _canonical(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
