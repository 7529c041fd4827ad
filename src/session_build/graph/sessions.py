"""Static session dependency graph."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from session_build.shasum import NO_SHASUM, Shasum


class SessionGraphError(ValueError):
    """Invalid session declarations, reported all at once."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("\n".join(errors))
        self.errors = errors


@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Declared session with its resolved content hash."""

    name: str
    parent: str | None = None
    imports: tuple[str, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)
    build_prefs: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 0.0
    command: str = ""
    sources_shasum: Shasum = NO_SHASUM

    @property
    def deps(self) -> tuple[str, ...]:
        """Direct dependencies: parent first, then imports, without repetition."""

        deps: list[str] = []
        for name in ([self.parent] if self.parent else []) + list(self.imports):
            if name not in deps:
                deps.append(name)
        return tuple(deps)

    @property
    def options_fingerprint(self) -> str:
        return json.dumps(self.options, sort_keys=True, separators=(",", ":"))


class SessionGraph:
    """Read-only dependency graph of validated sessions.

    Edges point from a dependency to its dependents. Node order follows declaration order,
    which keeps traversal results deterministic.
    """

    def __init__(self, infos: dict[str, SessionInfo]) -> None:
        self._infos = infos
        self._preds: dict[str, tuple[str, ...]] = {
            name: tuple(dep for dep in info.deps if dep in infos) for name, info in infos.items()
        }
        succs: dict[str, list[str]] = {name: [] for name in infos}
        for name, preds in self._preds.items():
            for pred in preds:
                succs[pred].append(name)
        self._succs = {name: tuple(values) for name, values in succs.items()}
        self._topological_order = _topological_order(self._preds, self._succs)

    @classmethod
    def make(cls, infos: Iterable[SessionInfo]) -> SessionGraph:
        """Validate declarations and build the graph, raising ``SessionGraphError``."""

        errors: list[str] = []
        index: dict[str, SessionInfo] = {}
        for info in infos:
            if not info.name:
                errors.append("Illegal session name ''")
                continue
            if info.name in index:
                errors.append(f"Duplicate session {info.name!r}")
                continue
            index[info.name] = info

        for info in index.values():
            if info.parent and info.parent not in index:
                errors.append(f"Bad parent session {info.parent!r} for {info.name!r}")
            for name in info.imports:
                if name not in index:
                    errors.append(f"Bad imports session {name!r} for {info.name!r}")

        errors.extend(_cycle_errors(index))
        if errors:
            raise SessionGraphError(errors)
        return cls(index)

    def __contains__(self, name: object) -> bool:
        return name in self._infos

    def __getitem__(self, name: str) -> SessionInfo:
        return self._infos[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._infos)

    def __len__(self) -> int:
        return len(self._infos)

    @property
    def names(self) -> list[str]:
        return list(self._infos)

    @property
    def topological_order(self) -> list[str]:
        return list(self._topological_order)

    def deps(self, name: str) -> tuple[str, ...]:
        return self._preds[name]

    def all_preds(self, names: Iterable[str]) -> set[str]:
        return _closure(names, self._preds)

    def all_succs(self, names: Iterable[str]) -> set[str]:
        return _closure(names, self._succs)

    def ancestors(self, name: str) -> list[str]:
        """Transitive requirements of a session, dependencies before dependents."""

        preds = self.all_preds(self._preds[name])
        return [node for node in self._topological_order if node in preds]

    def descendants(self, name: str) -> list[str]:
        succs = self.all_succs(self._succs[name])
        return [node for node in self._topological_order if node in succs]

    def is_maximal(self, name: str) -> bool:
        return not self._succs[name]

    def maximals(self) -> list[str]:
        return [name for name in self._infos if not self._succs[name]]

    def restrict(self, names: Iterable[str]) -> SessionGraph:
        keep = set(names)
        return SessionGraph({name: info for name, info in self._infos.items() if name in keep})

    def selection(self, names: Iterable[str]) -> SessionGraph:
        """Restrict to the named sessions and everything they require."""

        selected = list(names)
        undefined = [name for name in selected if name not in self._infos]
        if undefined:
            raise SessionGraphError(
                ["Undefined session(s): " + ", ".join(repr(name) for name in undefined)],
            )
        return self.restrict(self.all_preds(selected))


def _closure(names: Iterable[str], edges: dict[str, tuple[str, ...]]) -> set[str]:
    seen: set[str] = set()
    stack = list(names)
    while stack:
        name = stack.pop()
        if name in seen:
            continue
        seen.add(name)
        stack.extend(edges[name])
    return seen


def _topological_order(
    preds: dict[str, tuple[str, ...]],
    succs: dict[str, tuple[str, ...]],
) -> list[str]:
    in_degree = {name: len(values) for name, values in preds.items()}
    ready = [name for name, degree in in_degree.items() if degree == 0]
    order: list[str] = []
    while ready:
        name = ready.pop(0)
        order.append(name)
        for succ in succs[name]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                ready.append(succ)
    return order


def _cycle_errors(index: dict[str, SessionInfo]) -> list[str]:
    edges = {name: [dep for dep in info.deps if dep in index] for name, info in index.items()}
    visiting: list[str] = []
    visited: set[str] = set()
    reported: set[frozenset[str]] = set()
    errors: list[str] = []

    def dfs(node: str) -> None:
        if node in visited:
            return
        if node in visiting:
            cycle = visiting[visiting.index(node) :]
            key = frozenset(cycle)
            if key not in reported:
                reported.add(key)
                path = [*cycle, node]
                errors.append(
                    "Cyclic session dependency of " + " via ".join(repr(n) for n in path),
                )
            return
        visiting.append(node)
        for dep in edges[node]:
            dfs(dep)
        visiting.pop()
        visited.add(node)

    for name in edges:
        dfs(name)
    return errors
