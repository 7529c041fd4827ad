"""Static per-build context: sessions, estimates, placement and build options."""

from __future__ import annotations

import json
import platform
import socket
import sys
import uuid
from dataclasses import asdict, dataclass

from session_build.config import Settings
from session_build.graph.sessions import SessionGraph
from session_build.process.database import BuildDatabase
from session_build.process.models import SessionContext, Task
from session_build.process.scheduler import Scheduler, sessions_time
from session_build.process.store import SessionStore


def platform_descriptor() -> str:
    """Identity of the build platform; part of the input shasum of root sessions."""

    return (
        f"{sys.implementation.name}-{sys.version_info.major}.{sys.version_info.minor}"
        f"-{sys.platform}-{platform.machine() or 'unknown'}"
    )


@dataclass(frozen=True, slots=True)
class BuildContext:
    """Everything a build process needs to know that does not change during the build."""

    build_id: str
    graph: SessionGraph
    settings: Settings
    hostname: str
    platform: str
    numa_nodes: tuple[int, ...]
    master: bool
    old_times: dict[str, float]
    old_command_timings: dict[str, bytes | None]
    sessions_time: dict[str, float]
    scheduler: Scheduler

    @classmethod
    def make(  # noqa: PLR0913
        cls,
        *,
        graph: SessionGraph,
        settings: Settings,
        database: BuildDatabase,
        store: SessionStore,
        build_id: str | None = None,
        master: bool = True,
        hostname: str | None = None,
    ) -> BuildContext:
        def _read_history(session) -> dict[str, tuple[float, bytes | None]]:
            history: dict[str, tuple[float, bytes | None]] = {}
            for name in graph:
                build = store.read_build(session, name)
                if build is not None and build.elapsed_ms > 0:
                    history[name] = (build.elapsed_ms / 1000.0, build.command_timings)
            return history

        history = database.run_locked(_read_history, label="read_history")
        old_times = {name: elapsed for name, (elapsed, _) in history.items()}
        estimates = sessions_time(graph, old_times)
        return cls(
            build_id=build_id or str(uuid.uuid4()),
            graph=graph,
            settings=settings,
            hostname=hostname or socket.gethostname(),
            platform=platform_descriptor(),
            numa_nodes=settings.effective_numa_nodes(),
            master=master,
            old_times=old_times,
            old_command_timings={name: timings for name, (_, timings) in history.items()},
            sessions_time=estimates,
            scheduler=Scheduler(
                sessions_time=estimates,
                timeouts={name: graph[name].timeout_seconds for name in graph},
                max_jobs=settings.build.max_jobs,
            ),
        )

    @property
    def max_jobs(self) -> int:
        return self.settings.build.max_jobs

    def store_artifact(self, name: str) -> bool:
        """Keep the artifact when requested, or when other sessions depend on it."""

        return self.settings.build.build_artifacts or not self.graph.is_maximal(name)

    def options_snapshot(self) -> str:
        payload = asdict(self.settings.build)
        payload["numa_nodes"] = list(self.numa_nodes)
        return json.dumps(payload, sort_keys=True)

    def session_contexts(self) -> dict[str, SessionContext]:
        contexts: dict[str, SessionContext] = {}
        for name in self.graph.topological_order:
            info = self.graph[name]
            contexts[name] = SessionContext(
                name=name,
                deps=self.graph.deps(name),
                ancestors=tuple(self.graph.ancestors(name)),
                options=info.options_fingerprint,
                sources_shasum=info.sources_shasum,
                timeout_seconds=info.timeout_seconds,
                old_time_seconds=self.old_times.get(name, 0.0),
                old_command_timings=self.old_command_timings.get(name),
                build_id=self.build_id,
            )
        return contexts

    def initial_tasks(self) -> list[Task]:
        return [
            Task(name=name, deps=self.graph.deps(name), info={}, build_id=self.build_id)
            for name in self.graph.topological_order
        ]
