"""Job selection policy."""

from __future__ import annotations

from collections.abc import Mapping

from session_build.graph.sessions import SessionGraph
from session_build.process.state import BuildState


def sessions_time(graph: SessionGraph, old_time: Mapping[str, float]) -> dict[str, float]:
    """Estimated remaining work per session, from historical session times.

    A maximal session (no dependents) counts its own time. Otherwise the estimate is the
    largest total time over the requirements of any maximal descendant, restricted to the
    session's descendant subgraph. Sessions without a recorded time count as zero.
    """

    estimates: dict[str, float] = {}
    for name in graph:
        if graph.is_maximal(name):
            estimates[name] = old_time.get(name, 0.0)
            continue

        subgraph = graph.restrict(graph.all_succs([name]))
        best = 0.0
        for maximal in subgraph.maximals():
            preds = subgraph.all_preds([maximal])
            best = max(best, sum(old_time.get(pred, 0.0) for pred in preds))
        estimates[name] = best
    return estimates


class Scheduler:
    """Deterministic pick of the next ready session.

    Order: larger remaining work first, then larger timeout, then session name.
    """

    def __init__(
        self,
        *,
        sessions_time: Mapping[str, float],
        timeouts: Mapping[str, float],
        max_jobs: int,
    ) -> None:
        self.sessions_time = dict(sessions_time)
        self.timeouts = dict(timeouts)
        self.max_jobs = max_jobs

    def sort_key(self, name: str) -> tuple[float, float, str]:
        return (
            -self.sessions_time.get(name, 0.0),
            -self.timeouts.get(name, 0.0),
            name,
        )

    def order(self, names: list[str]) -> list[str]:
        return sorted(names, key=self.sort_key)

    def running_count(self, state: BuildState, *, worker_id: str) -> int:
        return sum(1 for job in state.running.values() if job.worker_id == worker_id)

    def next_job(self, state: BuildState, *, worker_id: str, stopped: bool) -> str | None:
        """Name of the session to start next, or ``None`` when nothing may start."""

        if stopped or self.running_count(state, worker_id=worker_id) >= self.max_jobs:
            return None
        ready = [task.name for task in state.ready()]
        if not ready:
            return None
        return min(ready, key=self.sort_key)
