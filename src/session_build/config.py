"""Runtime configuration for build processes and workers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class BuildSettings:
    """Scheduling, caching and synchronization settings."""

    max_jobs: int = 1
    numa_shuffling: bool = False
    numa_nodes: tuple[int, ...] = ()
    build_artifacts: bool = False
    fresh_build: bool = False
    no_build: bool = False
    build_thorough: bool = False
    poll_interval_seconds: float = 0.5
    busy_timeout_ms: int = 30_000
    lock_retry_limit: int = 20
    lock_retry_delay_seconds: float = 0.2
    worker_stale_after_seconds: int = 300
    verbose: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".session_build.db")
    output_dir: Path = Path(".session_build")
    build: BuildSettings = field(default_factory=BuildSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SESSION_BUILD_DB_PATH", ".session_build.db")),
            output_dir=Path(os.getenv("SESSION_BUILD_OUTPUT_DIR", ".session_build")),
            build=BuildSettings(
                max_jobs=int(os.getenv("SESSION_BUILD_MAX_JOBS", "1")),
                numa_shuffling=_env_bool("SESSION_BUILD_NUMA_SHUFFLING", default=False),
                numa_nodes=_collect_numa_nodes(),
                build_artifacts=_env_bool("SESSION_BUILD_ARTIFACTS", default=False),
                fresh_build=_env_bool("SESSION_BUILD_FRESH", default=False),
                no_build=_env_bool("SESSION_BUILD_NO_BUILD", default=False),
                build_thorough=_env_bool("SESSION_BUILD_THOROUGH", default=False),
                poll_interval_seconds=float(
                    os.getenv("SESSION_BUILD_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                busy_timeout_ms=int(os.getenv("SESSION_BUILD_BUSY_TIMEOUT_MS", "30000")),
                lock_retry_limit=int(os.getenv("SESSION_BUILD_LOCK_RETRY_LIMIT", "20")),
                lock_retry_delay_seconds=float(
                    os.getenv("SESSION_BUILD_LOCK_RETRY_DELAY_SECONDS", "0.2"),
                ),
                worker_stale_after_seconds=int(
                    os.getenv("SESSION_BUILD_WORKER_STALE_AFTER_SECONDS", "300"),
                ),
                verbose=_env_bool("SESSION_BUILD_VERBOSE", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for settings the build process cannot work with."""

        if self.build.max_jobs < 0:
            raise ValueError("SESSION_BUILD_MAX_JOBS must be >= 0.")
        if self.build.poll_interval_seconds < 0:
            raise ValueError("SESSION_BUILD_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.build.busy_timeout_ms <= 0:
            raise ValueError("SESSION_BUILD_BUSY_TIMEOUT_MS must be > 0.")
        if self.build.lock_retry_limit <= 0:
            raise ValueError("SESSION_BUILD_LOCK_RETRY_LIMIT must be > 0.")
        if self.build.worker_stale_after_seconds <= 0:
            raise ValueError("SESSION_BUILD_WORKER_STALE_AFTER_SECONDS must be > 0.")
        if any(node < 0 for node in self.build.numa_nodes):
            raise ValueError("SESSION_BUILD_NUMA_NODES entries must be >= 0.")

    def effective_numa_nodes(self) -> tuple[int, ...]:
        """NUMA node indices used for placement, empty when shuffling is disabled."""

        if not self.build.numa_shuffling:
            return ()
        if self.build.numa_nodes:
            return self.build.numa_nodes
        return _detect_numa_nodes()


def _collect_numa_nodes() -> tuple[int, ...]:
    raw = os.getenv("SESSION_BUILD_NUMA_NODES", "").strip()
    if not raw:
        return ()

    nodes: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            node = int(token)
        except ValueError as error:
            raise ValueError(f"Invalid SESSION_BUILD_NUMA_NODES entry: {token!r}") from error
        if node not in nodes:
            nodes.append(node)
    return tuple(nodes)


def _detect_numa_nodes(root: Path = Path("/sys/devices/system/node")) -> tuple[int, ...]:
    if not root.is_dir():
        return ()
    nodes = [
        int(entry.name.removeprefix("node"))
        for entry in root.iterdir()
        if entry.name.startswith("node") and entry.name.removeprefix("node").isdigit()
    ]
    return tuple(sorted(nodes))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
