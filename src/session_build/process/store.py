"""Session output store: artifacts, logs and the persistent build info used for caching."""

from __future__ import annotations

import json
import logging
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlmodel import Session, select

from session_build.shasum import NO_SHASUM, Shasum, eq_sources
from session_build.storage.common import utc_now
from session_build.storage.sqlmodel_models import SessionInfoRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BuildInfo:
    """Recorded outcome of the latest build of a session."""

    sources: Shasum
    input_shasum: Shasum
    output_shasum: Shasum
    return_code: int
    build_id: str
    elapsed_ms: int = 0
    command_timings: bytes | None = None

    @property
    def ok(self) -> bool:
        return self.return_code == 0


def compress_timings(timings: list[dict[str, Any]]) -> bytes | None:
    if not timings:
        return None
    return zlib.compress(json.dumps(timings, sort_keys=True).encode("utf-8"))


def uncompress_timings(blob: bytes | None) -> list[dict[str, Any]]:
    if not blob:
        return []
    payload = json.loads(zlib.decompress(blob).decode("utf-8"))
    if not isinstance(payload, list):
        raise TypeError("Command timings must be a JSON array")
    return [item for item in payload if isinstance(item, dict)]


class SessionStore:
    """File-system outputs of sessions plus their build info rows.

    Database access goes through the caller's ``Session`` so that cache checks and output
    resets run inside the same locked transaction as the build state they belong to.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def prepare_output(self) -> None:
        (self.output_dir / "artifacts").mkdir(parents=True, exist_ok=True)
        (self.output_dir / "log").mkdir(parents=True, exist_ok=True)

    def artifact_path(self, name: str) -> Path:
        return self.output_dir / "artifacts" / f"{name}.artifact"

    def log_path(self, name: str, suffix: str) -> Path:
        return self.output_dir / "log" / f"{name}.{suffix}"

    def timings_path(self, name: str) -> Path:
        return self.log_path(name, "timings.json")

    def find_artifact_shasum(self, name: str) -> Shasum:
        path = self.artifact_path(name)
        if not path.is_file():
            return NO_SHASUM
        return Shasum.digest_file(path, name)

    def read_command_timings(self, name: str) -> bytes | None:
        """Compressed command timings reported by the last job of ``name``, if any."""

        path = self.timings_path(name)
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed command timings of session %s", name)
            return None
        if not isinstance(payload, list):
            return None
        return compress_timings([item for item in payload if isinstance(item, dict)])

    def read_build(self, session: Session, name: str) -> BuildInfo | None:
        row = session.exec(
            select(SessionInfoRow).where(SessionInfoRow.session_name == name),
        ).one_or_none()
        if row is None:
            return None
        return BuildInfo(
            sources=Shasum.parse(row.sources),
            input_shasum=Shasum.parse(row.input_shasum),
            output_shasum=Shasum.parse(row.output_shasum),
            return_code=row.return_code,
            build_id=row.build_id,
            elapsed_ms=row.elapsed_ms,
            command_timings=row.command_timings,
        )

    def write_build(self, session: Session, name: str, build: BuildInfo) -> None:
        row = session.get(SessionInfoRow, name)
        if row is None:
            row = SessionInfoRow(
                session_name=name,
                return_code=build.return_code,
                created_at=utc_now(),
            )
        row.sources = str(build.sources)
        row.input_shasum = str(build.input_shasum)
        row.output_shasum = str(build.output_shasum)
        row.return_code = build.return_code
        row.build_id = build.build_id
        row.elapsed_ms = build.elapsed_ms
        row.command_timings = build.command_timings
        row.created_at = utc_now()
        session.add(row)

    def clean_output(self, session: Session, name: str) -> bool:
        """Delete artifact, logs and build info of a session; report whether anything existed."""

        removed = False
        for path in (
            self.artifact_path(name),
            self.log_path(name, "out"),
            self.log_path(name, "err"),
            self.timings_path(name),
        ):
            if path.is_file():
                path.unlink()
                removed = True
        row = session.get(SessionInfoRow, name)
        if row is not None:
            session.delete(row)
            removed = True
        return removed

    def init_output(self, session: Session, name: str) -> None:
        self.prepare_output()
        if self.clean_output(session, name):
            logger.debug("Reset previous output of session %s", name)

    def check_output(  # noqa: PLR0913
        self,
        session: Session,
        name: str,
        *,
        sources_shasum: Shasum,
        input_shasum: Shasum,
        fresh_build: bool,
        store_artifact: bool,
        build_thorough: bool = False,
    ) -> tuple[bool, Shasum]:
        """Decide whether the recorded build of ``name`` is still valid.

        Returns the current flag together with the shasum of the artifact found on disk.
        """

        build = self.read_build(session, name)
        if build is None:
            return False, NO_SHASUM

        output_shasum = self.find_artifact_shasum(name)
        current = (
            not fresh_build
            and build.ok
            and eq_sources(build.sources, sources_shasum, build_thorough=build_thorough)
            and build.input_shasum == input_shasum
            and build.output_shasum == output_shasum
            and not (store_artifact and output_shasum.is_empty)
        )
        return current, output_shasum
