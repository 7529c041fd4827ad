"""Subprocess-based runner for session jobs."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from session_build.process.models import ProcessResult, ReturnCode, Timing
from session_build.process.store import SessionStore
from session_build.shasum import NO_SHASUM, Shasum

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 2.0


class JobStartError(RuntimeError):
    """Session job could not be started."""


@dataclass(slots=True)
class JobRequest:
    """Inputs required to run one session job."""

    name: str
    command_template: str
    input_shasum: Shasum
    sources_shasum: Shasum
    store_artifact: bool
    timeout_seconds: float = 0.0
    numa_node: int | None = None
    build_id: str = ""


class BuildJob:
    """Running external process of one session.

    Polling is non-blocking; ``join`` waits for the process and collects its outcome. Output
    goes to the session log files of the store.
    """

    def __init__(self, request: JobRequest, store: SessionStore) -> None:
        self.request = request
        self.store = store
        self._stdout_handle: IO[str] | None = None
        self._stderr_handle: IO[str] | None = None
        self._process: subprocess.Popen[str] | None = None
        self._start_monotonic = 0.0
        self._elapsed: float | None = None
        self._returncode: int | None = None
        self._cpu_seconds = 0.0
        self._timed_out = False
        self._cancelled = False
        self._kill_deadline: float | None = None
        self._killed = False

    @classmethod
    def start(cls, request: JobRequest, store: SessionStore) -> BuildJob:
        job = cls(request, store)
        job._spawn()
        return job

    @property
    def name(self) -> str:
        return self.request.name

    def _spawn(self) -> None:
        run_args = build_run_args(
            command_template=self.request.command_template,
            session=self.request.name,
            artifact=self.store.artifact_path(self.request.name),
            output_dir=self.store.output_dir,
            numa_node=self.request.numa_node,
        )
        env = os.environ.copy()
        env["SESSION_BUILD_SESSION"] = self.request.name
        env["SESSION_BUILD_BUILD_ID"] = self.request.build_id
        env["SESSION_BUILD_INPUT_SHASUM"] = str(self.request.input_shasum)
        env["SESSION_BUILD_SOURCES_SHASUM"] = str(self.request.sources_shasum)
        env["SESSION_BUILD_ARTIFACT"] = str(self.store.artifact_path(self.request.name))
        env["SESSION_BUILD_STORE_ARTIFACT"] = "1" if self.request.store_artifact else "0"
        env["SESSION_BUILD_TIMINGS"] = str(self.store.timings_path(self.request.name))
        if self.request.numa_node is not None:
            env["SESSION_BUILD_NUMA_NODE"] = str(self.request.numa_node)

        self.store.prepare_output()
        self._stdout_handle = self.store.log_path(self.request.name, "out").open(
            "w",
            encoding="utf-8",
        )
        self._stderr_handle = self.store.log_path(self.request.name, "err").open(
            "w",
            encoding="utf-8",
        )
        try:
            self._process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdout=self._stdout_handle,
                stderr=self._stderr_handle,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except OSError as error:
            self._close_logs()
            raise JobStartError(f"Failed to start session {self.request.name}: {error}") from error
        self._start_monotonic = time.monotonic()
        logger.debug("Started session %s (pid %d)", self.request.name, self._process.pid)

    def is_finished(self) -> bool:
        if self._poll() is not None:
            return True
        timeout = self.request.timeout_seconds
        if (
            self._kill_deadline is None
            and timeout > 0
            and time.monotonic() - self._start_monotonic >= timeout
        ):
            logger.warning("Session %s timed out after %.1fs", self.request.name, timeout)
            self._timed_out = True
            self._terminate()
        self._kill_if_overdue()
        return False

    def cancel(self) -> None:
        if self._poll() is not None:
            return
        if self._kill_deadline is None:
            logger.warning("Cancelling session %s", self.request.name)
            self._cancelled = True
            self._terminate()
        self._kill_if_overdue()

    def join(self) -> tuple[ProcessResult, Shasum]:
        """Wait for the process; return its result and the shasum of the produced artifact."""

        while self._poll() is None:
            self._kill_if_overdue()
            time.sleep(0.05)
        self._close_logs()

        out_lines = _read_lines(self.store.log_path(self.request.name, "out"))
        err_lines = _read_lines(self.store.log_path(self.request.name, "err"))
        rc = self._returncode if self._returncode is not None else int(ReturnCode.ERROR)
        if self._timed_out:
            rc = int(ReturnCode.TIMEOUT)
            err_lines.append(f"Timeout after {self.request.timeout_seconds:g}s")
        elif self._cancelled:
            rc = int(ReturnCode.INTERRUPT)
            err_lines.append("Interrupt")

        result = ProcessResult(
            rc=rc,
            out_lines=tuple(out_lines),
            err_lines=tuple(err_lines),
            timing=Timing(
                elapsed_ms=round((self._elapsed or 0.0) * 1000),
                cpu_ms=round(self._cpu_seconds * 1000),
            ),
        )
        output_shasum = NO_SHASUM
        if result.ok:
            output_shasum = self.store.find_artifact_shasum(self.request.name)
        return result, output_shasum

    def _poll(self) -> int | None:
        if self._returncode is not None:
            return self._returncode
        process = self._process
        if process is None:
            return None

        if hasattr(os, "wait4"):
            try:
                pid, status, rusage = os.wait4(process.pid, os.WNOHANG)
            except ChildProcessError:
                pid, status, rusage = 0, 0, None
                process.poll()
            if pid == 0 and process.returncode is None:
                return None
            if pid != 0:
                process.returncode = os.waitstatus_to_exitcode(status)
                if rusage is not None:
                    self._cpu_seconds = rusage.ru_utime + rusage.ru_stime
        elif process.poll() is None:
            return None

        self._record_exit(process.returncode)
        return self._returncode

    def _record_exit(self, returncode: int | None) -> None:
        code = 0 if returncode is None else returncode
        # negative codes are deaths by signal
        self._returncode = code if code >= 0 else 128 - code
        self._elapsed = time.monotonic() - self._start_monotonic

    def _terminate(self) -> None:
        """Send SIGTERM without waiting; a later poll collects the exit."""

        if self._process is None:
            return
        self._kill_deadline = time.monotonic() + KILL_GRACE_SECONDS
        self._process.terminate()

    def _kill_if_overdue(self) -> None:
        if (
            self._process is None
            or self._killed
            or self._kill_deadline is None
            or time.monotonic() < self._kill_deadline
        ):
            return
        logger.warning("Session %s ignored SIGTERM, killing it", self.request.name)
        self._killed = True
        self._process.kill()

    def _close_logs(self) -> None:
        for handle in (self._stdout_handle, self._stderr_handle):
            if handle is not None and not handle.closed:
                handle.close()


def build_run_args(
    *,
    command_template: str,
    session: str,
    artifact: Path,
    output_dir: Path,
    numa_node: int | None = None,
) -> list[str]:
    """Render the command template of a session into an argument vector."""

    stripped = command_template.strip()
    if not stripped:
        raise JobStartError(f"Session {session} has no command")
    try:
        rendered = stripped.format(
            python=shlex.quote(sys.executable),
            session=shlex.quote(session),
            artifact=shlex.quote(str(artifact)),
            output_dir=shlex.quote(str(output_dir)),
        )
    except (KeyError, IndexError) as error:
        raise JobStartError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise JobStartError(f"Session {session} command rendered empty")
    return _numactl_prefix(numa_node) + argv


def _numactl_prefix(numa_node: int | None) -> list[str]:
    if numa_node is None:
        return []
    numactl = shutil.which("numactl")
    if numactl is None:
        logger.debug("numactl not available; running without NUMA binding")
        return []
    return [numactl, f"--cpunodebind={numa_node}", f"--membind={numa_node}"]


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        return []
    return path.read_text("utf-8", errors="replace").splitlines()

