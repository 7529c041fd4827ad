"""Build process: one cooperative worker loop over the shared build state."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TypeVar

from sqlmodel import Session

from session_build.process.context import BuildContext
from session_build.process.database import BuildDatabase, BuildProcessError
from session_build.process.job import BuildJob, JobRequest, JobStartError
from session_build.process.models import (
    Build,
    Job,
    JobHandle,
    NodeInfo,
    ProcessResult,
    ProgressKind,
    ProgressMessage,
    ReturnCode,
    Snapshot,
)
from session_build.process.progress import Progress
from session_build.process.state import BuildState
from session_build.process.store import BuildInfo, SessionStore
from session_build.shasum import Shasum, bootstrap_shasum
from session_build.storage.common import utc_now

logger = logging.getLogger(__name__)

R = TypeVar("R")

JobFactory = Callable[[JobRequest, SessionStore], JobHandle]

_SYNC_PROGRESS = object()


class BuildProcess:
    """Runs sessions of one build together with other workers of the same build.

    All access to the shared state goes through ``synchronized_database``: under the store
    lock the local state is pulled, the body applies its change and the difference is pushed
    back. Calls nest; an inner call reuses the transaction of the outer one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        context: BuildContext,
        database: BuildDatabase,
        store: SessionStore,
        progress: Progress,
        worker_id: str | None = None,
        job_factory: JobFactory = BuildJob.start,
        process_start: datetime | None = None,
    ) -> None:
        self.context = context
        self.database = database
        self.store = store
        self.progress = progress
        self.worker_id = worker_id or str(uuid.uuid4())
        self.job_factory = job_factory
        self.process_start = process_start or utc_now()
        self._lock = threading.RLock()
        self._session: Session | None = None
        self._state = BuildState()
        self._replay: dict[int, ProgressMessage] = {}
        self._replay_stopped = False

    @property
    def build_id(self) -> str:
        return self.context.build_id

    @property
    def state(self) -> BuildState:
        return self._state

    # synchronization

    def synchronized_database(self, body: Callable[[], R], *, label: str = "") -> R:
        """Run ``body`` within one pull-apply-push cycle under the store lock."""

        with self._lock:
            if self._session is not None:
                return body()

            while True:
                saved = self._state

                def _cycle(session: Session, saved: BuildState = saved) -> R | object:
                    self._state = saved
                    return self._locked_cycle(session, body)

                try:
                    outcome = self.database.run_locked(_cycle, label=label)
                except BaseException:
                    self._state = saved
                    raise
                finally:
                    self._session = None

                if outcome is _SYNC_PROGRESS:
                    self._replay_progress()
                    continue
                return outcome  # type: ignore[return-value]

    def _locked_cycle(self, session: Session, body: Callable[[], R]) -> R | object:
        self._session = session
        messages, stopped, changed = self.database.sync_progress(
            session,
            self.build_id,
            seen=self._state.progress_seen,
            stopped=self.progress.stopped,
        )
        if changed:
            self._replay = messages
            self._replay_stopped = stopped
            return _SYNC_PROGRESS

        old_state = self.database.pull_database(
            session,
            self._state,
            build_id=self.build_id,
            worker_id=self.worker_id,
            hostname=self.context.hostname,
        )
        self._state = old_state
        result = body()
        self._state = self.database.update_database(
            session,
            old_state,
            self._state,
            build_id=self.build_id,
            worker_id=self.worker_id,
            hostname=self.context.hostname,
        )
        return result

    def _replay_progress(self) -> None:
        messages, self._replay = self._replay, {}
        if self._replay_stopped and not self.progress.stopped:
            logger.info("Build %s stopped by another worker", self.build_id)
            self.progress.stop()
        for message in messages.values():
            self.progress.output(message)
        if messages:
            self._state = self._state.progress_serial(max(messages))

    def progress_output(self, message: ProgressMessage) -> None:
        """Record a progress message for all workers and print it locally."""

        def _body() -> None:
            self._state = self._state.inc_serial().progress_serial()
            session = self._require_session()
            self.database.write_progress(session, self.build_id, self._state.serial, message)
            self.database.stamp_worker(session, self.worker_id, serial=self._state.serial)
            self.progress.output(message)

        self.synchronized_database(_body, label="progress_output")

    def echo(self, text: str, *, verbose: bool = False) -> None:
        self.progress_output(ProgressMessage(kind=ProgressKind.WRITELN, text=text, verbose=verbose))

    def echo_warning(self, text: str) -> None:
        self.progress_output(ProgressMessage(kind=ProgressKind.WARNING, text=text))

    def echo_error(self, text: str) -> None:
        self.progress_output(ProgressMessage(kind=ProgressKind.ERROR_MESSAGE, text=text))

    def _require_session(self) -> Session:
        if self._session is None:
            raise BuildProcessError("No open build store transaction")
        return self._session

    # lifecycle

    def start_build(self) -> None:
        """Register the build and this worker, then queue all sessions."""

        def _register(session: Session) -> None:
            self.database.clean_build(session)
            self.database.start_build(
                session,
                Build(
                    build_id=self.build_id,
                    platform=self.context.platform,
                    options=self.context.options_snapshot(),
                    start=utc_now(),
                    stop=None,
                    progress_stopped=False,
                ),
            )
            self._register_worker(session)

        self.database.run_locked(_register, label="start_build")
        logger.info("Started build %s as worker %s", self.build_id, self.worker_id)
        self.synchronized_database(self.init_state, label="init_state")

    def init_state(self) -> None:
        """Queue every session of the build that is not known yet."""

        sessions = self.context.session_contexts()
        known = set(self._state.sessions) | set(self._state.results)
        known.update(task.name for task in self._state.pending)
        self._state = self._state.add_sessions(sessions).add_pending(
            [task for task in self.context.initial_tasks() if task.name not in known],
        )

    def start_worker(self) -> None:
        """Join an existing build that has not been stopped yet."""

        self.database.run_locked(self._register_worker, label="start_worker")
        logger.info("Worker %s joined build %s", self.worker_id, self.build_id)

    def _register_worker(self, session: Session) -> None:
        self.database.start_worker(
            session,
            worker_id=self.worker_id,
            build_id=self.build_id,
            hostname=self.context.hostname,
            pid=os.getpid(),
            process_start=self.process_start,
            serial=self._state.serial,
        )

    def stop_worker(self) -> None:
        def _body() -> None:
            self.database.stamp_worker(
                self._require_session(),
                self.worker_id,
                serial=self._state.serial,
                stop=True,
            )

        self.synchronized_database(_body, label="stop_worker")
        logger.info("Worker %s stopped", self.worker_id)

    def stop_build(self) -> None:
        self.synchronized_database(
            lambda: self.database.stop_build(self._require_session(), self.build_id),
            label="stop_build",
        )
        logger.info("Stopped build %s", self.build_id)

    # sessions

    def input_shasum(self, state: BuildState, name: str) -> Shasum:
        ancestors = state.sessions[name].ancestors
        if not ancestors:
            return bootstrap_shasum(self.context.platform)
        return Shasum.combine(state.results[ancestor].output_shasum for ancestor in ancestors)

    def start_session(self, name: str) -> None:
        """Decide what to do with a ready session: reuse, skip, cancel or start a job."""

        session = self._require_session()
        context = self._state.sessions[name]
        ancestor_results = [self._state.results[ancestor] for ancestor in context.ancestors]
        input_shasum = self.input_shasum(self._state, name)
        store_artifact = self.context.store_artifact(name)
        settings = self.context.settings.build

        current, output_shasum = self.store.check_output(
            session,
            name,
            sources_shasum=context.sources_shasum,
            input_shasum=input_shasum,
            fresh_build=settings.fresh_build,
            store_artifact=store_artifact,
            build_thorough=settings.build_thorough,
        )
        finished = current and all(result.current for result in ancestor_results)
        cancelled = self.progress.stopped or not all(result.ok for result in ancestor_results)

        if finished:
            self._finish_session(name, ProcessResult(rc=ReturnCode.OK), output_shasum, current=True)
        elif settings.no_build:
            self.echo(f"Skipping {name} ...", verbose=True)
            self._finish_session(name, ProcessResult(rc=ReturnCode.ERROR), output_shasum)
        elif cancelled:
            self.echo(f"{name} CANCELLED")
            self._finish_session(name, ProcessResult(rc=ReturnCode.UNDEFINED), output_shasum)
        else:
            self._spawn_session(name, input_shasum=input_shasum, store_artifact=store_artifact)

    def _spawn_session(self, name: str, *, input_shasum: Shasum, store_artifact: bool) -> None:
        numa_node, state = self._state.next_numa_node(
            self.context.numa_nodes,
            hostname=self.context.hostname,
        )
        self._state = state
        node_info = NodeInfo(hostname=self.context.hostname, numa_node=numa_node)
        placement = "" if numa_node is None else f" on {node_info}"
        self.echo(f"{'Building' if store_artifact else 'Running'} {name}{placement} ...")

        self.store.init_output(self._require_session(), name)
        command = self.context.graph[name].command if name in self.context.graph else ""
        request = JobRequest(
            name=name,
            command_template=command,
            input_shasum=input_shasum,
            sources_shasum=self._state.sessions[name].sources_shasum,
            store_artifact=store_artifact,
            timeout_seconds=self._state.sessions[name].timeout_seconds,
            numa_node=numa_node,
            build_id=self.build_id,
        )
        try:
            handle = self.job_factory(request, self.store)
        except JobStartError as error:
            self.echo_error(str(error))
            self._finish_session(
                name,
                ProcessResult(rc=ReturnCode.ERROR, err_lines=(str(error),)),
                Shasum(),
                node_info=node_info,
            )
            return

        self._state = self._state.add_running(
            Job(
                name=name,
                worker_id=self.worker_id,
                build_id=self.build_id,
                node_info=node_info,
                handle=handle,
            ),
        )

    def _finish_session(
        self,
        name: str,
        process_result: ProcessResult,
        output_shasum: Shasum,
        *,
        node_info: NodeInfo | None = None,
        current: bool = False,
    ) -> None:
        self._state = (
            self._state.remove_pending(name)
            .remove_running(name)
            .make_result(
                name=name,
                worker_id=self.worker_id,
                build_id=self.build_id,
                process_result=process_result,
                output_shasum=output_shasum,
                node_info=node_info or NodeInfo(hostname=self.context.hostname),
                current=current,
            )
        )

    def finish_job(self, job: Job) -> None:
        """Collect a terminated local job and record its result and build info."""

        if job.handle is None:
            raise BuildProcessError(f"Job {job.name} is not running on this worker")
        process_result, output_shasum = job.handle.join()
        context = self._state.sessions[job.name]
        self.store.write_build(
            self._require_session(),
            job.name,
            BuildInfo(
                sources=context.sources_shasum,
                input_shasum=self.input_shasum(self._state, job.name),
                output_shasum=output_shasum,
                return_code=process_result.rc,
                build_id=self.build_id,
                elapsed_ms=process_result.timing.elapsed_ms,
                command_timings=self.store.read_command_timings(job.name),
            ),
        )

        if process_result.ok:
            timing = process_result.timing
            self.echo(
                f"Finished {job.name} ({timing.elapsed_ms / 1000:.1f}s elapsed time, "
                f"{timing.cpu_ms / 1000:.1f}s cpu time)",
            )
        elif process_result.interrupted:
            self.echo(f"{job.name} CANCELLED")
        else:
            self.echo_error(f"{job.name} FAILED (see also {self.store.log_path(job.name, 'err')})")
            for line in process_result.err_lines[-20:]:
                self.echo(line, verbose=True)

        self._finish_session(job.name, process_result, output_shasum, node_info=job.node_info)

    def next_jobs(self) -> list[str]:
        """Sessions to start now; when stopped every ready session, so it can be cancelled."""

        if self.progress.stopped:
            return [task.name for task in self._state.ready()]
        name = self.context.scheduler.next_job(
            self._state,
            worker_id=self.worker_id,
            stopped=False,
        )
        return [] if name is None else [name]

    def main_cycle(self) -> bool:
        """One loop iteration; report whether anything changed locally."""

        progressed = False
        if self.progress.stopped:
            self._state.stop_running()

        for job in self._state.finished_running():
            self.finish_job(job)
            progressed = True

        while names := self.next_jobs():
            for name in names:
                self.start_session(name)
            progressed = True
        return progressed

    # main loop

    def finished(self) -> bool:
        return self.synchronized_database(lambda: self._state.finished, label="finished")

    def run(self) -> dict[str, ProcessResult]:
        """Run until the build has a result for every session."""

        if self.context.master:
            self.start_build()
        else:
            self.start_worker()

        with self._signal_handlers():
            try:
                if self.finished():
                    self.echo_warning("Nothing to build")
                elif self.context.max_jobs == 0:
                    self.echo("Waiting for external workers ...")

                while not self.finished():
                    progressed = self.synchronized_database(self.main_cycle, label="main")
                    if not progressed:
                        self._sleep_with_stop(self.context.settings.build.poll_interval_seconds)
            finally:
                self._stop_local_jobs()
                self.stop_worker()
                if self.context.master:
                    self.stop_build()

        return self.synchronized_database(
            lambda: {name: result.process_result for name, result in self._state.results.items()},
            label="results",
        )

    def snapshot(self) -> Snapshot:
        return self.database.run_locked(
            lambda session: self.database.read_snapshot(session, self.build_id),
            label="snapshot",
        )

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if signal_name is not None:
            logger.warning("Received %s, stopping build %s", signal_name, self.build_id)
        self.progress.stop()

    def _stop_local_jobs(self) -> None:
        for job in self._state.running.values():
            if job.handle is not None and not job.handle.is_finished():
                job.handle.cancel()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.progress.stopped and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
