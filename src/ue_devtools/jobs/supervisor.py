"""Job lifecycle orchestration: run, observe, classify, fall back."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, TypeVar
from uuid import uuid4

from ue_devtools.jobs.failure_classifier import ClassifiedError, ErrorClassifier
from ue_devtools.jobs.lines import LineAssembler
from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import (
    Invocation,
    JobResult,
    JobSpec,
    JobState,
    LogEntry,
    LogSeverity,
    OutputChunk,
    OutputStream,
    PhaseState,
    PhaseUpdate,
)
from ue_devtools.jobs.progress import PhaseProgressTracker
from ue_devtools.jobs.runner import (
    LaunchError,
    ProcessRunner,
    RunHandle,
    RunOptions,
    RunTimeoutError,
)

if TYPE_CHECKING:
    from ue_devtools.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_TAIL_LINES = 20_000

LogListener = Callable[[LogEntry], None]
ProgressListener = Callable[[PhaseUpdate], None]
StateListener = Callable[[JobState], None]

_T = TypeVar("_T")


class JobAlreadyRunningError(RuntimeError):
    """A supervisor drives at most one job at a time."""


class _AttemptStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LAUNCH_FAILED = "launch_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class _Attempt:
    status: _AttemptStatus
    exit_code: int | None
    output: str
    detached: bool = False
    pid: int | None = None
    launch_error: LaunchError | None = None

    @property
    def failed(self) -> bool:
        return self.status in (_AttemptStatus.FAILED, _AttemptStatus.LAUNCH_FAILED)


class _OutputCapture:
    """Bounded tail of combined output kept for failure classification."""

    def __init__(self, max_lines: int) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)

    def add(self, line: str) -> None:
        self._lines.append(line)

    def text(self) -> str:
        return "\n".join(self._lines)


class JobHandle:
    """Caller-side view of a running job: events, cancellation, result."""

    def __init__(self, *, job_id: str, spec: JobSpec, log: LogSink) -> None:
        self.job_id = job_id
        self.spec = spec
        self.log = log
        self._lock = threading.Lock()
        self._state = JobState.IDLE
        self._phase = PhaseState()
        self._cancel_requested = False
        self._run_handle: RunHandle | None = None
        self._future: Future[JobResult] = Future()
        self._log_listeners: list[LogListener] = []
        self._progress_listeners: list[ProgressListener] = []
        self._state_listeners: list[StateListener] = []

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._state

    @property
    def phase(self) -> PhaseState:
        with self._lock:
            return PhaseState(
                phase=self._phase.phase,
                percent=self._phase.percent,
                updated_at=self._phase.updated_at,
            )

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel_requested

    @property
    def future(self) -> Future[JobResult]:
        return self._future

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> JobResult:
        """Block until the job reaches a terminal state."""

        return self._future.result(timeout=timeout)

    def add_log_listener(self, listener: LogListener) -> Callable[[], None]:
        return self._add_listener(self._log_listeners, listener)

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        return self._add_listener(self._progress_listeners, listener)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        return self._add_listener(self._state_listeners, listener)

    def cancel(self) -> bool:
        """Request cancellation; returns False if already requested or finished."""

        with self._lock:
            if self._cancel_requested or self._state.is_terminal:
                return False
            self._cancel_requested = True
            run_handle = self._run_handle
        logger.info("Job %s cancellation requested", self.job_id)
        if run_handle is not None:
            run_handle.cancel()
        return True

    def _add_listener(self, listeners: list[_T], listener: _T) -> Callable[[], None]:
        with self._lock:
            listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in listeners:
                    listeners.remove(listener)

        return _remove

    def _attach(self, run_handle: RunHandle) -> None:
        with self._lock:
            self._run_handle = run_handle
            cancel_now = self._cancel_requested
        if cancel_now:
            run_handle.cancel()

    def _detach(self) -> None:
        with self._lock:
            self._run_handle = None

    def _set_state(self, state: JobState) -> None:
        with self._lock:
            if self._state is state:
                return
            self._state = state
            listeners = list(self._state_listeners)
        _notify(listeners, state)

    def _set_phase(self, update: PhaseUpdate) -> None:
        with self._lock:
            self._phase = PhaseState(
                phase=update.phase,
                percent=update.percent,
                updated_at=update.updated_at,
            )
            listeners = list(self._progress_listeners)
        _notify(listeners, update)

    def _reset_phase(self) -> None:
        with self._lock:
            self._phase = PhaseState()

    def _publish_log(self, entries: Iterable[LogEntry]) -> None:
        with self._lock:
            listeners = list(self._log_listeners)
        for entry in entries:
            _notify(listeners, entry)

    def _finish(self, result: JobResult) -> None:
        self._set_state(result.state)
        self._future.set_result(result)


class JobSupervisor:
    """Drive toolchain jobs through `Idle -> Running -> terminal`.

    Output of every attempt is split into lines and fed to the shared
    `LogSink` and the `PhaseProgressTracker`. A failed primary attempt is
    retried once with the fallback invocation when the job declares one;
    cancellation and timeouts are never retried.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        runner: ProcessRunner | None = None,
        log: LogSink | None = None,
        tracker: PhaseProgressTracker | None = None,
        classifier: ErrorClassifier | None = None,
        graceful_shutdown_seconds: float = 10.0,
        capture_tail_lines: int = DEFAULT_CAPTURE_TAIL_LINES,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.log = log or LogSink()
        self.tracker = tracker or PhaseProgressTracker()
        self.classifier = classifier or ErrorClassifier()
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.capture_tail_lines = capture_tail_lines
        self._lock = threading.Lock()
        self._active: JobHandle | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> JobSupervisor:
        return cls(
            log=LogSink(capacity=settings.jobs.log_capacity),
            graceful_shutdown_seconds=settings.jobs.graceful_shutdown_seconds,
            capture_tail_lines=settings.jobs.capture_tail_lines,
        )

    @property
    def active_job(self) -> JobHandle | None:
        with self._lock:
            return self._active

    def start(
        self,
        spec: JobSpec,
        *,
        on_log: LogListener | None = None,
        on_progress: ProgressListener | None = None,
        on_state: StateListener | None = None,
    ) -> JobHandle:
        """Start `spec` on a background thread and return its handle immediately.

        Listeners passed here are registered before the job starts, so they
        also see the start banner and the `running` transition.
        """

        with self._lock:
            if self._active is not None:
                raise JobAlreadyRunningError(
                    f"Job {self._active.job_id} ({self._active.spec.display_name}) "
                    "is still running.",
                )
            handle = JobHandle(job_id=uuid4().hex[:12], spec=spec, log=self.log)
            self._active = handle
        if on_log is not None:
            handle.add_log_listener(on_log)
        if on_progress is not None:
            handle.add_progress_listener(on_progress)
        if on_state is not None:
            handle.add_state_listener(on_state)
        threading.Thread(
            target=self._drive,
            args=(handle,),
            daemon=True,
            name=f"job-{handle.job_id}",
        ).start()
        return handle

    def run(
        self,
        spec: JobSpec,
        timeout: float | None = None,
        *,
        on_log: LogListener | None = None,
        on_progress: ProgressListener | None = None,
    ) -> JobResult:
        """Start `spec` and wait for its terminal result."""

        handle = self.start(spec, on_log=on_log, on_progress=on_progress)
        return handle.result(timeout=timeout)

    def _drive(self, handle: JobHandle) -> None:
        try:
            result = self._execute(handle)
        except BaseException as error:
            logger.exception("Job %s crashed", handle.job_id)
            self._release(handle)
            handle._set_state(JobState.FAILED)
            handle.future.set_exception(error)
            return
        self._release(handle)
        handle._finish(result)

    def _release(self, handle: JobHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None

    def _execute(self, handle: JobHandle) -> JobResult:
        spec = handle.spec
        started = time.monotonic()
        deadline = started + spec.timeout_seconds if spec.timeout_seconds else None

        self.tracker.reset()
        handle._reset_phase()
        handle._set_state(JobState.RUNNING)
        logger.info("Job %s started: %s", handle.job_id, spec.primary.display())
        self._emit(
            handle,
            f"Starting {spec.display_name}: {spec.primary.display()}",
            LogSeverity.INFO,
        )

        attempt = self._run_attempt(handle, spec.primary, deadline)
        attempts = 1
        used_fallback = False
        if attempt.failed and spec.fallback is not None and not handle.cancel_requested:
            if deadline is not None and time.monotonic() >= deadline:
                attempt = _Attempt(_AttemptStatus.TIMED_OUT, attempt.exit_code, attempt.output)
            else:
                used_fallback = True
                attempts = 2
                handle._set_state(JobState.RUNNING_FALLBACK)
                logger.warning(
                    "Job %s primary attempt failed (%s); running fallback",
                    handle.job_id,
                    _describe_attempt(attempt),
                )
                self._emit(
                    handle,
                    f"Primary command failed ({_describe_attempt(attempt)}); "
                    f"running fallback: {spec.fallback.display()}",
                    LogSeverity.WARNING,
                )
                attempt = self._run_attempt(handle, spec.fallback, deadline)

        return self._finalize(
            handle,
            attempt,
            attempts=attempts,
            used_fallback=used_fallback,
            elapsed_seconds=time.monotonic() - started,
        )

    def _run_attempt(
        self,
        handle: JobHandle,
        invocation: Invocation,
        deadline: float | None,
    ) -> _Attempt:
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        capture = _OutputCapture(self.capture_tail_lines)
        assemblers = {stream: LineAssembler() for stream in OutputStream}

        def _on_output(chunk: OutputChunk) -> None:
            lines = assemblers[chunk.stream].feed(chunk.text)
            self._consume_lines(handle, chunk.stream, lines, capture)

        options = RunOptions.from_invocation(
            invocation,
            timeout_seconds=timeout,
            detached=handle.spec.detached,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        try:
            run_handle = self.runner.run(
                invocation.command,
                invocation.args,
                options,
                on_output=_on_output,
            )
        except LaunchError as error:
            logger.warning("Job %s could not launch %s: %s", handle.job_id, invocation.command, error)
            self._emit(handle, str(error), LogSeverity.ERROR)
            return _Attempt(
                _AttemptStatus.LAUNCH_FAILED,
                exit_code=None,
                output=str(error),
                launch_error=error,
            )

        handle._attach(run_handle)
        try:
            outcome = run_handle.result()
        except RunTimeoutError as error:
            status = _AttemptStatus.TIMED_OUT
            exit_code = error.exit_code
            detached = False
        else:
            exit_code = outcome.exit_code
            detached = outcome.detached
            if outcome.cancelled:
                status = _AttemptStatus.CANCELLED
            elif exit_code == 0:
                status = _AttemptStatus.SUCCEEDED
            else:
                status = _AttemptStatus.FAILED
        finally:
            handle._detach()

        # The dispatcher has drained by now; flush unterminated trailing lines.
        for stream, assembler in assemblers.items():
            self._consume_lines(handle, stream, assembler.flush(), capture)

        return _Attempt(
            status,
            exit_code=exit_code,
            output=capture.text(),
            detached=detached,
            pid=run_handle.pid,
        )

    def _consume_lines(
        self,
        handle: JobHandle,
        stream: OutputStream,
        lines: list[str],
        capture: _OutputCapture,
    ) -> None:
        severity = LogSeverity.from_stream(stream)
        for line in lines:
            capture.add(line)
            handle._publish_log(self.log.append(line, severity))
            update = self.tracker.observe(line)
            if update is not None:
                handle._set_phase(update)

    def _finalize(
        self,
        handle: JobHandle,
        attempt: _Attempt,
        *,
        attempts: int,
        used_fallback: bool,
        elapsed_seconds: float,
    ) -> JobResult:
        spec = handle.spec
        name = spec.display_name
        error: ClassifiedError | None = None

        if attempt.status is _AttemptStatus.CANCELLED or (
            handle.cancel_requested and attempt.status is not _AttemptStatus.SUCCEEDED
        ):
            state = JobState.CANCELLED
            error = self.classifier.cancelled(exit_code=attempt.exit_code, log=self.log)
            message = f"{name} cancelled by user"
            self._emit(handle, message, LogSeverity.WARNING)
        elif attempt.status is _AttemptStatus.TIMED_OUT:
            state = JobState.TIMED_OUT
            error = self.classifier.timed_out(
                spec.timeout_seconds,
                exit_code=attempt.exit_code,
                log=self.log,
            )
            message = f"{name} timed out after {spec.timeout_seconds:g}s"
            self._emit(handle, message, LogSeverity.ERROR)
        elif attempt.status is _AttemptStatus.SUCCEEDED:
            state = JobState.COMPLETED
            if attempt.detached:
                message = f"{name} launched (pid {attempt.pid})"
            else:
                message = f"{name} completed successfully in {elapsed_seconds:.1f}s"
            self._emit(handle, message, LogSeverity.INFO)
        else:
            state = JobState.FAILED
            if attempt.launch_error is not None:
                error = self.classifier.launch_failure(attempt.launch_error, log=self.log)
            else:
                error = self.classifier.classify(attempt.exit_code, attempt.output, log=self.log)
            message = f"{name} failed: {error.summary}"
            if attempt.exit_code is not None:
                message += f" (exit code {attempt.exit_code})"
            self._emit(handle, message, LogSeverity.ERROR)

        logger.info(
            "Job %s finished: state=%s exit_code=%s cause=%s attempts=%d",
            handle.job_id,
            state.value,
            attempt.exit_code,
            error.cause.value if error is not None else None,
            attempts,
        )
        return JobResult(
            success=state is JobState.COMPLETED,
            state=state,
            exit_code=attempt.exit_code,
            error=error,
            log=self.log,
            attempts=attempts,
            used_fallback=used_fallback,
            elapsed_seconds=elapsed_seconds,
            message=message,
        )

    def _emit(self, handle: JobHandle, text: str, severity: LogSeverity) -> None:
        handle._publish_log(self.log.append(text, severity))


def _describe_attempt(attempt: _Attempt) -> str:
    if attempt.launch_error is not None:
        return "launch failed"
    return f"exit code {attempt.exit_code}"


def _notify(listeners: list[Callable[[_T], None]], payload: _T) -> None:
    for listener in listeners:
        try:
            listener(payload)
        except Exception:
            logger.exception("Job listener failed")
