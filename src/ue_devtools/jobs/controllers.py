"""Controllers for toolchain job CLI commands."""

from __future__ import annotations

import shlex
import signal
from collections.abc import Callable, Iterator
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ue_devtools.config import Settings
from ue_devtools.jobs.clean import clean_build_folders
from ue_devtools.jobs.doctor import check_toolchain
from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import (
    Invocation,
    JobKind,
    JobRequest,
    JobResult,
    JobSpec,
    JobState,
    LogEntry,
    LogSeverity,
    PhaseUpdate,
)
from ue_devtools.jobs.resolver import (
    EngineLayout,
    UnrealProject,
    resolve_engine_root,
    resolve_job,
)
from ue_devtools.jobs.supervisor import JobHandle, JobSupervisor

Emit = Callable[[str, LogSeverity], None]

_RESULT_POLL_SECONDS = 0.2


@dataclass(slots=True)
class ToolJobCommand:
    """CLI input for an engine toolchain job."""

    kind: JobKind
    project: Path
    engine_path: Path | None
    configuration: str | None
    platform: str | None
    timeout_seconds: float | None
    log_file: Path | None
    save_log: bool
    output_dir: Path | None = None


@dataclass(slots=True)
class CustomRunCommand:
    """CLI input for supervising an arbitrary command."""

    argv: tuple[str, ...]
    fallback: str | None
    cwd: Path | None
    timeout_seconds: float | None
    log_file: Path | None
    save_log: bool


@dataclass(slots=True)
class DoctorCommand:
    """CLI input for toolchain availability check."""

    engine_path: Path | None


@dataclass(slots=True)
class CleanCommand:
    """CLI input for deleting generated project folders."""

    project: Path
    log_file: Path | None
    save_log: bool


@dataclass(slots=True)
class JobCommandResult:
    """Summary to render in CLI once a command finished."""

    lines: list[str]
    success: bool
    log_path: Path | None = None
    cancelled: bool = False


class JobsCliController:
    """Coordinates job resolution, supervision and log export for the CLI."""

    def run_tool_job(self, command: ToolJobCommand, *, emit: Emit) -> JobCommandResult:
        settings = Settings.from_env(engine_path=command.engine_path)
        settings.validate()
        spec = resolve_job(
            JobRequest(
                kind=command.kind,
                project=command.project,
                configuration=command.configuration,
                platform=command.platform,
                timeout_seconds=command.timeout_seconds,
                output_dir=command.output_dir,
            ),
            settings,
        )
        return self._supervise(
            spec,
            settings=settings,
            emit=emit,
            log_file=command.log_file,
            save_log=command.save_log,
        )

    def run_custom(self, command: CustomRunCommand, *, emit: Emit) -> JobCommandResult:
        if not command.argv:
            raise ValueError("A command to run is required.")
        settings = Settings.from_env()
        settings.validate()
        fallback: Invocation | None = None
        if command.fallback:
            fallback_argv = shlex.split(command.fallback)
            if not fallback_argv:
                raise ValueError("Fallback command rendered empty.")
            fallback = Invocation(
                command=fallback_argv[0],
                args=tuple(fallback_argv[1:]),
                cwd=command.cwd,
            )
        timeout = command.timeout_seconds
        if timeout is None:
            timeout = settings.jobs.timeout_seconds
        spec = JobSpec(
            kind=JobKind.CUSTOM,
            primary=Invocation(
                command=command.argv[0],
                args=tuple(command.argv[1:]),
                cwd=command.cwd,
            ),
            fallback=fallback,
            timeout_seconds=timeout if timeout and timeout > 0 else None,
            key=shlex.join(command.argv),
            label=Path(command.argv[0]).name,
        )
        return self._supervise(
            spec,
            settings=settings,
            emit=emit,
            log_file=command.log_file,
            save_log=command.save_log,
        )

    def doctor(self, command: DoctorCommand) -> JobCommandResult:
        settings = Settings.from_env(engine_path=command.engine_path)
        layout = EngineLayout(resolve_engine_root(settings))
        results = check_toolchain(layout)
        lines = [f"Engine: {layout.root}"]
        for result in results:
            status = "ok" if result.available and result.executable else "missing"
            line = f"  {result.tool:<22} {status:<8} {result.path}"
            if result.error is not None and result.available:
                line += f" ({result.error})"
            lines.append(line)
        success = all(result.available and result.executable for result in results)
        return JobCommandResult(lines=lines, success=success)

    def clean(self, command: CleanCommand, *, emit: Emit) -> JobCommandResult:
        settings = Settings.from_env()
        settings.validate()
        project = UnrealProject.from_path(command.project)
        log = LogSink(capacity=settings.jobs.log_capacity)
        log.subscribe(lambda entry: emit(format_log_entry(entry), entry.severity))

        outcome = clean_build_folders(project, log)

        log_path = _persist_log(
            log,
            settings=settings,
            log_file=command.log_file,
            save_log=command.save_log or not outcome.success,
        )
        if outcome.removed:
            lines = [f"Removed {', '.join(outcome.removed)} from {project.root}"]
        else:
            lines = [f"No build folders to remove in {project.root}"]
        if outcome.failed:
            lines.append(f"Could not remove: {', '.join(outcome.failed)}")
        if log_path is not None:
            lines.append(f"Full log: {log_path}")
        return JobCommandResult(lines=lines, success=outcome.success, log_path=log_path)

    def _supervise(
        self,
        spec: JobSpec,
        *,
        settings: Settings,
        emit: Emit,
        log_file: Path | None,
        save_log: bool,
    ) -> JobCommandResult:
        supervisor = JobSupervisor.from_settings(settings)

        def _on_log(entry: LogEntry) -> None:
            emit(format_log_entry(entry), entry.severity)

        def _on_progress(update: PhaseUpdate) -> None:
            emit(format_phase_update(update), LogSeverity.INFO)

        handle = supervisor.start(spec, on_log=_on_log, on_progress=_on_progress)
        with _cancel_on_signal(handle):
            result = _wait_for_result(handle)

        cancelled = result.state is JobState.CANCELLED
        log_path = _persist_log(
            result.log,
            settings=settings,
            log_file=log_file,
            save_log=save_log or not (result.success or cancelled),
        )
        return JobCommandResult(
            lines=render_result_lines(result, log_path=log_path),
            success=result.success,
            log_path=log_path,
            cancelled=cancelled,
        )


def _persist_log(
    log: LogSink,
    *,
    settings: Settings,
    log_file: Path | None,
    save_log: bool,
) -> Path | None:
    if log_file is not None:
        return log.persist_to_file(log_file)
    if save_log or settings.jobs.save_logs:
        return log.persist_to_file(settings.jobs.log_dir)
    return None


def format_log_entry(entry: LogEntry) -> str:
    return f"[{entry.timestamp.astimezone().strftime('%H:%M:%S')}] {entry.text}"


def format_phase_update(update: PhaseUpdate) -> str:
    return f"==> {update.phase} ({update.percent}%)"


def render_result_lines(result: JobResult, *, log_path: Path | None) -> list[str]:
    lines = [result.message]
    if result.used_fallback:
        lines.append(f"Attempts: {result.attempts} (fallback used)")
    if result.error is not None and result.state is not JobState.CANCELLED:
        lines.append(f"Cause: {result.error.cause.value}")
        if result.error.summary not in result.message:
            lines.append(result.error.summary)
    if log_path is not None:
        lines.append(f"Full log: {log_path}")
    return lines


def _wait_for_result(handle: JobHandle) -> JobResult:
    # Short waits keep the main thread responsive to SIGINT.
    while True:
        try:
            return handle.result(timeout=_RESULT_POLL_SECONDS)
        except FutureTimeoutError:
            if handle.done():
                raise


@contextmanager
def _cancel_on_signal(handle: JobHandle) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        handle.cancel()

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
