"""Domain models for supervised toolchain jobs."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ue_devtools.jobs.failure_classifier import ClassifiedError
    from ue_devtools.jobs.log_sink import LogSink


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class JobKind(str, Enum):
    """Toolchain actions a caller can request."""

    BUILD = "build"
    COOK = "cook"
    PACKAGE = "package"
    GENERATE_PROJECT_FILES = "generate_project_files"
    OPEN_EDITOR = "open_editor"
    CUSTOM = "custom"


class JobState(str, Enum):
    """Job lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    RUNNING_FALLBACK = "running_fallback"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED},
)


class OutputStream(str, Enum):
    """Origin of a captured output chunk."""

    STDOUT = "stdout"
    STDERR = "stderr"


class LogSeverity(str, Enum):
    """Severity class attached to every log entry."""

    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @classmethod
    def from_stream(cls, stream: OutputStream) -> LogSeverity:
        return cls.STDERR if stream is OutputStream.STDERR else cls.STDOUT


class FailureCause(str, Enum):
    """Normalized failure causes surfaced to the caller."""

    MISSING_INPUT = "missing-input"
    MISSING_TOOLCHAIN = "missing-toolchain"
    COMPILE_FAILURE = "compile-failure"
    CONTENT_FAILURE = "content-failure"
    INTERNAL_TOOL_EXCEPTION = "internal-tool-exception"
    LAUNCH_FAILURE = "launch-failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNSPECIFIED = "unspecified"


@dataclass(slots=True, frozen=True)
class Invocation:
    """One concrete command line with its execution context."""

    command: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    path_prepend: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def display(self) -> str:
        """Shell-quoted command line for banners and logs."""

        return shlex.join(self.argv)


@dataclass(slots=True, frozen=True)
class JobSpec:
    """A single build/cook/package invocation with its optional fallback."""

    kind: JobKind
    primary: Invocation
    fallback: Invocation | None = None
    timeout_seconds: float | None = None
    detached: bool = False
    key: str = ""
    label: str = ""

    @property
    def display_name(self) -> str:
        return self.label or self.kind.value.replace("_", " ")


@dataclass(slots=True)
class JobRequest:
    """Caller-facing request resolved into a `JobSpec` by the resolver."""

    kind: JobKind
    project: Path
    configuration: str | None = None
    platform: str | None = None
    working_directory: Path | None = None
    timeout_seconds: float | None = None
    output_dir: Path | None = None


@dataclass(slots=True, frozen=True)
class OutputChunk:
    """Decoded slice of process output tagged by stream."""

    stream: OutputStream
    text: str


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One captured line of output or one synthetic status line."""

    text: str
    severity: LogSeverity
    timestamp: datetime

    def render(self) -> str:
        return f"{self.timestamp.isoformat()} [{self.severity.value.upper()}] {self.text}"


@dataclass(slots=True, frozen=True)
class PhaseUpdate:
    """Progress event emitted when the phase or percentage moves."""

    phase: str
    percent: int
    updated_at: datetime


@dataclass(slots=True)
class PhaseState:
    """Best-effort progress view of the running job."""

    phase: str = ""
    percent: int = 0
    updated_at: datetime | None = None


@dataclass(slots=True)
class JobResult:
    """Terminal outcome returned to the caller."""

    success: bool
    state: JobState
    exit_code: int | None
    error: ClassifiedError | None
    log: LogSink
    attempts: int
    used_fallback: bool
    elapsed_seconds: float
    message: str

    @property
    def cause(self) -> FailureCause | None:
        return self.error.cause if self.error is not None else None
