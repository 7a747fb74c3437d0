"""Toolchain job supervision: process runner, log sink, progress, classification."""

from ue_devtools.jobs.clean import BUILD_FOLDERS, CleanResult, clean_build_folders
from ue_devtools.jobs.failure_classifier import ClassifiedError, ErrorClassifier
from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import (
    FailureCause,
    Invocation,
    JobKind,
    JobResult,
    JobSpec,
    JobState,
    LogEntry,
    LogSeverity,
    PhaseState,
    PhaseUpdate,
)
from ue_devtools.jobs.progress import PhaseProgressTracker
from ue_devtools.jobs.runner import LaunchError, ProcessRunner, RunOptions, RunTimeoutError
from ue_devtools.jobs.supervisor import JobAlreadyRunningError, JobHandle, JobSupervisor

__all__ = [
    "BUILD_FOLDERS",
    "ClassifiedError",
    "CleanResult",
    "ErrorClassifier",
    "FailureCause",
    "Invocation",
    "JobAlreadyRunningError",
    "JobHandle",
    "JobKind",
    "JobResult",
    "JobSpec",
    "JobState",
    "JobSupervisor",
    "LaunchError",
    "LogEntry",
    "LogSeverity",
    "LogSink",
    "PhaseProgressTracker",
    "PhaseState",
    "PhaseUpdate",
    "ProcessRunner",
    "RunOptions",
    "RunTimeoutError",
    "clean_build_folders",
]
