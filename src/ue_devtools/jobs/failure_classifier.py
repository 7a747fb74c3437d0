"""Deterministic heuristic classification of failed toolchain runs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import FailureCause

ERROR_CLASSIFIER_VERSION = 1


@dataclass(slots=True, frozen=True)
class ClassifiedError:
    """Failure diagnosis produced once per failed job."""

    exit_code: int | None
    cause: FailureCause
    summary: str
    matched_rule: str
    matched_pattern: str | None = None
    offers_full_log: bool = False
    log: LogSink | None = field(default=None, compare=False, repr=False)

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and reports."""
        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "exit_code": self.exit_code,
            "cause": self.cause.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True, frozen=True)
class ClassifierRule:
    """Ordered rule: any pattern found in the output selects `cause`."""

    cause: FailureCause
    patterns: tuple[str, ...]
    summary: str

    @property
    def name(self) -> str:
        return self.cause.value.replace("-", "_")

    def first_match(self, haystack: str) -> str | None:
        for pattern in self.patterns:
            if pattern in haystack:
                return pattern
        return None


_MISSING_INPUT_PATTERNS: tuple[str, ...] = (
    "could not find project",
    "couldn't find project",
    "unable to find project",
    "project file not found",
    "uproject does not exist",
    "no project file specified",
    "couldn't find target rules",
    "could not find target",
    "no target name was specified",
    "could not find a part of the path",
)
_MISSING_TOOLCHAIN_PATTERNS: tuple[str, ...] = (
    "no valid visual c++ toolchain",
    "visual studio 2022 must be installed",
    "could not find a valid installation of visual studio",
    "unable to find valid sdk",
    "windows sdk not found",
    "platform sdk not found",
    "could not find netfxsdk",
    "msbuild was not found",
    "the sdk 'microsoft.net.sdk' specified could not be found",
    "dotnet sdk not found",
    "unable to find installation of clang",
    "toolchain not found",
)
_COMPILE_FAILURE_PATTERNS: tuple[str, ...] = (
    "error c1",
    "error c2",
    "error c3",
    "error c4",
    "error lnk",
    ": fatal error:",
    "unresolved external symbol",
    "othercompilationerror",
    "compilationresultexception",
    "unable to build while live coding is active",
)
_CONTENT_FAILURE_PATTERNS: tuple[str, ...] = (
    "logcook: error",
    "cook failed",
    "failed to cook",
    "cookresults",
    "logsavepackage: error",
    "logassetregistry: error",
    "unrealpak failed",
    "failed to stage",
    "logblueprint: error",
)
_INTERNAL_TOOL_EXCEPTION_PATTERNS: tuple[str, ...] = (
    "automationexception",
    "unhandled exception",
    "nullreferenceexception",
    "system.exception",
    "assertion failed",
    "stack trace:",
    "crashed",
)
_LAUNCH_FAILURE_PATTERNS: tuple[str, ...] = (
    "enoent",
    "is not recognized as an internal or external command",
    "the system cannot find the file specified",
    "no such file or directory",
    "command not found",
    "cannot execute binary file",
    "permission denied",
)

DEFAULT_CLASSIFIER_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule(
        FailureCause.MISSING_INPUT,
        _MISSING_INPUT_PATTERNS,
        "The target project or descriptor file could not be found. Check the project path.",
    ),
    ClassifierRule(
        FailureCause.MISSING_TOOLCHAIN,
        _MISSING_TOOLCHAIN_PATTERNS,
        "A required compiler or SDK component is missing. Install the platform toolchain.",
    ),
    ClassifierRule(
        FailureCause.COMPILE_FAILURE,
        _COMPILE_FAILURE_PATTERNS,
        "Compilation failed. Fix the reported compiler errors and build again.",
    ),
    ClassifierRule(
        FailureCause.CONTENT_FAILURE,
        _CONTENT_FAILURE_PATTERNS,
        "Content cooking failed. Check the reported assets.",
    ),
    ClassifierRule(
        FailureCause.INTERNAL_TOOL_EXCEPTION,
        _INTERNAL_TOOL_EXCEPTION_PATTERNS,
        "The automation tool crashed internally. See the full log for details.",
    ),
    ClassifierRule(
        FailureCause.LAUNCH_FAILURE,
        _LAUNCH_FAILURE_PATTERNS,
        "The tool executable could not be started. Check the engine path.",
    ),
)

_UNSPECIFIED_SUMMARY = "The tool failed for an unrecognized reason. See the full log for details."
_FULL_LOG_CAUSES = frozenset({FailureCause.INTERNAL_TOOL_EXCEPTION, FailureCause.UNSPECIFIED})


class ErrorClassifier:
    """Map raw exit codes and captured output to an actionable `ClassifiedError`.

    Precision is not guaranteed; the unspecified fallback is always reachable.
    """

    def __init__(self, rules: Sequence[ClassifierRule] = DEFAULT_CLASSIFIER_RULES) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[ClassifierRule, ...]:
        return self._rules

    def classify(
        self,
        exit_code: int | None,
        combined_output: str,
        *,
        log: LogSink | None = None,
    ) -> ClassifiedError:
        haystack = combined_output.lower()
        for rule in self._rules:
            pattern = rule.first_match(haystack)
            if pattern is not None:
                return ClassifiedError(
                    exit_code=exit_code,
                    cause=rule.cause,
                    summary=rule.summary,
                    matched_rule=rule.name,
                    matched_pattern=pattern,
                    offers_full_log=rule.cause in _FULL_LOG_CAUSES,
                    log=log,
                )
        return ClassifiedError(
            exit_code=exit_code,
            cause=FailureCause.UNSPECIFIED,
            summary=_exit_code_summary(exit_code),
            matched_rule="fallback_unspecified",
            offers_full_log=True,
            log=log,
        )

    def launch_failure(self, error: BaseException, *, log: LogSink | None = None) -> ClassifiedError:
        return ClassifiedError(
            exit_code=None,
            cause=FailureCause.LAUNCH_FAILURE,
            summary=f"The tool executable could not be started: {error}",
            matched_rule="launch_error",
            log=log,
        )

    def timed_out(
        self,
        timeout_seconds: float | None,
        *,
        exit_code: int | None = None,
        log: LogSink | None = None,
    ) -> ClassifiedError:
        limit = f" after {timeout_seconds:g}s" if timeout_seconds is not None else ""
        return ClassifiedError(
            exit_code=exit_code,
            cause=FailureCause.TIMEOUT,
            summary=f"The tool did not finish{limit} and was terminated.",
            matched_rule="timeout",
            log=log,
        )

    def cancelled(self, *, exit_code: int | None = None, log: LogSink | None = None) -> ClassifiedError:
        return ClassifiedError(
            exit_code=exit_code,
            cause=FailureCause.CANCELLED,
            summary="Cancelled by user.",
            matched_rule="cancelled",
            log=log,
        )


def _exit_code_summary(exit_code: int | None) -> str:
    if exit_code is None:
        return _UNSPECIFIED_SUMMARY
    return f"The tool exited with code {exit_code}. See the full log for details."
