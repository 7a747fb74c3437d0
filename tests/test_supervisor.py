from __future__ import annotations

import os
import threading

import allure
import pytest
from conftest import fake_tool_invocation

from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import (
    FailureCause,
    Invocation,
    JobKind,
    JobSpec,
    JobState,
    LogEntry,
    LogSeverity,
    PhaseUpdate,
)
from ue_devtools.jobs.supervisor import JobAlreadyRunningError, JobSupervisor

pytestmark = [
    allure.epic("Job Supervision"),
    allure.feature("Job Lifecycle"),
]

_posix_only = pytest.mark.skipif(os.name == "nt", reason="relies on POSIX signals")


def _spec(primary: Invocation, **kwargs) -> JobSpec:
    kwargs.setdefault("kind", JobKind.CUSTOM)
    kwargs.setdefault("label", "fake tool")
    return JobSpec(primary=primary, **kwargs)


def _wait_for_line(handle, needle: str) -> threading.Event:
    seen = threading.Event()

    def _listener(entry: LogEntry) -> None:
        if needle in entry.text:
            seen.set()

    handle.add_log_listener(_listener)
    if any(needle in entry.text for entry in handle.log.get_all()):
        seen.set()
    return seen


def test_successful_job_completes_with_banners() -> None:
    supervisor = JobSupervisor()
    states: list[JobState] = []

    handle = supervisor.start(
        _spec(fake_tool_invocation("--line", "Building 1 action", "--line", "BUILD SUCCESSFUL")),
        on_state=states.append,
    )
    result = handle.result(timeout=30)

    assert result.success
    assert result.state is JobState.COMPLETED
    assert result.exit_code == 0
    assert result.error is None
    assert result.attempts == 1
    assert not result.used_fallback
    assert states == [JobState.RUNNING, JobState.COMPLETED]
    texts = [entry.text for entry in result.log.get_all()]
    assert texts[0].startswith("Starting fake tool: ")
    assert texts[1:3] == ["Building 1 action", "BUILD SUCCESSFUL"]
    assert texts[-1].startswith("fake tool completed successfully in ")
    assert handle.phase.phase == "Finished"
    assert handle.phase.percent == 100
    assert supervisor.active_job is None


def test_failure_without_fallback_is_classified() -> None:
    states: list[JobState] = []
    handle = JobSupervisor().start(
        _spec(
            fake_tool_invocation(
                "--line",
                "Cooking /Game/Maps/Entry",
                "--stderr-line",
                "LogCook: Error: broken reference",
                "--exit-code",
                "25",
            ),
        ),
        on_state=states.append,
    )
    result = handle.result(timeout=30)

    assert not result.success
    assert result.state is JobState.FAILED
    assert result.exit_code == 25
    assert result.cause is FailureCause.CONTENT_FAILURE
    assert result.attempts == 1
    assert result.message.endswith("(exit code 25)")
    assert states == [JobState.RUNNING, JobState.FAILED]
    stderr_entries = [
        entry for entry in result.log.get_all() if entry.severity is LogSeverity.STDERR
    ]
    assert [entry.text for entry in stderr_entries] == ["LogCook: Error: broken reference"]
    assert result.log.get_all()[-1].severity is LogSeverity.ERROR


def test_fallback_runs_after_primary_launch_failure(tmp_path) -> None:
    states: list[JobState] = []
    spec = _spec(
        Invocation(command=str(tmp_path / "Engine" / "UnrealBuildTool")),
        fallback=fake_tool_invocation("--line", "Writing project files"),
    )

    handle = JobSupervisor().start(spec, on_state=states.append)
    result = handle.result(timeout=30)

    assert result.success
    assert result.state is JobState.COMPLETED
    assert result.used_fallback
    assert result.attempts == 2
    assert states == [JobState.RUNNING, JobState.RUNNING_FALLBACK, JobState.COMPLETED]
    warnings = [
        entry.text for entry in result.log.get_all() if entry.severity is LogSeverity.WARNING
    ]
    assert len(warnings) == 1
    assert warnings[0].startswith("Primary command failed (launch failed); running fallback: ")


def test_failed_fallback_reports_its_own_failure() -> None:
    spec = _spec(
        fake_tool_invocation("--exit-code", "1"),
        fallback=fake_tool_invocation(
            "--stderr-line",
            "Game.cpp(10): error C2065: 'x': undeclared identifier",
            "--exit-code",
            "6",
        ),
    )

    result = JobSupervisor().run(spec, timeout=30)

    assert result.state is JobState.FAILED
    assert result.attempts == 2
    assert result.used_fallback
    assert result.exit_code == 6
    assert result.cause is FailureCause.COMPILE_FAILURE


def test_launch_failure_without_fallback(tmp_path) -> None:
    result = JobSupervisor().run(
        _spec(Invocation(command=str(tmp_path / "RunUAT.sh"))),
        timeout=30,
    )

    assert result.state is JobState.FAILED
    assert result.exit_code is None
    assert result.cause is FailureCause.LAUNCH_FAILURE
    assert "(exit code" not in result.message


def test_progress_is_reported_while_output_streams() -> None:
    updates: list[PhaseUpdate] = []

    result = JobSupervisor().run(
        _spec(
            fake_tool_invocation("--line", "Cooking...", "--line", "50%", "--line", "Staging files"),
        ),
        timeout=30,
        on_progress=updates.append,
    )

    assert result.success
    assert [(update.phase, update.percent) for update in updates] == [
        ("Cooking content…", 40),
        ("Cooking content…", 50),
        ("Staging files…", 80),
    ]


def test_unterminated_last_line_is_still_logged() -> None:
    result = JobSupervisor().run(
        _spec(
            fake_tool_invocation("--line", "first", "--line", "tail", "--no-trailing-newline"),
        ),
        timeout=30,
    )

    texts = [entry.text for entry in result.log.get_all()]
    assert "first" in texts
    assert "tail" in texts


@_posix_only
def test_cancel_stops_job_even_when_term_is_ignored() -> None:
    supervisor = JobSupervisor(graceful_shutdown_seconds=0.5)
    handle = supervisor.start(
        _spec(fake_tool_invocation("--line", "ready", "--hang", "--ignore-term")),
    )
    assert _wait_for_line(handle, "ready").wait(timeout=30)

    assert handle.cancel()
    assert not handle.cancel()
    result = handle.result(timeout=30)

    assert result.state is JobState.CANCELLED
    assert result.cause is FailureCause.CANCELLED
    assert not result.success
    assert result.log.get_all()[-1].text == "fake tool cancelled by user"
    assert not handle.cancel()


@_posix_only
def test_cancel_never_triggers_fallback() -> None:
    supervisor = JobSupervisor(graceful_shutdown_seconds=0.5)
    handle = supervisor.start(
        _spec(
            fake_tool_invocation("--line", "ready", "--hang"),
            fallback=fake_tool_invocation("--line", "fallback ran"),
        ),
    )
    assert _wait_for_line(handle, "ready").wait(timeout=30)

    handle.cancel()
    result = handle.result(timeout=30)

    assert result.state is JobState.CANCELLED
    assert result.attempts == 1
    assert all(entry.text != "fallback ran" for entry in result.log.get_all())


@_posix_only
def test_timeout_kills_job_and_skips_fallback() -> None:
    result = JobSupervisor(graceful_shutdown_seconds=1.0).run(
        _spec(
            fake_tool_invocation("--hang"),
            fallback=fake_tool_invocation("--line", "fallback ran"),
            timeout_seconds=1.0,
        ),
        timeout=30,
    )

    assert result.state is JobState.TIMED_OUT
    assert result.cause is FailureCause.TIMEOUT
    assert result.attempts == 1
    assert result.elapsed_seconds < 10
    assert result.message == "fake tool timed out after 1s"


@_posix_only
def test_only_one_job_runs_at_a_time() -> None:
    supervisor = JobSupervisor(graceful_shutdown_seconds=0.5)
    first = supervisor.start(_spec(fake_tool_invocation("--line", "ready", "--hang")))
    assert _wait_for_line(first, "ready").wait(timeout=30)

    with pytest.raises(JobAlreadyRunningError):
        supervisor.start(_spec(fake_tool_invocation("--line", "second")))

    first.cancel()
    first.result(timeout=30)
    second = supervisor.run(_spec(fake_tool_invocation("--line", "second")), timeout=30)
    assert second.success


def test_detached_job_completes_once_launched() -> None:
    result = JobSupervisor().run(
        _spec(fake_tool_invocation("--line", "editor"), detached=True),
        timeout=30,
    )

    assert result.success
    assert "launched (pid " in result.message


def test_log_sink_capacity_bounds_job_log() -> None:
    supervisor = JobSupervisor(log=LogSink(capacity=5))
    args: list[str] = []
    for index in range(20):
        args.extend(["--line", f"line {index}"])

    result = supervisor.run(_spec(fake_tool_invocation(*args)), timeout=30)

    texts = [entry.text for entry in result.log.get_all()]
    assert len(texts) == 5
    assert texts[:4] == ["line 16", "line 17", "line 18", "line 19"]
    assert texts[-1].startswith("fake tool completed successfully")


def test_failing_listener_does_not_break_job() -> None:
    def _boom(_payload) -> None:
        raise RuntimeError("listener failure")

    result = JobSupervisor().run(
        _spec(fake_tool_invocation("--line", "Cooking")),
        timeout=30,
        on_log=_boom,
        on_progress=_boom,
    )

    assert result.success


def test_enoent_style_primary_failure_uses_fallback_and_reports_no_error() -> None:
    spec = _spec(
        fake_tool_invocation(
            "--stderr-line",
            "Error: spawn Engine/Binaries/DotNET/UnrealBuildTool ENOENT",
            "--exit-code",
            "1",
        ),
        fallback=fake_tool_invocation("--line", "Generating project files", "--line", "Done"),
    )

    result = JobSupervisor().run(spec, timeout=30)

    assert result.success
    assert result.error is None
    assert result.cause is None
    assert result.used_fallback


@_posix_only
def test_never_exiting_command_times_out_after_five_seconds() -> None:
    states: list[JobState] = []
    supervisor = JobSupervisor(graceful_shutdown_seconds=2.0)

    handle = supervisor.start(
        _spec(fake_tool_invocation("--hang"), timeout_seconds=5.0),
        on_state=states.append,
    )
    result = handle.result(timeout=60)

    assert result.state is JobState.TIMED_OUT
    assert 5.0 <= result.elapsed_seconds < 5.0 + 2.0 + 5.0
    assert states == [JobState.RUNNING, JobState.TIMED_OUT]
    assert result.exit_code is not None
