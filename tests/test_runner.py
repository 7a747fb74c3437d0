from __future__ import annotations

import os
import sys
import threading

import allure
import pytest
from conftest import fake_tool_argv

from ue_devtools.jobs.models import OutputChunk, OutputStream
from ue_devtools.jobs.runner import (
    LaunchError,
    ProcessRunner,
    RunOptions,
    RunTimeoutError,
    build_environment,
)

pytestmark = [
    allure.epic("Job Supervision"),
    allure.feature("Process Runner"),
]

_posix_only = pytest.mark.skipif(os.name == "nt", reason="relies on POSIX process groups")


def _run(*tool_args: str, options: RunOptions | None = None, on_output=None):
    argv = fake_tool_argv(*tool_args)
    return ProcessRunner().run(argv[0], argv[1:], options, on_output=on_output)


def _text(chunks: list[OutputChunk], stream: OutputStream) -> str:
    return "".join(chunk.text for chunk in chunks if chunk.stream is stream)


def test_streams_stdout_and_stderr_to_callback() -> None:
    received: list[OutputChunk] = []

    handle = _run(
        "--line",
        "Building 2 actions",
        "--line",
        "Link Game",
        "--stderr-line",
        "warning: deprecated",
        on_output=received.append,
    )
    outcome = handle.result(timeout=30)

    assert outcome.exit_code == 0
    assert not outcome.cancelled
    assert _text(received, OutputStream.STDOUT).splitlines() == ["Building 2 actions", "Link Game"]
    assert _text(received, OutputStream.STDERR).strip() == "warning: deprecated"
    assert handle.chunks() == received


def test_non_zero_exit_code_is_reported_not_raised() -> None:
    outcome = _run("--exit-code", "6").result(timeout=30)

    assert outcome.exit_code == 6


def test_utf8_output_is_decoded() -> None:
    received: list[OutputChunk] = []

    _run("--line", "Cooking Ünïcødé ✓", on_output=received.append).result(timeout=30)

    assert _text(received, OutputStream.STDOUT).strip() == "Cooking Ünïcødé ✓"


def test_missing_executable_raises_launch_error(tmp_path) -> None:
    missing = tmp_path / "Engine" / "Binaries" / "UnrealBuildTool"

    with pytest.raises(LaunchError) as error_info:
        ProcessRunner().run(missing, ["-help"])

    assert not error_info.value.transient
    assert error_info.value.command == [str(missing), "-help"]


@_posix_only
def test_non_executable_file_raises_permanent_launch_error(tmp_path) -> None:
    script = tmp_path / "RunUAT.sh"
    script.write_text("#!/bin/sh\necho never\n", "utf-8")
    script.chmod(0o644)

    with pytest.raises(LaunchError) as error_info:
        ProcessRunner().run(script, ["BuildCookRun"])

    assert not error_info.value.transient
    assert "not runnable" in str(error_info.value)
    assert isinstance(error_info.value.__cause__, PermissionError)


def test_failing_callback_does_not_stop_output_drain() -> None:
    seen: list[str] = []

    def _callback(chunk: OutputChunk) -> None:
        seen.append(chunk.text)
        raise RuntimeError("callback failure")

    outcome = _run("--line", "a", "--line", "b", on_output=_callback).result(timeout=30)

    assert outcome.exit_code == 0
    assert "".join(seen).split() == ["a", "b"]


@_posix_only
def test_timeout_terminates_hanging_process() -> None:
    handle = _run(
        "--hang",
        options=RunOptions(timeout_seconds=1.0, graceful_shutdown_seconds=2.0),
    )

    with pytest.raises(RunTimeoutError) as error_info:
        handle.result(timeout=30)

    assert error_info.value.elapsed_seconds < 10
    assert error_info.value.exit_code is not None


@_posix_only
def test_cancel_escalates_to_kill_when_term_is_ignored() -> None:
    ready = threading.Event()

    def _on_output(chunk: OutputChunk) -> None:
        if "ready" in chunk.text:
            ready.set()

    handle = _run(
        "--line",
        "ready",
        "--hang",
        "--ignore-term",
        options=RunOptions(graceful_shutdown_seconds=0.5),
        on_output=_on_output,
    )
    assert ready.wait(timeout=30)

    assert handle.cancel()
    assert not handle.cancel()
    outcome = handle.result(timeout=30)

    assert outcome.cancelled
    assert outcome.exit_code != 0
    assert handle.cancel_requested


def test_cancel_after_exit_is_a_no_op() -> None:
    handle = _run("--line", "done")
    handle.result(timeout=30)

    assert not handle.cancel()


def test_detached_process_resolves_immediately() -> None:
    handle = _run("--line", "editor", options=RunOptions(detached=True))

    outcome = handle.result(timeout=5)

    assert outcome.detached
    assert outcome.exit_code == 0
    assert handle.chunks() == []
    assert handle.pid > 0


def test_env_overlay_and_path_prepend_reach_child(tmp_path) -> None:
    received: list[OutputChunk] = []
    script = "import os; print(os.environ['UE_LOG_LOCATION']); print(os.environ['PATH'])"

    outcome = ProcessRunner().run(
        sys.executable,
        ["-c", script],
        RunOptions(env={"UE_LOG_LOCATION": "1"}, path_prepend=(str(tmp_path),)),
        on_output=received.append,
    ).result(timeout=30)

    lines = _text(received, OutputStream.STDOUT).splitlines()
    assert outcome.exit_code == 0
    assert lines[0] == "1"
    assert lines[1].split(os.pathsep)[0] == str(tmp_path)


def test_build_environment_prepends_to_existing_path(monkeypatch) -> None:
    monkeypatch.setenv("PATH", "/usr/bin")

    env = build_environment({"A": "b"}, ("/engine/bin",))

    assert env["A"] == "b"
    assert env["PATH"] == os.pathsep.join(["/engine/bin", "/usr/bin"])


def test_working_directory_is_applied(tmp_path) -> None:
    received: list[OutputChunk] = []

    ProcessRunner().run(
        sys.executable,
        ["-c", "import os; print(os.getcwd())"],
        RunOptions(cwd=tmp_path),
        on_output=received.append,
    ).result(timeout=30)

    assert os.path.samefile(_text(received, OutputStream.STDOUT).strip(), tmp_path)
