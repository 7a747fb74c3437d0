"""Subprocess runner with live output streaming, cancellation and timeouts."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from ue_devtools.jobs.models import Invocation, OutputChunk, OutputStream

logger = logging.getLogger(__name__)

_IS_WINDOWS = os.name == "nt"
_READ_CHUNK_BYTES = 64 * 1024
_POLL_INTERVAL_SECONDS = 0.05
_DRAIN_TIMEOUT_SECONDS = 5.0
_CLOSE = object()

OutputCallback = Callable[[OutputChunk], None]


class LaunchError(RuntimeError):
    """The executable could not be found or started."""

    def __init__(self, message: str, *, command: Sequence[str], transient: bool) -> None:
        super().__init__(message)
        self.command = list(command)
        self.transient = transient


class RunTimeoutError(TimeoutError):
    """The process outlived its timeout and was killed."""

    def __init__(self, message: str, *, exit_code: int | None, elapsed_seconds: float) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.elapsed_seconds = elapsed_seconds


@dataclass(slots=True)
class RunOptions:
    """Execution options for one process."""

    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    path_prepend: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    detached: bool = False
    graceful_shutdown_seconds: float = 10.0

    @classmethod
    def from_invocation(
        cls,
        invocation: Invocation,
        *,
        timeout_seconds: float | None = None,
        detached: bool = False,
        graceful_shutdown_seconds: float = 10.0,
    ) -> RunOptions:
        return cls(
            cwd=invocation.cwd,
            env=invocation.env,
            path_prepend=invocation.path_prepend,
            timeout_seconds=timeout_seconds,
            detached=detached,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
        )


@dataclass(slots=True, frozen=True)
class RunOutcome:
    """Completion of a process that exited on its own or after cancellation."""

    exit_code: int
    elapsed_seconds: float
    cancelled: bool = False
    detached: bool = False


def build_environment(
    overlay: Mapping[str, str] | None,
    path_prepend: Sequence[str] = (),
) -> dict[str, str]:
    """Merge `overlay` over the inherited environment and extend the search path."""

    env = os.environ.copy()
    if overlay:
        env.update(overlay)
    if path_prepend:
        key = _path_key(env)
        current = env.get(key, "")
        parts = [str(part) for part in path_prepend]
        if current:
            parts.append(current)
        env[key] = os.pathsep.join(parts)
    return env


def _path_key(env: Mapping[str, str]) -> str:
    # Windows spells it "Path"; keep whatever spelling the environment uses.
    for key in env:
        if key.upper() == "PATH":
            return key
    return "PATH"


class RunHandle:
    """Live view of one spawned process.

    Output is drained by one reader thread per pipe that only enqueues, and a
    dispatcher thread hands chunks to the callback. A slow callback therefore
    never blocks the pipes.
    """

    def __init__(
        self,
        *,
        process: subprocess.Popen[bytes],
        argv: Sequence[str],
        options: RunOptions,
        on_output: OutputCallback | None,
        started_monotonic: float,
    ) -> None:
        self._process = process
        self._argv = list(argv)
        self._options = options
        self._on_output = on_output
        self._started_monotonic = started_monotonic
        self._chunks: list[OutputChunk] = []
        self._chunks_lock = threading.Lock()
        self._queue: queue.Queue[object] = queue.Queue()
        self._cancel_requested = threading.Event()
        self._cancel_lock = threading.Lock()
        self._future: Future[RunOutcome] = Future()
        self._readers: list[threading.Thread] = []

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def future(self) -> Future[RunOutcome]:
        return self._future

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def chunks(self) -> list[OutputChunk]:
        with self._chunks_lock:
            return list(self._chunks)

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> RunOutcome:
        """Wait for completion; raises `RunTimeoutError` if the process timed out."""

        return self._future.result(timeout=timeout)

    def cancel(self) -> bool:
        """Ask the process group to terminate. Repeated calls are no-ops."""

        with self._cancel_lock:
            if self._cancel_requested.is_set() or self._future.done():
                return False
            self._cancel_requested.set()
        logger.info("Cancelling process %s (%s)", self.pid, self._argv[0])
        _signal_process_group(self._process, force=False)
        return True

    def _start(self) -> None:
        for pipe, stream in (
            (self._process.stdout, OutputStream.STDOUT),
            (self._process.stderr, OutputStream.STDERR),
        ):
            if pipe is None:
                continue
            reader = threading.Thread(
                target=self._read_stream,
                args=(pipe, stream),
                daemon=True,
                name=f"run-{self.pid}-{stream.value}",
            )
            self._readers.append(reader)
            reader.start()
        dispatcher = threading.Thread(
            target=self._dispatch,
            daemon=True,
            name=f"run-{self.pid}-dispatch",
        )
        dispatcher.start()
        threading.Thread(
            target=self._wait,
            args=(dispatcher,),
            daemon=True,
            name=f"run-{self.pid}-wait",
        ).start()

    def _resolve_detached(self) -> None:
        logger.info("Launched detached process %s (%s)", self.pid, self._argv[0])
        self._future.set_result(RunOutcome(exit_code=0, elapsed_seconds=0.0, detached=True))

    def _read_stream(self, pipe: IO[bytes], stream: OutputStream) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = pipe.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not data:
                    break
                self._enqueue(OutputChunk(stream=stream, text=decoder.decode(data)))
            self._enqueue(OutputChunk(stream=stream, text=decoder.decode(b"", final=True)))
        except (OSError, ValueError):
            logger.debug("Output pipe %s of %s closed early", stream.value, self.pid, exc_info=True)
        finally:
            pipe.close()

    def _enqueue(self, chunk: OutputChunk) -> None:
        if not chunk.text:
            return
        with self._chunks_lock:
            self._chunks.append(chunk)
        self._queue.put(chunk)

    def _dispatch(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            if self._on_output is None or not isinstance(item, OutputChunk):
                continue
            try:
                self._on_output(item)
            except Exception:
                logger.exception("Output callback failed for process %s", self.pid)

    def _wait(self, dispatcher: threading.Thread) -> None:
        try:
            returncode, timed_out = self._wait_for_exit()
            for reader in self._readers:
                reader.join(timeout=_DRAIN_TIMEOUT_SECONDS)
                if reader.is_alive():
                    logger.warning(
                        "Output of %s still open after exit; a child process may hold the pipe",
                        self.pid,
                    )
            self._queue.put(_CLOSE)
            dispatcher.join()
            elapsed = time.monotonic() - self._started_monotonic
            if timed_out:
                self._future.set_exception(
                    RunTimeoutError(
                        f"{self._argv[0]} exceeded {self._options.timeout_seconds:g}s and was killed",
                        exit_code=returncode,
                        elapsed_seconds=elapsed,
                    ),
                )
                return
            self._future.set_result(
                RunOutcome(
                    exit_code=returncode,
                    elapsed_seconds=elapsed,
                    cancelled=self._cancel_requested.is_set(),
                ),
            )
        except BaseException as error:  # noqa: BLE001
            if not self._future.done():
                self._future.set_exception(error)

    def _wait_for_exit(self) -> tuple[int, bool]:
        timeout = self._options.timeout_seconds
        deadline = None if timeout is None else self._started_monotonic + timeout
        grace = max(0.0, self._options.graceful_shutdown_seconds)
        kill_at: float | None = None
        killed = False
        timed_out = False

        while True:
            try:
                return self._process.wait(timeout=_POLL_INTERVAL_SECONDS), timed_out
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if (
                deadline is not None
                and not timed_out
                and not self._cancel_requested.is_set()
                and now >= deadline
            ):
                timed_out = True
                logger.warning("Process %s exceeded timeout of %ss", self.pid, timeout)
                _signal_process_group(self._process, force=False)
            if kill_at is None and (timed_out or self._cancel_requested.is_set()):
                kill_at = now + grace
            if kill_at is not None and not killed and now >= kill_at:
                killed = True
                logger.warning("Process %s ignored termination; killing it", self.pid)
                _signal_process_group(self._process, force=True)


class ProcessRunner:
    """Spawn external commands, one OS process per `run` call."""

    def run(
        self,
        command: str | Path,
        args: Sequence[str] = (),
        options: RunOptions | None = None,
        *,
        on_output: OutputCallback | None = None,
    ) -> RunHandle:
        options = options or RunOptions()
        argv = [str(command), *(str(arg) for arg in args)]
        env = build_environment(options.env, options.path_prepend)
        output = subprocess.DEVNULL if options.detached else subprocess.PIPE

        logger.debug("Spawning %s (cwd=%s, detached=%s)", argv, options.cwd, options.detached)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(options.cwd) if options.cwd else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=output,
                **_process_group_kwargs(),
            )
        except FileNotFoundError as error:
            raise LaunchError(
                f"Executable not found: {argv[0]} ({error})",
                command=argv,
                transient=False,
            ) from error
        except PermissionError as error:
            raise LaunchError(
                f"Executable is not runnable: {argv[0]} ({error})",
                command=argv,
                transient=False,
            ) from error
        except OSError as error:
            raise LaunchError(
                f"Failed to start {argv[0]}: {error}",
                command=argv,
                transient=True,
            ) from error

        handle = RunHandle(
            process=process,
            argv=argv,
            options=options,
            on_output=on_output,
            started_monotonic=time.monotonic(),
        )
        if options.detached:
            handle._resolve_detached()
        else:
            handle._start()
        return handle


def _process_group_kwargs() -> dict[str, object]:
    if _IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _signal_process_group(process: subprocess.Popen[bytes], *, force: bool) -> None:
    if process.poll() is not None:
        return
    try:
        if _IS_WINDOWS:
            if force:
                process.kill()
            else:
                process.send_signal(signal.CTRL_BREAK_EVENT)
            return
        os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        return
    except OSError:
        logger.warning("Could not signal process group %s", process.pid, exc_info=True)
