"""CLI entrypoint for ue-devtools."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from ue_devtools import __version__
from ue_devtools.jobs.controllers import (
    CleanCommand,
    CustomRunCommand,
    DoctorCommand,
    JobCommandResult,
    JobsCliController,
    ToolJobCommand,
)
from ue_devtools.jobs.models import JobKind, LogSeverity
from ue_devtools.jobs.resolver import ResolutionError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

# Conventional status for a command stopped by SIGINT.
_CANCELLED_EXIT_CODE = 130

_SEVERITY_COLORS = {
    LogSeverity.STDERR: "red",
    LogSeverity.ERROR: "red",
    LogSeverity.WARNING: "yellow",
    LogSeverity.INFO: "cyan",
}


def _job_options(func: Callable) -> Callable:
    options = (
        click.option(
            "--project",
            type=click.Path(path_type=Path, exists=True),
            required=True,
            help="Path to the .uproject file or the directory containing it.",
        ),
        click.option(
            "--engine-path",
            type=click.Path(path_type=Path, file_okay=False),
            default=None,
            help="Engine installation root. Defaults to UE_DEVTOOLS_ENGINE_PATH.",
        ),
        click.option(
            "--platform",
            default=None,
            help="Target platform. Defaults to UE_DEVTOOLS_DEFAULT_PLATFORM (Win64).",
        ),
        click.option(
            "--timeout",
            "timeout_seconds",
            type=click.FloatRange(min=0),
            default=None,
            help="Kill the tool after this many seconds (0 = no limit).",
        ),
        click.option(
            "--log-file",
            type=click.Path(path_type=Path, dir_okay=True),
            default=None,
            help="Write the captured log to this file or directory.",
        ),
        click.option(
            "--save-log/--no-save-log",
            default=False,
            show_default=True,
            help="Save the captured log to UE_DEVTOOLS_LOG_DIR even on success.",
        ),
    )
    for option in reversed(options):
        func = option(func)
    return func


_configuration_option = click.option(
    "--configuration",
    type=click.Choice(
        ["Debug", "DebugGame", "Development", "Shipping", "Test"],
        case_sensitive=True,
    ),
    default=None,
    help="Build configuration. Defaults to UE_DEVTOOLS_DEFAULT_CONFIGURATION (Development).",
)


@click.group()
@click.version_option(version=__version__, prog_name="ue-devtools")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def ue_devtools(verbose: bool) -> None:
    """Run Unreal Engine toolchain jobs with live logs, progress and failure diagnosis."""

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@ue_devtools.command("build")
@_job_options
@_configuration_option
def build(  # noqa: PLR0913
    project: Path,
    engine_path: Path | None,
    platform: str | None,
    timeout_seconds: float | None,
    log_file: Path | None,
    save_log: bool,
    configuration: str | None,
) -> None:
    """Compile the project target with UnrealBuildTool."""

    _run_tool_job(
        ToolJobCommand(
            kind=JobKind.BUILD,
            project=project,
            engine_path=engine_path,
            configuration=configuration,
            platform=platform,
            timeout_seconds=timeout_seconds,
            log_file=log_file,
            save_log=save_log,
        ),
    )


@ue_devtools.command("cook")
@_job_options
def cook(  # noqa: PLR0913
    project: Path,
    engine_path: Path | None,
    platform: str | None,
    timeout_seconds: float | None,
    log_file: Path | None,
    save_log: bool,
) -> None:
    """Cook content for the target platform."""

    _run_tool_job(
        ToolJobCommand(
            kind=JobKind.COOK,
            project=project,
            engine_path=engine_path,
            configuration=None,
            platform=platform,
            timeout_seconds=timeout_seconds,
            log_file=log_file,
            save_log=save_log,
        ),
    )


@ue_devtools.command("package")
@_job_options
@_configuration_option
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Archive directory. Defaults to <project>/Packaged.",
)
def package(  # noqa: PLR0913
    project: Path,
    engine_path: Path | None,
    platform: str | None,
    timeout_seconds: float | None,
    log_file: Path | None,
    save_log: bool,
    configuration: str | None,
    output_dir: Path | None,
) -> None:
    """Build, cook, stage, pak and archive the project with RunUAT BuildCookRun."""

    _run_tool_job(
        ToolJobCommand(
            kind=JobKind.PACKAGE,
            project=project,
            engine_path=engine_path,
            configuration=configuration,
            platform=platform,
            timeout_seconds=timeout_seconds,
            log_file=log_file,
            save_log=save_log,
            output_dir=output_dir,
        ),
    )


@ue_devtools.command("generate-project-files")
@_job_options
def generate_project_files(  # noqa: PLR0913
    project: Path,
    engine_path: Path | None,
    platform: str | None,
    timeout_seconds: float | None,
    log_file: Path | None,
    save_log: bool,
) -> None:
    """Refresh IDE project files; falls back to the GenerateProjectFiles script."""

    _run_tool_job(
        ToolJobCommand(
            kind=JobKind.GENERATE_PROJECT_FILES,
            project=project,
            engine_path=engine_path,
            configuration=None,
            platform=platform,
            timeout_seconds=timeout_seconds,
            log_file=log_file,
            save_log=save_log,
        ),
    )


@ue_devtools.command("open-editor")
@click.option(
    "--project",
    type=click.Path(path_type=Path, exists=True),
    required=True,
    help="Path to the .uproject file or the directory containing it.",
)
@click.option(
    "--engine-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Engine installation root. Defaults to UE_DEVTOOLS_ENGINE_PATH.",
)
def open_editor(project: Path, engine_path: Path | None) -> None:
    """Launch the editor detached; it keeps running after this command exits."""

    _run_tool_job(
        ToolJobCommand(
            kind=JobKind.OPEN_EDITOR,
            project=project,
            engine_path=engine_path,
            configuration=None,
            platform=None,
            timeout_seconds=None,
            log_file=None,
            save_log=False,
        ),
    )


@ue_devtools.command(
    "run",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option(
    "--fallback",
    default=None,
    help="Alternate command line tried once if the primary command fails.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for the command.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Kill the command after this many seconds (0 = no limit).",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path, dir_okay=True),
    default=None,
    help="Write the captured log to this file or directory.",
)
@click.option(
    "--save-log/--no-save-log",
    default=False,
    show_default=True,
    help="Save the captured log to UE_DEVTOOLS_LOG_DIR even on success.",
)
def run(  # noqa: PLR0913
    argv: tuple[str, ...],
    fallback: str | None,
    cwd: Path | None,
    timeout_seconds: float | None,
    log_file: Path | None,
    save_log: bool,
) -> None:
    """Supervise an arbitrary command: `ue-devtools run [OPTIONS] -- CMD [ARGS]...`."""

    try:
        result = JOBS_CONTROLLER.run_custom(
            CustomRunCommand(
                argv=argv,
                fallback=fallback,
                cwd=cwd,
                timeout_seconds=timeout_seconds,
                log_file=log_file,
                save_log=save_log,
            ),
            emit=_emit_styled,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _finish(result)


@ue_devtools.command("doctor")
@click.option(
    "--engine-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Engine installation root. Defaults to UE_DEVTOOLS_ENGINE_PATH.",
)
def doctor(engine_path: Path | None) -> None:
    """Check that the engine toolchain executables are present."""

    try:
        result = JOBS_CONTROLLER.doctor(DoctorCommand(engine_path=engine_path))
    except ResolutionError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Toolchain check failed.")


@ue_devtools.command("clean")
@click.option(
    "--project",
    type=click.Path(path_type=Path, exists=True),
    required=True,
    help="Path to the .uproject file or the directory containing it.",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path, dir_okay=True),
    default=None,
    help="Write the captured log to this file or directory.",
)
@click.option(
    "--save-log/--no-save-log",
    default=False,
    show_default=True,
    help="Save the captured log to UE_DEVTOOLS_LOG_DIR even on success.",
)
def clean(project: Path, log_file: Path | None, save_log: bool) -> None:
    """Delete the Binaries, Intermediate and Saved folders of the project."""

    try:
        result = JOBS_CONTROLLER.clean(
            CleanCommand(project=project, log_file=log_file, save_log=save_log),
            emit=_emit_styled,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _finish(result, "Clean failed.")


def _run_tool_job(command: ToolJobCommand) -> None:
    try:
        result = JOBS_CONTROLLER.run_tool_job(command, emit=_emit_styled)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _finish(result)


def _finish(result: JobCommandResult, failure_message: str = "Job failed.") -> None:
    _emit_lines(result.lines)
    if result.cancelled:
        click.get_current_context().exit(_CANCELLED_EXIT_CODE)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_styled(line: str, severity: LogSeverity) -> None:
    color = _SEVERITY_COLORS.get(severity)
    click.echo(click.style(line, fg=color) if color else line)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ue_devtools()
