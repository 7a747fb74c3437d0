"""Resolve job requests into concrete Unreal toolchain invocations."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ue_devtools.config import Settings
from ue_devtools.jobs.models import Invocation, JobKind, JobRequest, JobSpec

logger = logging.getLogger(__name__)

_IS_WINDOWS = os.name == "nt"

COMMON_ENGINE_LOCATIONS: tuple[str, ...] = (
    r"C:\Program Files\Epic Games\UE_5.6",
    r"C:\Program Files\Epic Games\UE_5.5",
    r"C:\Program Files\Epic Games\UE_5.4",
    r"C:\Program Files\Epic Games\UE_5.3",
    r"C:\Program Files (x86)\Epic Games\UE_5.6",
    r"C:\Program Files (x86)\Epic Games\UE_5.5",
    r"D:\Epic Games\UE_5.6",
    r"D:\Epic Games\UE_5.5",
    r"C:\UnrealEngine",
    r"D:\UnrealEngine",
    "/opt/UnrealEngine",
    "~/UnrealEngine",
)

EDITOR_TARGET_CONFIGURATIONS = frozenset({"Development", "DebugGame"})


class ResolutionError(ValueError):
    """A job request cannot be turned into a command line."""


@dataclass(slots=True, frozen=True)
class UnrealProject:
    """A project identified by its `.uproject` descriptor."""

    name: str
    root: Path
    descriptor: Path

    @classmethod
    def from_path(cls, path: Path) -> UnrealProject:
        """Accept a `.uproject` file or a directory containing exactly one."""

        path = Path(path).expanduser()
        if path.is_dir():
            descriptors = sorted(path.glob("*.uproject"))
            if not descriptors:
                raise ResolutionError(f"No .uproject file found in {path}")
            if len(descriptors) > 1:
                names = ", ".join(item.name for item in descriptors)
                raise ResolutionError(f"Multiple .uproject files in {path}: {names}")
            path = descriptors[0]
        elif path.suffix.lower() != ".uproject":
            raise ResolutionError(f"Expected a .uproject file or project directory: {path}")
        descriptor = path.resolve()
        return cls(name=descriptor.stem, root=descriptor.parent, descriptor=descriptor)


@dataclass(slots=True, frozen=True)
class EngineLayout:
    """Well-known tool locations inside an engine installation."""

    root: Path
    windows: bool = _IS_WINDOWS

    @property
    def binaries_dir(self) -> Path:
        return self.root / "Engine" / "Binaries" / ("Win64" if self.windows else "Linux")

    @property
    def build_tool(self) -> Path:
        name = "UnrealBuildTool.exe" if self.windows else "UnrealBuildTool"
        return self.root / "Engine" / "Binaries" / "DotNET" / "UnrealBuildTool" / name

    @property
    def editor(self) -> Path:
        return self.binaries_dir / ("UnrealEditor.exe" if self.windows else "UnrealEditor")

    @property
    def editor_cmd(self) -> Path:
        return self.binaries_dir / ("UnrealEditor-Cmd.exe" if self.windows else "UnrealEditor-Cmd")

    @property
    def run_uat(self) -> Path:
        return self.root / "Engine" / "Build" / "BatchFiles" / self._script("RunUAT")

    @property
    def generate_project_files(self) -> Path:
        batch_files = self.root / "Engine" / "Build" / "BatchFiles"
        if self.windows:
            return batch_files / "GenerateProjectFiles.bat"
        return batch_files / "Linux" / "GenerateProjectFiles.sh"

    def tools(self) -> dict[str, Path]:
        return {
            "UnrealBuildTool": self.build_tool,
            "UnrealEditor": self.editor,
            "UnrealEditor-Cmd": self.editor_cmd,
            "RunUAT": self.run_uat,
            "GenerateProjectFiles": self.generate_project_files,
        }

    def _script(self, stem: str) -> str:
        return f"{stem}.bat" if self.windows else f"{stem}.sh"


def resolve_engine_root(
    settings: Settings,
    *,
    candidates: tuple[str, ...] = COMMON_ENGINE_LOCATIONS,
) -> Path:
    """Configured engine path if it exists, else the first well-known install."""

    configured = settings.engine.engine_path
    if configured is not None:
        configured = configured.expanduser()
        if configured.is_dir():
            return configured
        raise ResolutionError(f"Configured engine path does not exist: {configured}")

    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.is_dir():
            logger.info("Using detected engine installation at %s", path)
            return path
    raise ResolutionError(
        "Engine path not configured. Set UE_DEVTOOLS_ENGINE_PATH or pass --engine-path.",
    )


def normalize_configuration(configuration: str) -> str:
    """Installed engines cannot build `Debug`; map it to `DebugGame`."""

    if configuration == "Debug":
        logger.warning("Debug is not supported with an installed engine; using DebugGame")
        return "DebugGame"
    return configuration


def target_name(project: UnrealProject, configuration: str) -> str:
    if configuration in EDITOR_TARGET_CONFIGURATIONS:
        return f"{project.name}Editor"
    return project.name


def job_key(project: UnrealProject, kind: JobKind, configuration: str, platform: str) -> str:
    """Target+configuration key identifying conflicting jobs."""

    return f"{project.descriptor}::{kind.value}::{configuration}::{platform}"


def resolve_job(
    request: JobRequest,
    settings: Settings,
    *,
    layout: EngineLayout | None = None,
) -> JobSpec:
    """Map a job request to primary/fallback invocations for the Unreal toolchain."""

    layout = layout or EngineLayout(resolve_engine_root(settings))
    project = UnrealProject.from_path(request.project)
    platform = request.platform or settings.engine.default_platform
    configuration = normalize_configuration(
        request.configuration or settings.engine.default_configuration,
    )
    cwd = request.working_directory or project.root
    timeout = request.timeout_seconds
    if timeout is None:
        timeout = settings.jobs.timeout_seconds
    timeout = timeout if timeout and timeout > 0 else None
    descriptor = str(project.descriptor)

    fallback: Invocation | None = None
    detached = False
    if request.kind is JobKind.BUILD:
        primary = Invocation(
            command=str(layout.build_tool),
            args=(
                target_name(project, configuration),
                platform,
                configuration,
                f"-project={descriptor}",
                "-rocket",
                "-noubtmakefiles",
                "-utf8output",
            ),
            cwd=cwd,
            env={"UE_LOG_LOCATION": "1"},
            path_prepend=(str(layout.binaries_dir),),
        )
        label = f"build {target_name(project, configuration)} ({configuration} {platform})"
    elif request.kind is JobKind.COOK:
        primary = Invocation(
            command=str(layout.editor_cmd),
            args=(
                descriptor,
                "-run=cook",
                f"-targetplatform={platform}",
                "-iterate",
                "-unversioned",
            ),
            cwd=cwd,
        )
        label = f"cook {project.name} ({platform})"
    elif request.kind is JobKind.PACKAGE:
        output_dir = (request.output_dir or project.root / "Packaged").expanduser()
        primary = Invocation(
            command=str(layout.run_uat),
            args=(
                "BuildCookRun",
                f"-project={descriptor}",
                "-noP4",
                f"-platform={platform}",
                f"-clientconfig={configuration}",
                f"-serverconfig={configuration}",
                "-cook",
                "-allmaps",
                "-build",
                "-stage",
                "-pak",
                "-archive",
                f"-archivedirectory={output_dir}",
            ),
            cwd=cwd,
        )
        label = f"package {project.name} ({configuration} {platform})"
    elif request.kind is JobKind.GENERATE_PROJECT_FILES:
        primary = Invocation(
            command=str(layout.build_tool),
            args=(
                "-projectfiles",
                f"-project={descriptor}",
                "-game",
                "-rocket",
                "-progress",
                f"-platforms={platform}",
            ),
            cwd=cwd,
        )
        fallback = Invocation(
            command=str(layout.generate_project_files),
            args=(f"-project={descriptor}", "-game", "-rocket", "-progress"),
            cwd=layout.generate_project_files.parent,
        )
        label = f"generate project files for {project.name}"
    elif request.kind is JobKind.OPEN_EDITOR:
        primary = Invocation(command=str(layout.editor), args=(descriptor,), cwd=cwd)
        detached = True
        timeout = None
        label = f"open editor for {project.name}"
    else:
        raise ResolutionError(f"Unsupported job kind for project resolution: {request.kind.value}")

    return JobSpec(
        kind=request.kind,
        primary=primary,
        fallback=fallback,
        timeout_seconds=timeout,
        detached=detached,
        key=job_key(project, request.kind, configuration, platform),
        label=label,
    )
